"""
PromptTuner - Test Helpers
==========================

Fake chat model and builders for agents, feedback and experiments.
"""

import json
from datetime import timedelta
from typing import Any, List, Optional

from langchain_core.messages import AIMessage
from sqlalchemy.ext.asyncio import AsyncSession

from backend.db.models import AIAgent, AIFeedback, PromptABTest
from backend.services.auto_improvement.store import utcnow


# =============================================================================
# Fake LLM
# =============================================================================

class FakeChatModel:
    """
    Stand-in for a JSON-bound chat model.

    Each ``ainvoke`` pops the next canned response; dicts are serialized to
    JSON, exceptions are raised.
    """

    def __init__(self, responses: Optional[List[Any]] = None):
        self.responses = list(responses or [])
        self.calls: List[List[Any]] = []

    async def ainvoke(self, messages, **kwargs):
        self.calls.append(messages)
        if not self.responses:
            raise AssertionError("FakeChatModel ran out of responses")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, dict):
            response = json.dumps(response)
        return AIMessage(content=response)


# =============================================================================
# Data Helpers
# =============================================================================

async def create_agent(
    db: AsyncSession,
    name: str = "copywriter",
    system_prompt: str = "You are a helpful copywriter.",
    specialization: str = "marketing copy",
    active: bool = True,
) -> AIAgent:
    agent = AIAgent(
        name=name,
        specialization=specialization,
        system_prompt=system_prompt,
        active=active,
    )
    db.add(agent)
    await db.commit()
    return agent


async def add_feedback(
    db: AsyncSession,
    agent: AIAgent,
    rating: Optional[float] = 4,
    count: int = 1,
    age: timedelta = timedelta(hours=1),
    test: Optional[PromptABTest] = None,
    variant: Optional[str] = None,
    response_time_ms: Optional[int] = 800,
    ai_response: str = "Here is your caption.",
) -> List[AIFeedback]:
    records = []
    for _ in range(count):
        record = AIFeedback(
            agent_id=agent.id,
            feedback_type="explicit",
            user_feedback={"rating": rating} if rating is not None else {"helpful": True},
            ai_response=ai_response,
            response_time_ms=response_time_ms,
            ab_test_id=test.id if test else None,
            ab_test_variant=variant,
            created_at=utcnow() - age,
        )
        db.add(record)
        records.append(record)
    await db.commit()
    return records


async def create_test(
    db: AsyncSession,
    agent: AIAgent,
    prompt_a: Optional[str] = None,
    prompt_b: str = "You are a concise, upbeat copywriter.",
    age: Optional[timedelta] = None,
) -> PromptABTest:
    test = PromptABTest(
        agent_id=agent.id,
        test_name="caption tone",
        prompt_a=prompt_a or agent.system_prompt,
        prompt_b=prompt_b,
        success_metric="user_satisfaction",
        traffic_split=0.5,
        status="active",
    )
    if age is not None:
        test.created_at = utcnow() - age
    db.add(test)
    await db.commit()
    return test


def analysis_response(
    confidence: float = 0.9,
    auto_apply: bool = True,
    new_prompt: Optional[str] = "You are a precise copywriter. Keep captions under 150 characters.",
) -> dict:
    return {
        "problems_identified": ["captions too long", "tone inconsistent"],
        "suggested_improvements": ["limit caption length"],
        "new_prompt": new_prompt,
        "confidence": confidence,
        "auto_apply": auto_apply,
    }


def optimization_response(
    confidence: float = 0.85,
    optimized_prompt: str = "You are an upbeat copywriter who writes short captions.",
) -> dict:
    return {
        "optimized_prompt": optimized_prompt,
        "improvements_made": ["shorter captions"],
        "confidence": confidence,
        "rationale": "users asked for brevity",
    }
