"""
PromptTuner - Performance Critic
================================

LLM-as-critic for agent prompts.

Two modes:
1. analyze_agent: diagnose problems from recent feedback and daily metrics and
   propose a rewritten prompt with a self-reported confidence
2. propose_optimization: rewrite the prompt for quality, used by the
   optimizer to seed A/B tests

A response that does not parse into the expected JSON shape yields ``None``
("no proposal") so one bad completion never affects other agents.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from backend.db.models import AIAgent, AIFeedback, AIPerformanceMetric
from backend.services.auto_improvement.policy import ImprovementPolicy
from backend.services.auto_improvement.store import as_utc, utcnow
from backend.services.llm import response_text

logger = structlog.get_logger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class ImprovementProposal:
    """Critic output for one agent. Consumed once by the applier."""
    agent_id: str
    agent_name: str
    problems_identified: List[str]
    suggested_improvements: List[str]
    new_prompt: Optional[str]
    confidence: float
    auto_apply: bool
    analysis_date: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "problems_identified": self.problems_identified,
            "suggested_improvements": self.suggested_improvements,
            "new_prompt": self.new_prompt,
            "confidence": self.confidence,
            "auto_apply": self.auto_apply,
            "analysis_date": self.analysis_date.isoformat(),
        }


@dataclass
class OptimizationCandidate:
    """Candidate prompt rewrite produced for experimentation."""
    agent_id: str
    agent_name: str
    optimized_prompt: str
    improvements_made: List[str]
    confidence: float
    rationale: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "optimized_prompt": self.optimized_prompt,
            "improvements_made": self.improvements_made,
            "confidence": self.confidence,
            "rationale": self.rationale,
        }


# =============================================================================
# Response Schemas
# =============================================================================

class AnalysisPayload(BaseModel):
    """Shape the critic must return in analysis mode."""
    problems_identified: List[str]
    suggested_improvements: List[str]
    new_prompt: Optional[str] = None
    confidence: float = Field(ge=0.0, le=1.0)
    auto_apply: bool


class OptimizationPayload(BaseModel):
    """Shape the critic must return in optimization mode."""
    optimized_prompt: str = Field(min_length=1)
    improvements_made: List[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)
    rationale: str = ""


# =============================================================================
# Prompts
# =============================================================================

ANALYSIS_SYSTEM_PROMPT = (
    "You are an expert in optimizing AI assistant systems. "
    "Always answer with valid JSON."
)

ANALYSIS_TASK_PROMPT = """Analyze the performance of this AI agent and suggest improvements.

AGENT: {agent_name} ({specialization})
CURRENT PROMPT:
{system_prompt}

USER FEEDBACK (most recent first):
{feedback}

PERFORMANCE METRICS:
{metrics}

Based on this analysis, answer with a JSON object containing:
1. "problems_identified": list of specific problems
2. "suggested_improvements": list of concrete improvements
3. "new_prompt": an optimized version of the prompt, or null if no rewrite is needed
4. "confidence": number between 0 and 1 expressing confidence in the improvement
5. "auto_apply": boolean, true if the change is safe to apply automatically

Be specific and practical."""

OPTIMIZATION_SYSTEM_PROMPT = (
    "You are an expert in AI prompt optimization. "
    "Always answer with valid JSON."
)

OPTIMIZATION_TASK_PROMPT = """Optimize this AI agent's prompt based on user feedback.

AGENT: {agent_name}
SPECIALIZATION: {specialization}
CURRENT PROMPT:
{system_prompt}

RECENT FEEDBACK:
{feedback}

Write an optimized version of the prompt that:
1. Keeps the specialization and personality
2. Fixes problems identified in the feedback
3. Improves the quality of the answers
4. Is more precise and useful

Answer with JSON:
{{
  "optimized_prompt": "new prompt",
  "improvements_made": ["list of improvements"],
  "confidence": 0.8,
  "rationale": "explanation of the changes"
}}"""


# =============================================================================
# Performance Critic
# =============================================================================

class PerformanceCritic:
    """
    Asks a chat model to critique an agent's prompt.

    ``llm`` is any LangChain runnable with ``ainvoke``; it should be bound to
    JSON response mode (see ``LLMFactory.get_json_chat_model``).
    """

    RESPONSE_PREVIEW_CHARS = 200

    def __init__(self, llm, policy: Optional[ImprovementPolicy] = None):
        self.llm = llm
        self.policy = policy or ImprovementPolicy()

    # =========================================================================
    # Analysis Mode
    # =========================================================================

    def build_analysis_messages(
        self,
        agent: AIAgent,
        feedback: List[AIFeedback],
        metrics: List[AIPerformanceMetric],
    ) -> List[Any]:
        window = self._feedback_window(feedback)
        task = ANALYSIS_TASK_PROMPT.format(
            agent_name=agent.name,
            specialization=agent.specialization or "general",
            system_prompt=agent.system_prompt,
            feedback="\n".join(
                f"- {f.feedback_type}: {json.dumps(f.user_feedback or {}, ensure_ascii=False)}"
                for f in window
            ) or "- no feedback",
            metrics="\n".join(self._format_metric(m) for m in metrics) or "- no metrics",
        )
        return [
            SystemMessage(content=ANALYSIS_SYSTEM_PROMPT),
            HumanMessage(content=task),
        ]

    async def analyze_agent(
        self,
        agent: AIAgent,
        feedback: List[AIFeedback],
        metrics: List[AIPerformanceMetric],
    ) -> Optional[ImprovementProposal]:
        """
        Produce an improvement proposal for an agent.

        Network and provider errors propagate to the caller; only an
        unusable response body is mapped to ``None``.
        """
        messages = self.build_analysis_messages(agent, feedback, metrics)
        response = await self.llm.ainvoke(messages)

        payload = self._parse_payload(response_text(response), AnalysisPayload)
        if payload is None:
            logger.warning(
                "Failed to parse improvement analysis",
                agent_id=str(agent.id),
                agent_name=agent.name,
            )
            return None

        return ImprovementProposal(
            agent_id=str(agent.id),
            agent_name=agent.name,
            problems_identified=payload.problems_identified,
            suggested_improvements=payload.suggested_improvements,
            new_prompt=payload.new_prompt or None,
            confidence=payload.confidence,
            auto_apply=payload.auto_apply,
        )

    # =========================================================================
    # Optimization Mode
    # =========================================================================

    def build_optimization_messages(
        self,
        agent: AIAgent,
        feedback: List[AIFeedback],
    ) -> List[Any]:
        lines = []
        for f in self._feedback_window(feedback):
            reply = (f.ai_response or "")[:self.RESPONSE_PREVIEW_CHARS]
            lines.append(
                f"- Feedback: {json.dumps(f.user_feedback or {}, ensure_ascii=False)}"
                f" | Response: {reply}..."
            )

        task = OPTIMIZATION_TASK_PROMPT.format(
            agent_name=agent.name,
            specialization=agent.specialization or "general",
            system_prompt=agent.system_prompt,
            feedback="\n".join(lines) or "- no feedback",
        )
        return [
            SystemMessage(content=OPTIMIZATION_SYSTEM_PROMPT),
            HumanMessage(content=task),
        ]

    async def propose_optimization(
        self,
        agent: AIAgent,
        feedback: List[AIFeedback],
    ) -> Optional[OptimizationCandidate]:
        messages = self.build_optimization_messages(agent, feedback)
        response = await self.llm.ainvoke(messages)

        payload = self._parse_payload(response_text(response), OptimizationPayload)
        if payload is None:
            logger.warning(
                "Failed to parse prompt optimization",
                agent_id=str(agent.id),
                agent_name=agent.name,
            )
            return None

        return OptimizationCandidate(
            agent_id=str(agent.id),
            agent_name=agent.name,
            optimized_prompt=payload.optimized_prompt,
            improvements_made=payload.improvements_made,
            confidence=payload.confidence,
            rationale=payload.rationale,
        )

    # =========================================================================
    # Helper Methods
    # =========================================================================

    def _feedback_window(self, feedback: List[AIFeedback]) -> List[AIFeedback]:
        """Most recent feedback first, bounded by the policy window."""
        ordered = sorted(
            feedback,
            key=lambda f: as_utc(f.created_at) or EPOCH,
            reverse=True,
        )
        return ordered[:self.policy.critic_feedback_window]

    @staticmethod
    def _format_metric(metric: AIPerformanceMetric) -> str:
        rating = f"{metric.avg_rating:.2f}" if metric.avg_rating is not None else "n/a"
        latency = f"{metric.avg_response_time_ms:.0f}ms" if metric.avg_response_time_ms is not None else "n/a"
        return (
            f"- {metric.metric_date.isoformat()}: Rating: {rating}, "
            f"Time: {latency}, Success: {metric.success_rate * 100:.1f}%"
        )

    @staticmethod
    def _extract_json(response: str) -> Any:
        """
        Decode the completion, falling back to the first JSON object embedded
        in a fenced or chatty reply.

        Raises:
            ValueError: No JSON object could be decoded
        """
        try:
            return json.loads(response)
        except json.JSONDecodeError:
            pass

        data, _ = json.JSONDecoder().raw_decode(response, response.index("{"))
        return data

    def _parse_payload(self, response: str, schema):
        try:
            return schema.model_validate(self._extract_json(response))
        except (ValueError, PydanticValidationError) as e:
            logger.debug("Critic response rejected", error=str(e), preview=response[:200])
            return None
