"""
PromptTuner - Prompt Optimizer Tests
====================================

Unit tests for experiment seeding from rewrite candidates.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from backend.db.models import ImprovementReview, PromptABTest
from backend.services.auto_improvement.critic import PerformanceCritic
from backend.services.auto_improvement.optimizer import PromptOptimizer
from backend.services.auto_improvement.store import utcnow
from backend.tests.helpers import FakeChatModel, add_feedback, create_agent, optimization_response


def _optimizer(db, policy, responses):
    llm = FakeChatModel(responses)
    return PromptOptimizer(db, PerformanceCritic(llm, policy), policy), llm


class TestPromptOptimizer:
    """Tests for PromptOptimizer.optimize_agent."""

    @pytest.mark.asyncio
    async def test_confident_candidate_creates_experiment(self, db_session, policy):
        agent = await create_agent(db_session, system_prompt="current prompt")
        await add_feedback(db_session, agent, rating=2, count=12)
        optimizer, _ = _optimizer(db_session, policy, [optimization_response(confidence=0.85)])

        result = await optimizer.optimize_agent(agent)

        assert result["confidence"] == pytest.approx(0.85)
        test = (await db_session.execute(select(PromptABTest))).scalar_one()
        assert str(test.id) == result["test_id"]
        assert test.prompt_a == "current prompt"
        assert test.prompt_b == result["optimized_prompt"]
        assert test.success_metric == "user_satisfaction"
        assert test.traffic_split == pytest.approx(0.5)
        assert test.status == "active"
        assert test.test_name.startswith("Auto-optimization ")

    @pytest.mark.asyncio
    async def test_too_little_recent_feedback_skips_llm(self, db_session, policy):
        agent = await create_agent(db_session)
        await add_feedback(db_session, agent, count=9)
        await add_feedback(db_session, agent, count=5, age=timedelta(days=4))
        optimizer, llm = _optimizer(db_session, policy, [])

        assert await optimizer.optimize_agent(agent) is None
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_feedback_capped_at_limit(self, db_session, policy):
        agent = await create_agent(db_session)
        await add_feedback(db_session, agent, count=60)
        optimizer, _ = _optimizer(db_session, policy, [])

        feedback = await optimizer.store.get_recent_feedback(
            agent.id,
            since=utcnow() - timedelta(days=policy.optimization_window_days),
            limit=policy.optimization_feedback_limit,
        )

        assert len(feedback) == 50

    @pytest.mark.asyncio
    @pytest.mark.parametrize("confidence", [0.7, 0.4])
    async def test_weak_candidate_goes_to_review(self, db_session, policy, confidence):
        agent = await create_agent(db_session)
        await add_feedback(db_session, agent, count=10)
        optimizer, _ = _optimizer(db_session, policy, [optimization_response(confidence=confidence)])

        assert await optimizer.optimize_agent(agent) is None

        assert (await db_session.execute(select(PromptABTest))).scalars().all() == []
        review = (await db_session.execute(select(ImprovementReview))).scalar_one()
        assert review.source == "optimization"
        assert review.status == "pending_review"
        assert review.proposal["optimized_prompt"].startswith("You are an upbeat")

    @pytest.mark.asyncio
    async def test_unparseable_candidate_is_skipped(self, db_session, policy):
        agent = await create_agent(db_session)
        await add_feedback(db_session, agent, count=10)
        optimizer, _ = _optimizer(db_session, policy, ["sorry, I can't help"])

        assert await optimizer.optimize_agent(agent) is None
        assert (await db_session.execute(select(ImprovementReview))).scalars().all() == []
