"""
PromptTuner - Statistical Evaluator Tests
=========================================

Unit tests for group metrics, the confidence heuristic, and experiment
promotion / expiry.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select

from backend.db.models import AIAgent, AIFeedback, PromptABTest, SelfImprovementLog
from backend.services.auto_improvement.evaluator import (
    ABTestEvaluator,
    GroupMetrics,
    calculate_group_metrics,
    calculate_statistical_confidence,
    pick_winner,
)
from backend.services.auto_improvement.policy import ImprovementPolicy
from backend.tests.helpers import add_feedback, create_agent, create_test


def _records(ratings, response_time_ms=500):
    return [
        AIFeedback(
            user_feedback={"rating": r} if r is not None else {},
            response_time_ms=response_time_ms,
        )
        for r in ratings
    ]


def _metrics(score: float, n: int) -> GroupMetrics:
    return GroupMetrics(score=score, avg_rating=score, avg_response_time_ms=1000.0, sample_size=n)


# =============================================================================
# Pure Functions
# =============================================================================

class TestGroupMetrics:
    """Tests for calculate_group_metrics."""

    def test_mean_rating_and_response_time(self):
        metrics = calculate_group_metrics(_records([5, 4, 3], response_time_ms=600))
        assert metrics.score == pytest.approx(4.0)
        assert metrics.avg_response_time_ms == pytest.approx(600.0)
        assert metrics.sample_size == 3

    def test_missing_rating_counts_as_three(self):
        metrics = calculate_group_metrics(_records([5, None]))
        assert metrics.score == pytest.approx(4.0)

    def test_non_numeric_rating_counts_as_three(self):
        records = [AIFeedback(user_feedback={"rating": "great"}), AIFeedback(user_feedback={"rating": 5})]
        assert calculate_group_metrics(records).score == pytest.approx(4.0)

    def test_missing_response_time_counts_as_default(self):
        metrics = calculate_group_metrics(_records([4, 4], response_time_ms=None))
        assert metrics.avg_response_time_ms == pytest.approx(1000.0)

    def test_empty_group(self):
        metrics = calculate_group_metrics([])
        assert metrics.score == 0.0
        assert metrics.sample_size == 0


class TestStatisticalConfidence:
    """Tests for the confidence heuristic."""

    def test_large_samples_moderate_effect(self):
        # 50 / 50 samples, 4.5 vs 3.0 -> (1.0 + 0.75) / 2
        confidence = calculate_statistical_confidence(_metrics(4.5, 50), _metrics(3.0, 50))
        assert confidence == pytest.approx(0.875)

    def test_saturates_at_one(self):
        confidence = calculate_statistical_confidence(_metrics(4.8, 60), _metrics(2.6, 60))
        assert confidence == pytest.approx(1.0)

    def test_uses_smaller_group(self):
        confidence = calculate_statistical_confidence(_metrics(4.0, 100), _metrics(4.0, 10))
        assert confidence == pytest.approx(0.1)

    def test_empty_group_has_no_sample_confidence(self):
        confidence = calculate_statistical_confidence(_metrics(4.0, 30), _metrics(0.0, 0))
        assert confidence == pytest.approx(0.5)

    @pytest.mark.parametrize("n", [0, 1, 10, 25, 49, 50, 51, 500])
    def test_monotone_in_sample_size(self, n):
        smaller = calculate_statistical_confidence(_metrics(4.0, n), _metrics(3.5, n))
        larger = calculate_statistical_confidence(_metrics(4.0, n + 1), _metrics(3.5, n + 1))
        assert 0.0 <= smaller <= larger <= 1.0

    @pytest.mark.parametrize("delta", [0.0, 0.5, 1.0, 1.9, 2.0, 3.5])
    def test_monotone_in_effect(self, delta):
        smaller = calculate_statistical_confidence(_metrics(1.0 + delta, 30), _metrics(1.0, 30))
        larger = calculate_statistical_confidence(_metrics(1.1 + delta, 30), _metrics(1.0, 30))
        assert 0.0 <= smaller <= larger <= 1.0

    def test_thresholds_come_from_policy(self):
        policy = ImprovementPolicy(full_confidence_samples=10, full_confidence_effect=1.0)
        confidence = calculate_statistical_confidence(_metrics(4.0, 10), _metrics(3.5, 10), policy)
        assert confidence == pytest.approx(0.75)


class TestPickWinner:
    """Tests for winner selection."""

    def test_higher_score_wins(self):
        assert pick_winner(_metrics(4.8, 10), _metrics(2.6, 10)) == "A"
        assert pick_winner(_metrics(2.6, 10), _metrics(4.8, 10)) == "B"

    def test_tie_goes_to_b(self):
        assert pick_winner(_metrics(4.0, 10), _metrics(4.0, 10)) == "B"


# =============================================================================
# ABTestEvaluator
# =============================================================================

class TestABTestEvaluator:
    """Tests for experiment evaluation against the datastore."""

    @pytest.mark.asyncio
    async def test_below_min_samples_is_not_decidable(self, db_session, policy):
        agent = await create_agent(db_session)
        test = await create_test(db_session, agent)
        await add_feedback(db_session, agent, rating=5, count=10, test=test, variant="A")
        await add_feedback(db_session, agent, rating=1, count=9, test=test, variant="B")

        evaluator = ABTestEvaluator(db_session, policy)
        assert await evaluator.evaluate(test) is None
        assert test.status == "active"

    @pytest.mark.asyncio
    async def test_gate_uses_fetched_sample_count(self, db_session, policy):
        agent = await create_agent(db_session)
        test = await create_test(db_session, agent)
        await add_feedback(db_session, agent, rating=5, count=10, test=test, variant="A")
        await add_feedback(db_session, agent, rating=1, count=9, test=test, variant="B")

        evaluator = ABTestEvaluator(db_session, policy)
        with patch.object(
            evaluator.experiments, "is_decidable", wraps=evaluator.experiments.is_decidable
        ) as gate, patch.object(evaluator.experiments.store, "count_test_feedback") as count:
            assert await evaluator.evaluate(test) is None

        gate.assert_awaited_once_with(test, 19)
        count.assert_not_called()

    @pytest.mark.asyncio
    async def test_lower_sample_floor_allows_decision(self, db_session):
        policy = ImprovementPolicy(min_test_samples=5)
        agent = await create_agent(db_session)
        test = await create_test(db_session, agent)
        await add_feedback(db_session, agent, rating=4, count=3, test=test, variant="A")
        await add_feedback(db_session, agent, rating=4, count=3, test=test, variant="B")

        analysis = await ABTestEvaluator(db_session, policy).evaluate(test)

        assert analysis["outcome"] == "running"

    @pytest.mark.asyncio
    async def test_promotes_confident_winner(self, db_session, policy):
        agent = await create_agent(db_session, system_prompt="control prompt")
        test = await create_test(db_session, agent, prompt_b="challenger prompt")
        await add_feedback(db_session, agent, rating=4.8, count=60, test=test, variant="A")
        await add_feedback(db_session, agent, rating=2.6, count=60, test=test, variant="B")

        evaluator = ABTestEvaluator(db_session, policy)
        analysis = await evaluator.evaluate(test)

        assert analysis["outcome"] == "promoted"
        assert analysis["winner"] == "A"
        assert analysis["confidence"] == pytest.approx(1.0)

        stored = (await db_session.execute(select(PromptABTest))).scalar_one()
        assert stored.status == "completed"
        assert stored.winner == "A"
        assert stored.confidence_level == pytest.approx(1.0)
        assert stored.completed_at is not None

        refreshed = (await db_session.execute(select(AIAgent))).scalar_one()
        assert refreshed.system_prompt == "control prompt"
        assert refreshed.version == 2

        logs = (await db_session.execute(select(SelfImprovementLog))).scalars().all()
        assert len(logs) == 1
        assert logs[0].improvement_type == "ab_test_promotion"
        assert logs[0].after_state["system_prompt"] == "control prompt"

    @pytest.mark.asyncio
    async def test_challenger_promotion_replaces_prompt(self, db_session, policy):
        agent = await create_agent(db_session, system_prompt="control prompt")
        test = await create_test(db_session, agent, prompt_b="challenger prompt")
        await add_feedback(db_session, agent, rating=1, count=55, test=test, variant="A")
        await add_feedback(db_session, agent, rating=5, count=55, test=test, variant="B")

        analysis = await ABTestEvaluator(db_session, policy).evaluate(test)

        assert analysis["winner"] == "B"
        refreshed = (await db_session.execute(select(AIAgent))).scalar_one()
        assert refreshed.system_prompt == "challenger prompt"

        log = (await db_session.execute(select(SelfImprovementLog))).scalar_one()
        assert log.before_state["system_prompt"] == "control prompt"
        assert log.after_state["system_prompt"] == "challenger prompt"

    @pytest.mark.asyncio
    async def test_below_promotion_bar_stays_active(self, db_session, policy):
        agent = await create_agent(db_session)
        test = await create_test(db_session, agent)
        await add_feedback(db_session, agent, rating=4.5, count=50, test=test, variant="A")
        await add_feedback(db_session, agent, rating=3.0, count=50, test=test, variant="B")

        analysis = await ABTestEvaluator(db_session, policy).evaluate(test)

        assert analysis["confidence"] == pytest.approx(0.875)
        assert analysis["outcome"] == "running"
        assert test.status == "active"
        logs = (await db_session.execute(select(SelfImprovementLog))).scalars().all()
        assert logs == []

    @pytest.mark.asyncio
    async def test_completed_test_is_not_reevaluated(self, db_session, policy):
        agent = await create_agent(db_session)
        test = await create_test(db_session, agent)
        await add_feedback(db_session, agent, rating=5, count=60, test=test, variant="A")
        await add_feedback(db_session, agent, rating=1, count=60, test=test, variant="B")

        evaluator = ABTestEvaluator(db_session, policy)
        await evaluator.evaluate(test)
        assert await evaluator.evaluate(test) is None

        logs = (await db_session.execute(select(SelfImprovementLog))).scalars().all()
        assert len(logs) == 1

    @pytest.mark.asyncio
    async def test_second_promotion_is_a_noop(self, db_session, policy):
        agent = await create_agent(db_session)
        test = await create_test(db_session, agent)
        await add_feedback(db_session, agent, rating=5, count=60, test=test, variant="A")
        await add_feedback(db_session, agent, rating=1, count=60, test=test, variant="B")

        evaluator = ABTestEvaluator(db_session, policy)
        feedback = await evaluator.store.get_test_feedback(test.id)
        analysis = evaluator.analyze(test, feedback)

        assert await evaluator.promote(test, analysis) is True
        assert await evaluator.promote(test, analysis) is False

        logs = (await db_session.execute(select(SelfImprovementLog))).scalars().all()
        assert len(logs) == 1

    @pytest.mark.asyncio
    async def test_old_inconclusive_test_expires(self, db_session, policy):
        agent = await create_agent(db_session, system_prompt="control prompt")
        test = await create_test(db_session, agent, age=timedelta(days=31))
        await add_feedback(db_session, agent, rating=4, count=15, test=test, variant="A")
        await add_feedback(db_session, agent, rating=4, count=15, test=test, variant="B")

        analysis = await ABTestEvaluator(db_session, policy).evaluate(test)

        assert analysis["outcome"] == "expired"
        stored = (await db_session.execute(select(PromptABTest))).scalar_one()
        assert stored.status == "expired"
        assert stored.winner is None
        assert stored.results["sample_size_a"] == 15

        refreshed = (await db_session.execute(select(AIAgent))).scalar_one()
        assert refreshed.system_prompt == "control prompt"
        assert refreshed.version == 1

    @pytest.mark.asyncio
    async def test_sample_cap_expires(self, db_session):
        policy = ImprovementPolicy(max_test_samples=30)
        agent = await create_agent(db_session)
        test = await create_test(db_session, agent)
        await add_feedback(db_session, agent, rating=4, count=16, test=test, variant="A")
        await add_feedback(db_session, agent, rating=4, count=16, test=test, variant="B")

        analysis = await ABTestEvaluator(db_session, policy).evaluate(test)

        assert analysis["outcome"] == "expired"
