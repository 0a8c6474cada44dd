"""
PromptTuner - Statistical Evaluator
===================================

Scores the two arms of a prompt experiment and promotes the winner once the
heuristic confidence clears the promotion bar.

Confidence is a heuristic with no variance term:

    base       = min(min(n_a, n_b) / 50, 1)
    effect     = min(|score_a - score_b| / 2, 1)
    confidence = (base + effect) / 2
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from backend.db.models import (
    ABTestStatus,
    ABTestVariant,
    AIFeedback,
    ImprovementType,
    PromptABTest,
)
from backend.services.auto_improvement.experiments import ExperimentManager
from backend.services.auto_improvement.policy import ImprovementPolicy
from backend.services.auto_improvement.store import (
    AutoImprovementStore,
    StaleAgentError,
    agent_snapshot,
)

logger = structlog.get_logger(__name__)


@dataclass
class GroupMetrics:
    score: float
    avg_rating: float
    avg_response_time_ms: float
    sample_size: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def calculate_group_metrics(
    group: Iterable[AIFeedback],
    policy: Optional[ImprovementPolicy] = None,
) -> GroupMetrics:
    """
    Mean rating and response time for one arm.

    A record without a numeric rating counts as ``policy.default_rating``;
    one without a response time counts as ``policy.default_response_time_ms``.
    An empty arm scores 0 with sample size 0.
    """
    policy = policy or ImprovementPolicy()
    group = list(group)
    if not group:
        return GroupMetrics(score=0.0, avg_rating=0.0, avg_response_time_ms=0.0, sample_size=0)

    ratings = [
        f.rating if f.rating is not None else policy.default_rating
        for f in group
    ]
    response_times = [
        f.response_time_ms if f.response_time_ms is not None else policy.default_response_time_ms
        for f in group
    ]

    avg_rating = sum(ratings) / len(ratings)
    return GroupMetrics(
        score=avg_rating,
        avg_rating=avg_rating,
        avg_response_time_ms=sum(response_times) / len(response_times),
        sample_size=len(group),
    )


def calculate_statistical_confidence(
    metrics_a: GroupMetrics,
    metrics_b: GroupMetrics,
    policy: Optional[ImprovementPolicy] = None,
) -> float:
    """Heuristic confidence in [0, 1], monotone in sample size and effect."""
    policy = policy or ImprovementPolicy()
    min_sample_size = min(metrics_a.sample_size, metrics_b.sample_size)
    effect_size = abs(metrics_a.score - metrics_b.score)

    base_confidence = min(min_sample_size / policy.full_confidence_samples, 1.0)
    effect_confidence = min(effect_size / policy.full_confidence_effect, 1.0)
    return (base_confidence + effect_confidence) / 2


def pick_winner(metrics_a: GroupMetrics, metrics_b: GroupMetrics) -> str:
    """Higher score wins; a tie goes to the challenger."""
    if metrics_a.score > metrics_b.score:
        return ABTestVariant.A.value
    return ABTestVariant.B.value


class ABTestEvaluator:
    """Evaluates active experiments and closes the ones that are decided."""

    def __init__(self, db: AsyncSession, policy: Optional[ImprovementPolicy] = None):
        self.db = db
        self.store = AutoImprovementStore(db)
        self.policy = policy or ImprovementPolicy()
        self.experiments = ExperimentManager(db, self.policy)

    def analyze(self, test: PromptABTest, feedback: List[AIFeedback]) -> Dict[str, Any]:
        group_a = [f for f in feedback if f.ab_test_variant == ABTestVariant.A.value]
        group_b = [f for f in feedback if f.ab_test_variant == ABTestVariant.B.value]

        metrics_a = calculate_group_metrics(group_a, self.policy)
        metrics_b = calculate_group_metrics(group_b, self.policy)

        return {
            "test_id": str(test.id),
            "test_name": test.test_name,
            "agent_id": str(test.agent_id),
            "group_a_metrics": metrics_a.to_dict(),
            "group_b_metrics": metrics_b.to_dict(),
            "winner": pick_winner(metrics_a, metrics_b),
            "confidence": calculate_statistical_confidence(metrics_a, metrics_b, self.policy),
            "improvement": abs(metrics_a.score - metrics_b.score),
            "sample_size_a": metrics_a.sample_size,
            "sample_size_b": metrics_b.sample_size,
            "policy_version": self.policy.version,
        }

    async def evaluate(self, test: PromptABTest) -> Optional[Dict[str, Any]]:
        """
        Evaluate one experiment.

        Returns:
            The analysis with an ``outcome`` of ``promoted``, ``expired`` or
            ``running``; ``None`` when the test is terminal or has too few
            samples to decide.

        Raises:
            StaleAgentError: The agent changed while the winner was promoted
        """
        if test.is_terminal:
            return None

        feedback = await self.store.get_test_feedback(test.id)
        if not await self.experiments.is_decidable(test, len(feedback)):
            logger.debug(
                "Experiment not yet decidable",
                test_id=str(test.id),
                samples=len(feedback),
                required=self.policy.min_test_samples,
            )
            return None

        analysis = self.analyze(test, feedback)

        if analysis["confidence"] > self.policy.promotion_confidence:
            promoted = await self.promote(test, analysis)
            analysis["outcome"] = "promoted" if promoted else "already_closed"
        elif self.experiments.is_expired(test, len(feedback)):
            expired = await self.expire(test, analysis)
            analysis["outcome"] = "expired" if expired else "already_closed"
        else:
            analysis["outcome"] = "running"

        return analysis

    async def promote(self, test: PromptABTest, analysis: Dict[str, Any]) -> bool:
        """
        Write the winning prompt to the agent and complete the test.

        All three writes share one transaction; the status guard makes a
        second promotion of the same test a no-op.
        """
        winner = analysis["winner"]
        winning_prompt = test.prompt_for(winner)

        agent = await self.store.get_agent(test.agent_id)
        if agent is None:
            logger.warning("Experiment agent missing", test_id=str(test.id), agent_id=str(test.agent_id))
            return False

        before_state = agent_snapshot(agent)
        after_state = {**before_state, "system_prompt": winning_prompt}

        try:
            closed = await self.store.close_ab_test(
                test,
                ABTestStatus.COMPLETED,
                confidence=analysis["confidence"],
                results=analysis,
                winner=winner,
            )
            if not closed:
                await self.db.rollback()
                return False

            await self.store.add_improvement_log(
                agent_id=agent.id,
                improvement_type=ImprovementType.AB_TEST_PROMOTION.value,
                before_state=before_state,
                after_state=after_state,
                improvement_reason=f"A/B test {test.test_name} winner: {winner}",
                success_metrics={
                    "test_id": str(test.id),
                    "confidence": analysis["confidence"],
                    "improvement": analysis["improvement"],
                    "auto_applied": True,
                    "policy_version": self.policy.version,
                },
            )
            await self.store.replace_agent_prompt(
                agent,
                winning_prompt,
                expected_version=before_state["version"],
            )
            await self.db.commit()
        except StaleAgentError:
            await self.db.rollback()
            logger.warning(
                "Rejected stale promotion",
                test_id=analysis["test_id"],
                agent_id=before_state["id"],
                expected_version=before_state["version"],
            )
            raise

        logger.info(
            "Experiment completed",
            test_id=analysis["test_id"],
            test_name=analysis["test_name"],
            winner=winner,
            confidence=analysis["confidence"],
        )
        return True

    async def expire(self, test: PromptABTest, analysis: Dict[str, Any]) -> bool:
        """Close an inconclusive experiment without touching the agent."""
        closed = await self.store.close_ab_test(
            test,
            ABTestStatus.EXPIRED,
            confidence=analysis["confidence"],
            results=analysis,
        )
        if not closed:
            await self.db.rollback()
            return False

        await self.db.commit()
        logger.info(
            "Experiment expired",
            test_id=analysis["test_id"],
            test_name=analysis["test_name"],
            confidence=analysis["confidence"],
            samples=analysis["sample_size_a"] + analysis["sample_size_b"],
        )
        return True
