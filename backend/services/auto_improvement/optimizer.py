"""
PromptTuner - Prompt Optimizer
==============================

Seeds experiments: for every agent with enough recent feedback, asks the
critic for a rewrite and, when confident, pits it against the current prompt.
"""

from datetime import timedelta
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from backend.db.models import AIAgent, ReviewSource
from backend.services.auto_improvement.critic import PerformanceCritic
from backend.services.auto_improvement.experiments import ExperimentManager
from backend.services.auto_improvement.policy import ImprovementPolicy
from backend.services.auto_improvement.store import AutoImprovementStore, utcnow

logger = structlog.get_logger(__name__)


class PromptOptimizer:
    """Turns confident rewrite candidates into A/B tests."""

    def __init__(
        self,
        db: AsyncSession,
        critic: PerformanceCritic,
        policy: Optional[ImprovementPolicy] = None,
    ):
        self.db = db
        self.critic = critic
        self.policy = policy or ImprovementPolicy()
        self.store = AutoImprovementStore(db)
        self.experiments = ExperimentManager(db, self.policy)

    async def optimize_agent(self, agent: AIAgent) -> Optional[Dict[str, Any]]:
        """
        Propose an optimization for one agent.

        Returns:
            The candidate with the created ``test_id``, or ``None`` when the
            agent had too little feedback, the critic produced nothing, or the
            candidate went to the review queue.
        """
        since = utcnow() - timedelta(days=self.policy.optimization_window_days)
        feedback = await self.store.get_recent_feedback(
            agent.id,
            since=since,
            limit=self.policy.optimization_feedback_limit,
        )
        if len(feedback) < self.policy.optimization_min_feedback:
            logger.debug(
                "Not enough feedback to optimize",
                agent_id=str(agent.id),
                feedback_count=len(feedback),
            )
            return None

        candidate = await self.critic.propose_optimization(agent, feedback)
        if candidate is None:
            return None

        if candidate.confidence <= self.policy.optimization_confidence:
            review = await self.store.add_review(
                agent_id=agent.id,
                source=ReviewSource.OPTIMIZATION.value,
                confidence=candidate.confidence,
                reason=(
                    f"confidence {candidate.confidence:.2f} not above "
                    f"{self.policy.optimization_confidence:.2f}"
                ),
                proposal={**candidate.to_dict(), "policy_version": self.policy.version},
            )
            await self.db.commit()
            logger.info(
                "Queued optimization for review",
                agent_id=str(agent.id),
                confidence=candidate.confidence,
                review_id=str(review.id),
            )
            return None

        test = await self.experiments.create_experiment(
            agent_id=agent.id,
            control_prompt=agent.system_prompt,
            challenger_prompt=candidate.optimized_prompt,
            success_metric=ExperimentManager.DEFAULT_SUCCESS_METRIC,
            traffic_split=self.policy.default_traffic_split,
        )

        result = candidate.to_dict()
        result["test_id"] = str(test.id)
        result["test_name"] = test.test_name
        return result
