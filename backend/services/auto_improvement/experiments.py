"""
PromptTuner - Experiment Manager
================================

Creates and lists two-variant prompt experiments. Routing live traffic to a
variant is the job of the surrounding application, which tags each feedback
record with ``ab_test_id`` and ``ab_test_variant``.
"""

import uuid
from datetime import timedelta
from typing import List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.errors import NotFoundError, ValidationError
from backend.db.models import ABTestStatus, PromptABTest
from backend.services.auto_improvement.policy import ImprovementPolicy
from backend.services.auto_improvement.store import AutoImprovementStore, as_utc, utcnow

logger = structlog.get_logger(__name__)


class ExperimentManager:
    """Lifecycle bookkeeping for prompt A/B tests."""

    DEFAULT_SUCCESS_METRIC = "user_satisfaction"

    def __init__(self, db: AsyncSession, policy: Optional[ImprovementPolicy] = None):
        self.db = db
        self.store = AutoImprovementStore(db)
        self.policy = policy or ImprovementPolicy()

    async def create_experiment(
        self,
        agent_id: uuid.UUID,
        control_prompt: str,
        challenger_prompt: str,
        success_metric: str = DEFAULT_SUCCESS_METRIC,
        traffic_split: Optional[float] = None,
        test_name: Optional[str] = None,
    ) -> PromptABTest:
        """
        Start an experiment: A is the control prompt, B the challenger.

        Raises:
            NotFoundError: Unknown agent
            ValidationError: Empty prompt or split outside (0, 1)
        """
        traffic_split = self.policy.default_traffic_split if traffic_split is None else traffic_split
        if not 0.0 < traffic_split < 1.0:
            raise ValidationError("traffic_split must be between 0 and 1")
        if not control_prompt or not challenger_prompt:
            raise ValidationError("Both prompts are required")

        agent = await self.store.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("Agent", str(agent_id))

        test = PromptABTest(
            agent_id=agent.id,
            test_name=test_name or f"Auto-optimization {utcnow().isoformat()}",
            prompt_a=control_prompt,
            prompt_b=challenger_prompt,
            success_metric=success_metric,
            traffic_split=traffic_split,
            status=ABTestStatus.ACTIVE.value,
        )
        await self.store.add_ab_test(test)
        await self.db.commit()

        logger.info(
            "Created prompt experiment",
            test_id=str(test.id),
            agent_id=str(agent.id),
            test_name=test.test_name,
            traffic_split=traffic_split,
        )
        return test

    async def list_active_experiments(self) -> List[PromptABTest]:
        return await self.store.list_active_tests()

    async def is_decidable(self, test: PromptABTest, sample_count: Optional[int] = None) -> bool:
        """
        Enough tagged feedback (across both variants) to evaluate.

        Pass ``sample_count`` when the feedback has already been fetched to
        skip the count query.
        """
        if sample_count is None:
            sample_count = await self.store.count_test_feedback(test.id)
        return sample_count >= self.policy.min_test_samples

    def is_expired(self, test: PromptABTest, sample_count: int) -> bool:
        """Past the maximum age or sample budget without being decided."""
        created_at = as_utc(test.created_at)
        too_old = (
            created_at is not None
            and utcnow() - created_at > timedelta(days=self.policy.max_test_age_days)
        )
        return too_old or sample_count > self.policy.max_test_samples
