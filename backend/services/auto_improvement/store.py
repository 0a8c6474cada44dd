"""
PromptTuner - Auto-Improvement Store
====================================

Narrow read/write access to the feedback & metrics datastore used by the
improvement loop. Methods never commit; the calling component owns the
transaction so that a snapshot, its audit entry and the prompt replace land
together or not at all.
"""

import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.db.models import (
    ABTestStatus,
    AIAgent,
    AIFeedback,
    AIPerformanceMetric,
    ImprovementReview,
    PromptABTest,
    ReviewStatus,
    SelfImprovementLog,
)

logger = structlog.get_logger(__name__)


class StaleAgentError(Exception):
    """The agent changed since it was read; the prompt replace was rejected."""

    def __init__(self, agent_id: uuid.UUID, expected_version: int):
        self.agent_id = agent_id
        self.expected_version = expected_version
        super().__init__(
            f"Agent {agent_id} is no longer at version {expected_version}"
        )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def agent_snapshot(agent: AIAgent) -> Dict[str, Any]:
    """JSON-serializable copy of the agent's full state."""
    return {
        "id": str(agent.id),
        "name": agent.name,
        "specialization": agent.specialization,
        "system_prompt": agent.system_prompt,
        "active": agent.active,
        "version": agent.version,
        "updated_at": agent.updated_at.isoformat() if agent.updated_at else None,
    }


class AutoImprovementStore:
    """Queries and writes against the improvement loop tables."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # =========================================================================
    # Agents
    # =========================================================================

    async def list_active_agents(self) -> List[AIAgent]:
        result = await self.db.execute(
            select(AIAgent)
            .where(AIAgent.active == True)
            .order_by(AIAgent.name)
        )
        return list(result.scalars().all())

    async def get_agent(self, agent_id: uuid.UUID) -> Optional[AIAgent]:
        result = await self.db.execute(
            select(AIAgent).where(AIAgent.id == agent_id)
        )
        return result.scalar_one_or_none()

    async def replace_agent_prompt(
        self,
        agent: AIAgent,
        new_prompt: str,
        expected_version: Optional[int] = None,
    ) -> AIAgent:
        """
        Replace the agent's prompt if nobody else changed it first.

        The UPDATE matches on the version the caller read and bumps it, so a
        concurrent writer makes this a no-op instead of a lost update.

        Raises:
            StaleAgentError: If the stored version no longer matches
        """
        expected_version = agent.version if expected_version is None else expected_version

        result = await self.db.execute(
            update(AIAgent)
            .where(and_(
                AIAgent.id == agent.id,
                AIAgent.version == expected_version,
            ))
            .values(
                system_prompt=new_prompt,
                version=AIAgent.version + 1,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            raise StaleAgentError(agent.id, expected_version)

        await self.db.refresh(agent)
        return agent

    # =========================================================================
    # Feedback & Metrics
    # =========================================================================

    async def get_recent_feedback(
        self,
        agent_id: uuid.UUID,
        since: datetime,
        limit: Optional[int] = None,
    ) -> List[AIFeedback]:
        """Feedback for an agent since ``since``, most recent first."""
        query = (
            select(AIFeedback)
            .where(and_(
                AIFeedback.agent_id == agent_id,
                AIFeedback.created_at >= since,
            ))
            .order_by(AIFeedback.created_at.desc())
        )
        if limit:
            query = query.limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_metrics_since(
        self,
        agent_id: uuid.UUID,
        since: date,
    ) -> List[AIPerformanceMetric]:
        result = await self.db.execute(
            select(AIPerformanceMetric)
            .where(and_(
                AIPerformanceMetric.agent_id == agent_id,
                AIPerformanceMetric.metric_date >= since,
            ))
            .order_by(AIPerformanceMetric.metric_date.desc())
        )
        return list(result.scalars().all())

    async def get_test_feedback(self, test_id: uuid.UUID) -> List[AIFeedback]:
        result = await self.db.execute(
            select(AIFeedback).where(AIFeedback.ab_test_id == test_id)
        )
        return list(result.scalars().all())

    async def count_test_feedback(self, test_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(func.count(AIFeedback.id)).where(AIFeedback.ab_test_id == test_id)
        )
        return result.scalar() or 0

    # =========================================================================
    # Audit Log
    # =========================================================================

    async def add_improvement_log(
        self,
        agent_id: uuid.UUID,
        improvement_type: str,
        before_state: Dict[str, Any],
        after_state: Dict[str, Any],
        improvement_reason: str,
        success_metrics: Dict[str, Any],
    ) -> SelfImprovementLog:
        entry = SelfImprovementLog(
            agent_id=agent_id,
            improvement_type=improvement_type,
            before_state=before_state,
            after_state=after_state,
            improvement_reason=improvement_reason,
            success_metrics=success_metrics,
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def get_log_entry(self, log_id: uuid.UUID) -> Optional[SelfImprovementLog]:
        result = await self.db.execute(
            select(SelfImprovementLog).where(SelfImprovementLog.id == log_id)
        )
        return result.scalar_one_or_none()

    async def list_log_entries(self, agent_id: uuid.UUID) -> List[SelfImprovementLog]:
        result = await self.db.execute(
            select(SelfImprovementLog)
            .where(SelfImprovementLog.agent_id == agent_id)
            .order_by(SelfImprovementLog.created_at)
        )
        return list(result.scalars().all())

    # =========================================================================
    # Experiments
    # =========================================================================

    async def add_ab_test(self, test: PromptABTest) -> PromptABTest:
        self.db.add(test)
        await self.db.flush()
        return test

    async def get_ab_test(self, test_id: uuid.UUID) -> Optional[PromptABTest]:
        result = await self.db.execute(
            select(PromptABTest).where(PromptABTest.id == test_id)
        )
        return result.scalar_one_or_none()

    async def list_active_tests(self) -> List[PromptABTest]:
        result = await self.db.execute(
            select(PromptABTest)
            .where(PromptABTest.status == ABTestStatus.ACTIVE.value)
            .order_by(PromptABTest.created_at)
        )
        return list(result.scalars().all())

    async def close_ab_test(
        self,
        test: PromptABTest,
        status: ABTestStatus,
        confidence: float,
        results: Dict[str, Any],
        winner: Optional[str] = None,
    ) -> bool:
        """
        Move an active test to a terminal status.

        Returns:
            False if the test had already left ``active``
        """
        result = await self.db.execute(
            update(PromptABTest)
            .where(and_(
                PromptABTest.id == test.id,
                PromptABTest.status == ABTestStatus.ACTIVE.value,
            ))
            .values(
                status=status.value,
                winner=winner,
                confidence_level=confidence,
                results=results,
                completed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        await self.db.refresh(test)
        return True

    # =========================================================================
    # Review Queue
    # =========================================================================

    async def add_review(
        self,
        agent_id: uuid.UUID,
        source: str,
        confidence: Optional[float],
        reason: str,
        proposal: Dict[str, Any],
    ) -> ImprovementReview:
        review = ImprovementReview(
            agent_id=agent_id,
            source=source,
            status=ReviewStatus.PENDING_REVIEW.value,
            confidence=confidence,
            reason=reason,
            proposal=proposal,
        )
        self.db.add(review)
        await self.db.flush()
        return review

    async def list_reviews(
        self,
        status: str = ReviewStatus.PENDING_REVIEW.value,
        agent_id: Optional[uuid.UUID] = None,
    ) -> List[ImprovementReview]:
        query = select(ImprovementReview).where(ImprovementReview.status == status)
        if agent_id:
            query = query.where(ImprovementReview.agent_id == agent_id)
        result = await self.db.execute(query.order_by(ImprovementReview.created_at.desc()))
        return list(result.scalars().all())
