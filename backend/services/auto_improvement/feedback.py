"""
PromptTuner - Feedback Ingestion
================================

Records rated interactions and keeps the per-agent daily metrics in step.
"""

import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.errors import NotFoundError, ValidationError
from backend.db.models import ABTestVariant, AIFeedback, AIPerformanceMetric
from backend.services.auto_improvement.store import AutoImprovementStore, utcnow

logger = structlog.get_logger(__name__)

SUCCESS_RATING = 3


class FeedbackService:
    """Stores feedback records and maintains ``ai_performance_metrics``."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.store = AutoImprovementStore(db)

    async def submit_feedback(
        self,
        agent_id: uuid.UUID,
        user_feedback: Dict[str, Any],
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        feedback_type: str = "explicit",
        prompt_used: Optional[str] = None,
        ai_response: Optional[str] = None,
        response_time_ms: Optional[int] = None,
        tokens_used: Optional[int] = None,
        ab_test_id: Optional[uuid.UUID] = None,
        ab_test_variant: Optional[str] = None,
    ) -> AIFeedback:
        """
        Record one interaction and refresh today's metric row for the agent.

        Raises:
            NotFoundError: Unknown agent or experiment
            ValidationError: Experiment tag is incomplete or names another agent
        """
        agent = await self.store.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("Agent", str(agent_id))

        if (ab_test_id is None) != (ab_test_variant is None):
            raise ValidationError("ab_test_id and ab_test_variant must be given together")

        if ab_test_id is not None:
            if ab_test_variant not in (ABTestVariant.A.value, ABTestVariant.B.value):
                raise ValidationError("ab_test_variant must be 'A' or 'B'")
            test = await self.store.get_ab_test(ab_test_id)
            if test is None:
                raise NotFoundError("A/B test", str(ab_test_id))
            if test.agent_id != agent.id:
                raise ValidationError("A/B test belongs to a different agent")
            if test.is_terminal:
                raise ValidationError(f"A/B test is no longer active (status: {test.status})")

        record = AIFeedback(
            agent_id=agent.id,
            user_id=user_id,
            session_id=session_id,
            feedback_type=feedback_type,
            user_feedback=user_feedback or {},
            prompt_used=prompt_used,
            ai_response=ai_response,
            response_time_ms=response_time_ms,
            tokens_used=tokens_used,
            ab_test_id=ab_test_id,
            ab_test_variant=ab_test_variant,
        )
        self.db.add(record)
        await self.db.flush()

        metric = await self.refresh_daily_metric(agent.id, utcnow().date())
        await self.db.commit()

        logger.info(
            "Feedback recorded",
            feedback_id=str(record.id),
            agent_id=str(agent.id),
            rating=record.rating,
            ab_test_id=str(ab_test_id) if ab_test_id else None,
            daily_requests=metric.total_requests,
        )
        if record.rating is not None and record.rating < SUCCESS_RATING:
            logger.warning("Low rating received", agent_id=str(agent.id), rating=record.rating)

        return record

    async def refresh_daily_metric(self, agent_id: uuid.UUID, day: date) -> AIPerformanceMetric:
        """Recompute one agent's aggregate for ``day`` (UTC) and upsert it."""
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1)

        result = await self.db.execute(
            select(AIFeedback).where(and_(
                AIFeedback.agent_id == agent_id,
                AIFeedback.created_at >= start,
                AIFeedback.created_at < end,
            ))
        )
        records = list(result.scalars().all())

        ratings = [r.rating for r in records if r.rating is not None]
        times = [r.response_time_ms for r in records if r.response_time_ms is not None]

        result = await self.db.execute(
            select(AIPerformanceMetric).where(and_(
                AIPerformanceMetric.agent_id == agent_id,
                AIPerformanceMetric.metric_date == day,
            ))
        )
        metric = result.scalar_one_or_none()
        if metric is None:
            metric = AIPerformanceMetric(agent_id=agent_id, metric_date=day)
            self.db.add(metric)

        metric.avg_rating = sum(ratings) / len(ratings) if ratings else None
        metric.avg_response_time_ms = sum(times) / len(times) if times else None
        metric.total_requests = len(records)
        metric.successful_requests = sum(1 for r in ratings if r >= SUCCESS_RATING)
        metric.total_tokens = sum(r.tokens_used or 0 for r in records)

        await self.db.flush()
        return metric
