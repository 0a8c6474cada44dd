"""
PromptTuner - SQLAlchemy Models
===============================

Database models with multi-database support (PostgreSQL, SQLite).
Uses SQLAlchemy 2.0 with async support.

Tables mirror the hosted datastore the improvement loop reads and writes:
ai_agents, ai_feedback, ai_performance_metrics, self_improvement_log,
prompt_ab_tests and improvement_reviews.
"""

import json
import uuid
from datetime import date, datetime
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    TypeDecorator,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import CHAR, TypeEngine


# =============================================================================
# Database-agnostic Type Decorators
# =============================================================================

class GUID(TypeDecorator):
    """Platform-independent GUID type.

    Uses PostgreSQL's UUID type when available, otherwise uses
    CHAR(36) for SQLite/other databases.
    """
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect) -> TypeEngine:
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        else:
            return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        elif dialect.name == 'postgresql':
            return value
        else:
            if isinstance(value, uuid.UUID):
                return str(value)
            return value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if dialect.name == 'postgresql':
            return value
        else:
            if not isinstance(value, uuid.UUID):
                return uuid.UUID(value)
            return value


class JSONType(TypeDecorator):
    """Platform-independent JSON type.

    Uses PostgreSQL's JSONB when available, otherwise uses Text with JSON serialization.
    """
    impl = Text
    cache_ok = True

    def load_dialect_impl(self, dialect) -> TypeEngine:
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(JSONB)
        else:
            return dialect.type_descriptor(Text())

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == 'postgresql':
            return value
        return json.dumps(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if dialect.name == 'postgresql':
            return value
        return json.loads(value)


# =============================================================================
# Enums
# =============================================================================

class ABTestStatus(str, PyEnum):
    """Lifecycle of a prompt experiment. COMPLETED and EXPIRED are terminal."""
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"


class ABTestVariant(str, PyEnum):
    """Experiment arm. A is the control prompt, B the challenger."""
    A = "A"
    B = "B"


class ImprovementType(str, PyEnum):
    """Kinds of prompt change recorded in the audit log."""
    PROMPT_OPTIMIZATION = "prompt_optimization"
    AB_TEST_PROMOTION = "ab_test_promotion"
    MANUAL_ROLLBACK = "manual_rollback"


class ReviewStatus(str, PyEnum):
    """State of a proposal parked for human inspection."""
    PENDING_REVIEW = "pending_review"
    ACCEPTED = "accepted"
    DISMISSED = "dismissed"


class ReviewSource(str, PyEnum):
    """Which loop produced a parked proposal."""
    ANALYSIS = "analysis"
    OPTIMIZATION = "optimization"


# =============================================================================
# Base Model
# =============================================================================

class Base(DeclarativeBase):
    """Base class for all models."""
    # Read server-side defaults (timestamps) back on INSERT so async
    # sessions never lazy-load them.
    __mapper_args__ = {"eager_defaults": True}


# =============================================================================
# Mixins
# =============================================================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class UUIDMixin:
    """Mixin for UUID primary key."""
    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )


# =============================================================================
# Models
# =============================================================================

class AIAgent(Base, UUIDMixin, TimestampMixin):
    """
    LLM-backed chat persona defined by a system prompt.

    The prompt is only replaced as a whole. ``version`` is the optimistic
    concurrency token: every replace checks and increments it.
    """
    __tablename__ = "ai_agents"

    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    specialization: Mapped[Optional[str]] = mapped_column(String(255))
    system_prompt: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    feedback: Mapped[List["AIFeedback"]] = relationship("AIFeedback", back_populates="agent")

    def __repr__(self) -> str:
        return f"<AIAgent(name='{self.name}', version={self.version})>"


class AIFeedback(Base, UUIDMixin):
    """
    A single user-rated interaction.

    Written by the surrounding application; read-only for the improvement loop.
    Experiment traffic carries ``ab_test_id`` and the variant that served it.
    """
    __tablename__ = "ai_feedback"

    agent_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("ai_agents.id"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[Optional[str]] = mapped_column(String(100))
    session_id: Mapped[Optional[str]] = mapped_column(String(100))
    feedback_type: Mapped[str] = mapped_column(String(50), default="explicit", nullable=False)
    user_feedback: Mapped[dict] = mapped_column(JSONType(), default=dict, nullable=False)
    prompt_used: Mapped[Optional[str]] = mapped_column(Text)
    ai_response: Mapped[Optional[str]] = mapped_column(Text)
    response_time_ms: Mapped[Optional[int]] = mapped_column(Integer)
    tokens_used: Mapped[Optional[int]] = mapped_column(Integer)

    ab_test_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(),
        ForeignKey("prompt_ab_tests.id"),
        index=True,
    )
    ab_test_variant: Mapped[Optional[str]] = mapped_column(String(1))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    agent: Mapped["AIAgent"] = relationship("AIAgent", back_populates="feedback")

    @property
    def rating(self) -> Optional[float]:
        value = (self.user_feedback or {}).get("rating")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return float(value)

    def __repr__(self) -> str:
        return f"<AIFeedback(agent_id='{self.agent_id}', rating={self.rating})>"


class AIPerformanceMetric(Base, UUIDMixin, TimestampMixin):
    """Daily aggregate per agent."""
    __tablename__ = "ai_performance_metrics"
    __table_args__ = (
        UniqueConstraint("agent_id", "metric_date", name="uq_performance_metric_agent_day"),
    )

    agent_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("ai_agents.id"),
        nullable=False,
        index=True,
    )
    metric_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    avg_rating: Mapped[Optional[float]] = mapped_column(Float)
    avg_response_time_ms: Mapped[Optional[float]] = mapped_column(Float)
    total_requests: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful_requests: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    @property
    def success_rate(self) -> float:
        if not self.total_requests:
            return 0.0
        return self.successful_requests / self.total_requests

    def __repr__(self) -> str:
        return f"<AIPerformanceMetric(agent_id='{self.agent_id}', date={self.metric_date})>"


class SelfImprovementLog(Base, UUIDMixin):
    """
    Append-only audit record of every prompt replacement.

    ``before_state`` holds the full agent snapshot needed for a human to
    restore the previous prompt.
    """
    __tablename__ = "self_improvement_log"

    agent_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("ai_agents.id"),
        nullable=False,
        index=True,
    )
    improvement_type: Mapped[str] = mapped_column(String(50), nullable=False)
    before_state: Mapped[dict] = mapped_column(JSONType(), nullable=False)
    after_state: Mapped[dict] = mapped_column(JSONType(), nullable=False)
    improvement_reason: Mapped[Optional[str]] = mapped_column(Text)
    success_metrics: Mapped[Optional[dict]] = mapped_column(JSONType())

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<SelfImprovementLog(agent_id='{self.agent_id}', type='{self.improvement_type}')>"


class PromptABTest(Base, UUIDMixin):
    """Two-variant prompt experiment for one agent."""
    __tablename__ = "prompt_ab_tests"
    __table_args__ = (
        Index("ix_prompt_ab_tests_status_agent", "status", "agent_id"),
    )

    agent_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("ai_agents.id"),
        nullable=False,
        index=True,
    )
    test_name: Mapped[str] = mapped_column(String(255), nullable=False)
    prompt_a: Mapped[str] = mapped_column(Text, nullable=False)
    prompt_b: Mapped[str] = mapped_column(Text, nullable=False)
    success_metric: Mapped[str] = mapped_column(String(100), default="user_satisfaction", nullable=False)
    traffic_split: Mapped[float] = mapped_column(Float, default=0.5, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=ABTestStatus.ACTIVE.value, nullable=False)
    winner: Mapped[Optional[str]] = mapped_column(String(1))
    confidence_level: Mapped[Optional[float]] = mapped_column(Float)
    results: Mapped[Optional[dict]] = mapped_column(JSONType())

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    @property
    def is_terminal(self) -> bool:
        return self.status != ABTestStatus.ACTIVE.value

    def prompt_for(self, variant: str) -> str:
        return self.prompt_a if variant == ABTestVariant.A.value else self.prompt_b

    def __repr__(self) -> str:
        return f"<PromptABTest(name='{self.test_name}', status='{self.status}')>"


class ImprovementReview(Base, UUIDMixin, TimestampMixin):
    """Proposal that was not applied automatically, kept for human review."""
    __tablename__ = "improvement_reviews"

    agent_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("ai_agents.id"),
        nullable=False,
        index=True,
    )
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=ReviewStatus.PENDING_REVIEW.value,
        nullable=False,
        index=True,
    )
    confidence: Mapped[Optional[float]] = mapped_column(Float)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    proposal: Mapped[dict] = mapped_column(JSONType(), nullable=False)

    def __repr__(self) -> str:
        return f"<ImprovementReview(agent_id='{self.agent_id}', status='{self.status}')>"
