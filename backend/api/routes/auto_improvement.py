"""
PromptTuner - Auto-Improvement API Routes
=========================================

API endpoints for the prompt-improvement control loop:
- Trigger one of the three loop actions
- Feedback ingestion
- Experiment listing and creation
- Pending review queue
- Manual rollback of an applied change
"""

from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from backend.api.deps import (
    get_async_session,
    get_engine,
    get_improvement_policy,
    require_configuration,
)
from backend.api.errors import NotFoundError
from backend.db.models import (
    ImprovementReview,
    PromptABTest,
    ReviewStatus,
    SelfImprovementLog,
)
from backend.services.auto_improvement import (
    AutoImprovementEngine,
    AutoImprovementStore,
    ExperimentManager,
    FeedbackService,
    ImprovementApplier,
    ImprovementPolicy,
)

logger = structlog.get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_configuration)])


# =============================================================================
# Request Models
# =============================================================================

class AutoImprovementRequest(BaseModel):
    """Loop action to run. Defaults to analyze_and_improve."""
    action: Optional[str] = Field(
        default=None,
        description="analyze_and_improve | run_ab_tests | optimize_prompts",
    )


class FeedbackRequest(BaseModel):
    """One rated interaction with an agent."""
    agent_id: UUID
    user_feedback: Dict[str, Any] = Field(
        default_factory=dict,
        description="Rating payload, e.g. {\"rating\": 4, \"helpful\": true}",
    )
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    feedback_type: str = "explicit"
    prompt_used: Optional[str] = None
    ai_response: Optional[str] = None
    response_time_ms: Optional[int] = Field(default=None, ge=0)
    tokens_used: Optional[int] = Field(default=None, ge=0)
    ab_test_id: Optional[UUID] = None
    ab_test_variant: Optional[str] = Field(default=None, description="A or B")


class CreateExperimentRequest(BaseModel):
    """Start an A/B test. The control defaults to the agent's current prompt."""
    agent_id: UUID
    challenger_prompt: str = Field(..., min_length=1)
    control_prompt: Optional[str] = None
    success_metric: str = ExperimentManager.DEFAULT_SUCCESS_METRIC
    traffic_split: Optional[float] = None
    test_name: Optional[str] = None


class RollbackRequest(BaseModel):
    reason: Optional[str] = None


# =============================================================================
# Serializers
# =============================================================================

def _experiment_to_dict(test: PromptABTest) -> Dict[str, Any]:
    return {
        "id": str(test.id),
        "agent_id": str(test.agent_id),
        "test_name": test.test_name,
        "prompt_a": test.prompt_a,
        "prompt_b": test.prompt_b,
        "success_metric": test.success_metric,
        "traffic_split": test.traffic_split,
        "status": test.status,
        "winner": test.winner,
        "confidence_level": test.confidence_level,
        "results": test.results,
        "created_at": test.created_at.isoformat() if test.created_at else None,
        "completed_at": test.completed_at.isoformat() if test.completed_at else None,
    }


def _review_to_dict(review: ImprovementReview) -> Dict[str, Any]:
    return {
        "id": str(review.id),
        "agent_id": str(review.agent_id),
        "source": review.source,
        "status": review.status,
        "confidence": review.confidence,
        "reason": review.reason,
        "proposal": review.proposal,
        "created_at": review.created_at.isoformat() if review.created_at else None,
    }


def _log_to_dict(entry: SelfImprovementLog) -> Dict[str, Any]:
    return {
        "id": str(entry.id),
        "agent_id": str(entry.agent_id),
        "improvement_type": entry.improvement_type,
        "before_state": entry.before_state,
        "after_state": entry.after_state,
        "improvement_reason": entry.improvement_reason,
        "success_metrics": entry.success_metrics,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


# =============================================================================
# Endpoints
# =============================================================================

@router.post("")
async def run_auto_improvement(
    request: Optional[AutoImprovementRequest] = None,
    engine: AutoImprovementEngine = Depends(get_engine),
) -> Dict[str, List[Dict[str, Any]]]:
    """
    Run one pass of the improvement loop.

    Returns ``{"improvements": [...]}``, ``{"testResults": [...]}`` or
    ``{"optimizations": [...]}`` depending on the action. Per-agent and
    per-test failures are skipped, never reported here.
    """
    action = request.action if request else None
    return await engine.run(action)


@router.post("/feedback", status_code=201)
async def submit_feedback(
    request: FeedbackRequest,
    db: AsyncSession = Depends(get_async_session),
) -> Dict[str, Any]:
    """Record a rated interaction and update the agent's daily metrics."""
    service = FeedbackService(db)
    record = await service.submit_feedback(**request.model_dump())
    return {
        "success": True,
        "feedback_id": str(record.id),
        "rating": record.rating,
    }


@router.get("/experiments")
async def list_experiments(
    db: AsyncSession = Depends(get_async_session),
    policy: ImprovementPolicy = Depends(get_improvement_policy),
) -> Dict[str, Any]:
    """List active experiments."""
    manager = ExperimentManager(db, policy)
    tests = await manager.list_active_experiments()
    return {"experiments": [_experiment_to_dict(t) for t in tests]}


@router.post("/experiments", status_code=201)
async def create_experiment(
    request: CreateExperimentRequest,
    db: AsyncSession = Depends(get_async_session),
    policy: ImprovementPolicy = Depends(get_improvement_policy),
) -> Dict[str, Any]:
    """Start a prompt experiment for an agent."""
    control_prompt = request.control_prompt
    if control_prompt is None:
        agent = await AutoImprovementStore(db).get_agent(request.agent_id)
        if agent is None:
            raise NotFoundError("Agent", str(request.agent_id))
        control_prompt = agent.system_prompt

    manager = ExperimentManager(db, policy)
    test = await manager.create_experiment(
        agent_id=request.agent_id,
        control_prompt=control_prompt,
        challenger_prompt=request.challenger_prompt,
        success_metric=request.success_metric,
        traffic_split=request.traffic_split,
        test_name=request.test_name,
    )
    return _experiment_to_dict(test)


@router.get("/reviews")
async def list_reviews(
    status: ReviewStatus = Query(ReviewStatus.PENDING_REVIEW),
    agent_id: Optional[UUID] = Query(None),
    db: AsyncSession = Depends(get_async_session),
) -> Dict[str, Any]:
    """List parked proposals, pending ones by default."""
    reviews = await AutoImprovementStore(db).list_reviews(status=status.value, agent_id=agent_id)
    return {"reviews": [_review_to_dict(r) for r in reviews]}


@router.post("/improvements/{log_id}/rollback")
async def rollback_improvement(
    log_id: UUID,
    request: Optional[RollbackRequest] = None,
    db: AsyncSession = Depends(get_async_session),
    policy: ImprovementPolicy = Depends(get_improvement_policy),
) -> Dict[str, Any]:
    """Restore the prompt an applied change replaced."""
    applier = ImprovementApplier(db, policy)
    entry = await applier.rollback(log_id, reason=request.reason if request else None)
    return _log_to_dict(entry)
