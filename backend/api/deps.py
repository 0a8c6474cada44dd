"""
PromptTuner - API Dependencies
==============================

Centralized FastAPI dependencies for use across API routes:
- Configuration guard (require_configuration)
- Database sessions (get_async_session)
- Improvement loop wiring (get_improvement_policy, get_improvement_llm, get_engine)
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from backend.api.errors import ExternalServiceError
from backend.core.config import validate_required_settings

# Re-export from database module
from backend.db.database import get_async_session

from backend.services.auto_improvement import AutoImprovementEngine, ImprovementPolicy

logger = structlog.get_logger(__name__)


async def require_configuration() -> None:
    """
    Reject the request before any processing when secrets are missing.

    Raises:
        ConfigurationError: LLM key or datastore URL not configured
    """
    validate_required_settings()


def get_improvement_policy() -> ImprovementPolicy:
    return ImprovementPolicy.from_settings()


def get_improvement_llm():
    """JSON-mode chat model used by the critic."""
    from backend.services.llm import LLMFactory

    try:
        return LLMFactory.get_json_chat_model()
    except Exception as e:
        logger.error("Failed to create chat model", error=str(e))
        raise ExternalServiceError("LLM", "could not create chat model", original_error=str(e))


async def get_engine(
    db: AsyncSession = Depends(get_async_session),
    llm=Depends(get_improvement_llm),
    policy: ImprovementPolicy = Depends(get_improvement_policy),
) -> AutoImprovementEngine:
    return AutoImprovementEngine(db, llm=llm, policy=policy)


__all__ = [
    "require_configuration",
    "get_async_session",
    "get_improvement_policy",
    "get_improvement_llm",
    "get_engine",
]
