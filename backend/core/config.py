"""
PromptTuner - Core Configuration
================================

Centralized configuration using Pydantic settings.
Settings can be configured via:
1. Environment variables (.env file) - For secrets and infrastructure
2. Defaults - Sensible defaults for all settings

Usage:
    from backend.core.config import settings, validate_required_settings

    api_key = settings.OPENAI_API_KEY
    validate_required_settings()  # raises ConfigurationError when secrets are missing
"""

from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings

import structlog

logger = structlog.get_logger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    These are static settings that require restart to change.

    Settings are divided into:
    - SECRETS: API keys (must be in .env, never in database)
    - INFRASTRUCTURE: Database URLs
    - POLICY: Thresholds and windows of the improvement loop
    """

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = Field(default="PromptTuner", description="Application name")
    DEBUG: bool = Field(default=False, description="Debug mode")
    ENVIRONMENT: str = Field(default="development", description="Environment (development, staging, production)")
    LOG_FORMAT: str = Field(default="console", description="Log renderer (console or json)")
    CORS_ORIGINS: str = Field(default="http://localhost:3000", description="Comma-separated allowed origins")

    # ==========================================================================
    # LLM (SECRETS - .env only)
    # ==========================================================================
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key")
    OPENAI_BASE_URL: str = Field(default="", description="Optional OpenAI-compatible base URL")
    AUTO_IMPROVEMENT_MODEL: str = Field(default="gpt-4o-mini", description="Chat model used by the critic")
    AUTO_IMPROVEMENT_TEMPERATURE: float = Field(default=0.3, description="Critic sampling temperature")

    # ==========================================================================
    # Database
    # ==========================================================================
    DATABASE_URL: str = Field(default="", description="Database connection URL")
    DATABASE_TYPE: str = Field(default="postgresql", description="postgresql or sqlite")
    DB_POOL_SIZE: int = Field(default=10, description="Connection pool size")
    DB_MAX_OVERFLOW: int = Field(default=10, description="Connection pool overflow")

    # ==========================================================================
    # Improvement Policy
    # ==========================================================================
    IMPROVEMENT_POLICY_VERSION: str = Field(default="2024.1", description="Policy version recorded in audit entries")
    AUTO_APPLY_CONFIDENCE_THRESHOLD: float = Field(default=0.8, description="Proposal confidence required for direct apply")
    PROMOTION_CONFIDENCE_THRESHOLD: float = Field(default=0.95, description="A/B confidence required to promote a winner")
    OPTIMIZATION_CONFIDENCE_THRESHOLD: float = Field(default=0.7, description="Candidate confidence required to start an A/B test")
    AB_TEST_MIN_SAMPLES: int = Field(default=20, description="Feedback records needed before a test is evaluated")
    AB_TEST_FULL_CONFIDENCE_SAMPLES: int = Field(default=50, description="Smaller-group size at which sample confidence saturates")
    AB_TEST_FULL_CONFIDENCE_EFFECT: float = Field(default=2.0, description="Rating gap at which effect confidence saturates")
    AB_TEST_DEFAULT_RATING: float = Field(default=3.0, description="Rating assumed when feedback has none")
    AB_TEST_DEFAULT_RESPONSE_TIME_MS: float = Field(default=1000.0, description="Latency assumed when feedback has none")
    AB_TEST_MAX_AGE_DAYS: int = Field(default=30, description="Age after which an undecided test expires")
    AB_TEST_MAX_SAMPLES: int = Field(default=1000, description="Sample count after which an undecided test expires")
    OPTIMIZATION_MIN_FEEDBACK: int = Field(default=10, description="Recent feedback needed before optimizing an agent")
    OPTIMIZATION_WINDOW_DAYS: int = Field(default=3, description="Feedback window for prompt optimization")
    OPTIMIZATION_FEEDBACK_LIMIT: int = Field(default=50, description="Max feedback rows fetched for optimization")
    ANALYSIS_WINDOW_DAYS: int = Field(default=7, description="Feedback/metrics window for performance analysis")
    CRITIC_FEEDBACK_WINDOW: int = Field(default=10, description="Max feedback items embedded in a critic request")
    DEFAULT_TRAFFIC_SPLIT: float = Field(default=0.5, description="Share of traffic routed to variant B")

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    def missing_required(self) -> List[str]:
        """Names of required settings that are empty."""
        missing = []
        if not self.OPENAI_API_KEY:
            missing.append("OPENAI_API_KEY")
        if not self.DATABASE_URL:
            missing.append("DATABASE_URL")
        return missing

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"  # Ignore extra env vars


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def validate_required_settings(current: Settings = None) -> None:
    """
    Fail fast when the LLM key or datastore URL is not configured.

    Raises:
        ConfigurationError: If any required setting is missing
    """
    from backend.api.errors import ConfigurationError

    current = current or get_settings()
    missing = current.missing_required()
    if missing:
        logger.error("Required configuration missing", missing=missing)
        raise ConfigurationError(
            f"Missing required configuration: {', '.join(missing)}",
            missing=missing,
        )


# Global settings instance
settings = get_settings()
