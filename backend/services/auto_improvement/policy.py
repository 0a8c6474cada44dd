"""
PromptTuner - Improvement Policy
================================

Thresholds and windows that drive the improvement loop, bundled into one
immutable, versioned object. Every component receives the policy at
construction; the version is stamped into audit entries and experiment
results so threshold changes can be traced.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from backend.core.config import Settings, get_settings


@dataclass(frozen=True)
class ImprovementPolicy:
    """Decision thresholds of the improvement loop."""
    version: str = "2024.1"

    # Improvement gate
    auto_apply_confidence: float = 0.8

    # Experiments
    promotion_confidence: float = 0.95
    min_test_samples: int = 20
    full_confidence_samples: int = 50
    full_confidence_effect: float = 2.0
    default_rating: float = 3.0
    default_response_time_ms: float = 1000.0
    max_test_age_days: int = 30
    max_test_samples: int = 1000
    default_traffic_split: float = 0.5

    # Optimizer
    optimization_confidence: float = 0.7
    optimization_min_feedback: int = 10
    optimization_window_days: int = 3
    optimization_feedback_limit: int = 50

    # Critic
    analysis_window_days: int = 7
    critic_feedback_window: int = 10

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ImprovementPolicy":
        settings = settings or get_settings()
        return cls(
            version=settings.IMPROVEMENT_POLICY_VERSION,
            auto_apply_confidence=settings.AUTO_APPLY_CONFIDENCE_THRESHOLD,
            promotion_confidence=settings.PROMOTION_CONFIDENCE_THRESHOLD,
            min_test_samples=settings.AB_TEST_MIN_SAMPLES,
            full_confidence_samples=settings.AB_TEST_FULL_CONFIDENCE_SAMPLES,
            full_confidence_effect=settings.AB_TEST_FULL_CONFIDENCE_EFFECT,
            default_rating=settings.AB_TEST_DEFAULT_RATING,
            default_response_time_ms=settings.AB_TEST_DEFAULT_RESPONSE_TIME_MS,
            max_test_age_days=settings.AB_TEST_MAX_AGE_DAYS,
            max_test_samples=settings.AB_TEST_MAX_SAMPLES,
            default_traffic_split=settings.DEFAULT_TRAFFIC_SPLIT,
            optimization_confidence=settings.OPTIMIZATION_CONFIDENCE_THRESHOLD,
            optimization_min_feedback=settings.OPTIMIZATION_MIN_FEEDBACK,
            optimization_window_days=settings.OPTIMIZATION_WINDOW_DAYS,
            optimization_feedback_limit=settings.OPTIMIZATION_FEEDBACK_LIMIT,
            analysis_window_days=settings.ANALYSIS_WINDOW_DAYS,
            critic_feedback_window=settings.CRITIC_FEEDBACK_WINDOW,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
