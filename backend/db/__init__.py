"""
PromptTuner - Database Module
=============================

Database configuration, models, and utilities with multi-database support.
"""

from backend.db.models import (
    Base,
    AIAgent,
    AIFeedback,
    AIPerformanceMetric,
    SelfImprovementLog,
    PromptABTest,
    ImprovementReview,
    ABTestStatus,
    ABTestVariant,
    ImprovementType,
    ReviewStatus,
    ReviewSource,
)

__all__ = [
    "Base",
    "AIAgent",
    "AIFeedback",
    "AIPerformanceMetric",
    "SelfImprovementLog",
    "PromptABTest",
    "ImprovementReview",
    "ABTestStatus",
    "ABTestVariant",
    "ImprovementType",
    "ReviewStatus",
    "ReviewSource",
]
