"""
PromptTuner - Autonomous Prompt Improvement
===========================================

Control loop that critiques agent prompts, applies confident rewrites and
settles prompt experiments.

Components:
- AutoImprovementStore: Narrow access to the feedback & metrics tables
- PerformanceCritic: LLM critique producing proposals and rewrite candidates
- ImprovementApplier: Gate, atomic apply with audit log, review queue, rollback
- ExperimentManager: A/B test creation and eligibility
- ABTestEvaluator: Heuristic confidence and winner promotion
- PromptOptimizer: Seeds experiments from rewrite candidates
- AutoImprovementEngine: The three entry actions
- FeedbackService: Feedback ingestion and daily metrics
"""

from backend.services.auto_improvement.policy import ImprovementPolicy
from backend.services.auto_improvement.store import (
    AutoImprovementStore,
    StaleAgentError,
)
from backend.services.auto_improvement.critic import (
    ImprovementProposal,
    OptimizationCandidate,
    PerformanceCritic,
)
from backend.services.auto_improvement.applier import ImprovementApplier
from backend.services.auto_improvement.experiments import ExperimentManager
from backend.services.auto_improvement.evaluator import (
    ABTestEvaluator,
    GroupMetrics,
    calculate_group_metrics,
    calculate_statistical_confidence,
)
from backend.services.auto_improvement.optimizer import PromptOptimizer
from backend.services.auto_improvement.engine import AutoImprovementEngine, EngineAction
from backend.services.auto_improvement.feedback import FeedbackService

__all__ = [
    "ImprovementPolicy",
    "AutoImprovementStore",
    "StaleAgentError",
    "ImprovementProposal",
    "OptimizationCandidate",
    "PerformanceCritic",
    "ImprovementApplier",
    "ExperimentManager",
    "ABTestEvaluator",
    "GroupMetrics",
    "calculate_group_metrics",
    "calculate_statistical_confidence",
    "PromptOptimizer",
    "AutoImprovementEngine",
    "EngineAction",
    "FeedbackService",
]
