"""
PromptTuner - Auto-Improvement Engine
=====================================

Entry point of the control loop. Three actions, each iterating sequentially:

- analyze_and_improve: critique every active agent, apply confident proposals
- run_ab_tests: evaluate active experiments, promote or expire decided ones
- optimize_prompts: seed experiments from fresh rewrite candidates

A failure for one agent or test is logged and skipped; the caller only sees
the aggregate result.
"""

import time
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.errors import ValidationError
from backend.services.auto_improvement.applier import ImprovementApplier
from backend.services.auto_improvement.critic import PerformanceCritic
from backend.services.auto_improvement.evaluator import ABTestEvaluator
from backend.services.auto_improvement.optimizer import PromptOptimizer
from backend.services.auto_improvement.policy import ImprovementPolicy
from backend.services.auto_improvement.store import AutoImprovementStore, utcnow

logger = structlog.get_logger(__name__)


class EngineAction(str, Enum):
    ANALYZE_AND_IMPROVE = "analyze_and_improve"
    RUN_AB_TESTS = "run_ab_tests"
    OPTIMIZE_PROMPTS = "optimize_prompts"

    @classmethod
    def parse(cls, value: Optional[str]) -> "EngineAction":
        if value is None:
            return cls.ANALYZE_AND_IMPROVE
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(
                f"Invalid action '{value}'. Expected one of: "
                f"{', '.join(a.value for a in cls)}"
            )


RESULT_KEYS = {
    EngineAction.ANALYZE_AND_IMPROVE: "improvements",
    EngineAction.RUN_AB_TESTS: "testResults",
    EngineAction.OPTIMIZE_PROMPTS: "optimizations",
}


class AutoImprovementEngine:
    """
    Runs one improvement action over the datastore.

    Stateless between invocations; every component shares the same session
    and policy.
    """

    def __init__(
        self,
        db: AsyncSession,
        llm=None,
        policy: Optional[ImprovementPolicy] = None,
    ):
        if llm is None:
            from backend.services.llm import LLMFactory
            llm = LLMFactory.get_json_chat_model()

        self.db = db
        self.policy = policy or ImprovementPolicy.from_settings()
        self.store = AutoImprovementStore(db)
        self.critic = PerformanceCritic(llm, self.policy)
        self.applier = ImprovementApplier(db, self.policy)
        self.evaluator = ABTestEvaluator(db, self.policy)
        self.optimizer = PromptOptimizer(db, self.critic, self.policy)

    async def run(self, action: Optional[str] = None) -> Dict[str, List[Dict[str, Any]]]:
        """
        Execute an action and wrap its results under the action's key.

        Raises:
            ValidationError: Unknown action
        """
        engine_action = EngineAction.parse(action)
        start_time = time.time()
        logger.info("Auto-improvement action started", action=engine_action.value)

        if engine_action == EngineAction.ANALYZE_AND_IMPROVE:
            results = await self.analyze_and_improve()
        elif engine_action == EngineAction.RUN_AB_TESTS:
            results = await self.run_ab_tests()
        else:
            results = await self.optimize_prompts()

        logger.info(
            "Auto-improvement action finished",
            action=engine_action.value,
            results=len(results),
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return {RESULT_KEYS[engine_action]: results}

    # =========================================================================
    # Actions
    # =========================================================================

    async def analyze_and_improve(self) -> List[Dict[str, Any]]:
        since = utcnow() - timedelta(days=self.policy.analysis_window_days)
        improvements = []

        for agent_id in await self._active_agent_ids():
            try:
                agent = await self.store.get_agent(agent_id)
                if agent is None:
                    continue

                feedback = await self.store.get_recent_feedback(agent.id, since=since)
                metrics = await self.store.get_metrics_since(agent.id, since.date())

                proposal = await self.critic.analyze_agent(agent, feedback, metrics)
                if proposal is None:
                    continue

                improvements.append(await self.applier.handle_proposal(proposal))
            except Exception as e:
                await self.db.rollback()
                logger.error(
                    "Skipping agent after analysis failure",
                    agent_id=str(agent_id),
                    error=str(e),
                    exc_info=True,
                )

        return improvements

    async def run_ab_tests(self) -> List[Dict[str, Any]]:
        results = []

        test_ids = [t.id for t in await self.evaluator.experiments.list_active_experiments()]

        for test_id in test_ids:
            try:
                test = await self.store.get_ab_test(test_id)
                if test is None:
                    continue

                analysis = await self.evaluator.evaluate(test)
                if analysis is not None:
                    results.append(analysis)
            except Exception as e:
                await self.db.rollback()
                logger.error(
                    "Skipping experiment after evaluation failure",
                    test_id=str(test_id),
                    error=str(e),
                    exc_info=True,
                )

        return results

    async def optimize_prompts(self) -> List[Dict[str, Any]]:
        optimizations = []

        for agent_id in await self._active_agent_ids():
            try:
                agent = await self.store.get_agent(agent_id)
                if agent is None:
                    continue

                optimization = await self.optimizer.optimize_agent(agent)
                if optimization is not None:
                    optimizations.append(optimization)
            except Exception as e:
                await self.db.rollback()
                logger.error(
                    "Skipping agent after optimization failure",
                    agent_id=str(agent_id),
                    error=str(e),
                    exc_info=True,
                )

        return optimizations

    async def _active_agent_ids(self) -> List[Any]:
        # A rollback expires loaded instances, so callers re-fetch by id.
        return [agent.id for agent in await self.store.list_active_agents()]
