"""
PromptTuner - Improvement Gate & Applier
========================================

Decides whether a critic proposal is applied and, if so, replaces the agent's
prompt together with its audit entry in one transaction. Proposals that miss
the gate are parked in the review queue instead of being dropped.
"""

import uuid
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.errors import ConflictError, NotFoundError, ValidationError
from backend.db.models import ImprovementReview, ImprovementType, ReviewSource, SelfImprovementLog
from backend.services.auto_improvement.critic import ImprovementProposal
from backend.services.auto_improvement.policy import ImprovementPolicy
from backend.services.auto_improvement.store import (
    AutoImprovementStore,
    StaleAgentError,
    agent_snapshot,
)

logger = structlog.get_logger(__name__)


class ImprovementApplier:
    """Applies gated proposals and handles human-initiated rollbacks."""

    def __init__(self, db: AsyncSession, policy: Optional[ImprovementPolicy] = None):
        self.db = db
        self.store = AutoImprovementStore(db)
        self.policy = policy or ImprovementPolicy()

    def should_apply(self, proposal: ImprovementProposal) -> bool:
        """Strictly above threshold, flagged safe, and carrying a rewrite."""
        return (
            proposal.confidence > self.policy.auto_apply_confidence
            and proposal.auto_apply
            and bool(proposal.new_prompt)
        )

    async def handle_proposal(self, proposal: ImprovementProposal) -> Dict[str, Any]:
        """
        Apply the proposal or queue it for review.

        Returns:
            The proposal as a dict with ``applied`` and, when applied,
            ``log_id``; otherwise ``review_id``.

        Raises:
            StaleAgentError: The agent changed since it was analyzed
        """
        result = proposal.to_dict()

        if self.should_apply(proposal):
            entry = await self.apply(proposal)
            result["applied"] = True
            result["log_id"] = str(entry.id)
        else:
            review = await self.queue_for_review(proposal)
            result["applied"] = False
            result["review_id"] = str(review.id)

        return result

    async def apply(self, proposal: ImprovementProposal) -> SelfImprovementLog:
        """Snapshot, audit and replace the prompt atomically, then commit."""
        agent_id = uuid.UUID(proposal.agent_id)
        agent = await self.store.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("Agent", proposal.agent_id)

        before_state = agent_snapshot(agent)
        after_state = {**before_state, "system_prompt": proposal.new_prompt}

        try:
            entry = await self.store.add_improvement_log(
                agent_id=agent.id,
                improvement_type=ImprovementType.PROMPT_OPTIMIZATION.value,
                before_state=before_state,
                after_state=after_state,
                improvement_reason="; ".join(proposal.problems_identified),
                success_metrics={
                    "confidence": proposal.confidence,
                    "auto_applied": True,
                    "suggested_improvements": proposal.suggested_improvements,
                    "policy_version": self.policy.version,
                },
            )
            await self.store.replace_agent_prompt(
                agent,
                proposal.new_prompt,
                expected_version=before_state["version"],
            )
            await self.db.commit()
        except StaleAgentError:
            await self.db.rollback()
            logger.warning(
                "Rejected stale prompt replacement",
                agent_id=proposal.agent_id,
                expected_version=before_state["version"],
            )
            raise

        logger.info(
            "Applied prompt improvement",
            agent_id=proposal.agent_id,
            agent_name=proposal.agent_name,
            confidence=proposal.confidence,
            version=agent.version,
            log_id=str(entry.id),
        )
        return entry

    async def queue_for_review(
        self,
        proposal: ImprovementProposal,
        source: ReviewSource = ReviewSource.ANALYSIS,
    ) -> ImprovementReview:
        if not proposal.new_prompt:
            reason = "no rewritten prompt proposed"
        elif not proposal.auto_apply:
            reason = "critic did not mark the change safe to auto-apply"
        else:
            reason = (
                f"confidence {proposal.confidence:.2f} not above "
                f"{self.policy.auto_apply_confidence:.2f}"
            )

        review = await self.store.add_review(
            agent_id=uuid.UUID(proposal.agent_id),
            source=source.value,
            confidence=proposal.confidence,
            reason=reason,
            proposal={**proposal.to_dict(), "policy_version": self.policy.version},
        )
        await self.db.commit()

        logger.info(
            "Queued proposal for review",
            agent_id=proposal.agent_id,
            confidence=proposal.confidence,
            reason=reason,
            review_id=str(review.id),
        )
        return review

    # =========================================================================
    # Manual Rollback
    # =========================================================================

    async def rollback(
        self,
        log_id: uuid.UUID,
        reason: Optional[str] = None,
    ) -> SelfImprovementLog:
        """
        Restore the prompt recorded in a log entry's ``before_state``.

        Only succeeds while the agent is still at the version the entry
        produced; a later change must be rolled back first.

        Raises:
            NotFoundError: Unknown log entry or agent
            ValidationError: The entry has no prompt to restore
            ConflictError: The agent changed after the entry was written
        """
        entry = await self.store.get_log_entry(log_id)
        if entry is None:
            raise NotFoundError("Improvement log entry", str(log_id))

        agent = await self.store.get_agent(entry.agent_id)
        if agent is None:
            raise NotFoundError("Agent", str(entry.agent_id))

        previous_prompt = (entry.before_state or {}).get("system_prompt")
        if not previous_prompt:
            raise ValidationError("Log entry has no prompt to restore")

        applied_version = (entry.before_state or {}).get("version")
        if applied_version is not None:
            applied_version += 1
        if applied_version is not None and agent.version != applied_version:
            raise ConflictError(
                f"Agent '{agent.name}' is at version {agent.version}, "
                f"log entry produced version {applied_version}"
            )

        before_state = agent_snapshot(agent)
        after_state = {**before_state, "system_prompt": previous_prompt}

        try:
            rollback_entry = await self.store.add_improvement_log(
                agent_id=agent.id,
                improvement_type=ImprovementType.MANUAL_ROLLBACK.value,
                before_state=before_state,
                after_state=after_state,
                improvement_reason=reason or f"Manual rollback of {log_id}",
                success_metrics={
                    "rolled_back_log_id": str(log_id),
                    "auto_applied": False,
                    "policy_version": self.policy.version,
                },
            )
            await self.store.replace_agent_prompt(
                agent,
                previous_prompt,
                expected_version=before_state["version"],
            )
            await self.db.commit()
        except StaleAgentError:
            await self.db.rollback()
            raise ConflictError(f"Agent '{before_state['name']}' was modified concurrently")

        logger.info(
            "Rolled back prompt change",
            agent_id=str(agent.id),
            rolled_back_log_id=str(log_id),
            version=agent.version,
        )
        return rollback_entry
