"""
PromptTuner - Experiment Manager Tests
======================================
"""

import uuid
from datetime import timedelta

import pytest

from backend.api.errors import NotFoundError, ValidationError
from backend.services.auto_improvement.experiments import ExperimentManager
from backend.services.auto_improvement.policy import ImprovementPolicy
from backend.tests.helpers import add_feedback, create_agent, create_test


class TestExperimentManager:
    """Tests for ExperimentManager."""

    @pytest.mark.asyncio
    async def test_create_and_list(self, db_session, policy):
        agent = await create_agent(db_session)
        manager = ExperimentManager(db_session, policy)

        test = await manager.create_experiment(agent.id, "control", "challenger")

        assert test.status == "active"
        assert test.prompt_a == "control"
        assert test.prompt_b == "challenger"
        assert test.traffic_split == pytest.approx(policy.default_traffic_split)
        assert [t.id for t in await manager.list_active_experiments()] == [test.id]

    @pytest.mark.asyncio
    async def test_unknown_agent(self, db_session, policy):
        manager = ExperimentManager(db_session, policy)

        with pytest.raises(NotFoundError):
            await manager.create_experiment(uuid.uuid4(), "control", "challenger")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("split", [0.0, 1.0, 1.5, -0.2])
    async def test_rejects_bad_split(self, db_session, policy, split):
        agent = await create_agent(db_session)
        manager = ExperimentManager(db_session, policy)

        with pytest.raises(ValidationError):
            await manager.create_experiment(agent.id, "control", "challenger", traffic_split=split)

    @pytest.mark.asyncio
    async def test_decidable_counts_both_variants(self, db_session, policy):
        agent = await create_agent(db_session)
        test = await create_test(db_session, agent)
        manager = ExperimentManager(db_session, policy)

        await add_feedback(db_session, agent, count=10, test=test, variant="A")
        await add_feedback(db_session, agent, count=9, test=test, variant="B")
        assert await manager.is_decidable(test) is False

        await add_feedback(db_session, agent, count=1, test=test, variant="B")
        assert await manager.is_decidable(test) is True

    @pytest.mark.asyncio
    async def test_untagged_feedback_is_ignored(self, db_session, policy):
        agent = await create_agent(db_session)
        test = await create_test(db_session, agent)
        await add_feedback(db_session, agent, count=25)

        assert await ExperimentManager(db_session, policy).is_decidable(test) is False

    @pytest.mark.asyncio
    async def test_decidable_with_known_sample_count(self, db_session, policy):
        agent = await create_agent(db_session)
        test = await create_test(db_session, agent)
        manager = ExperimentManager(db_session, policy)

        assert await manager.is_decidable(test, 19) is False
        assert await manager.is_decidable(test, 20) is True

    @pytest.mark.asyncio
    async def test_expiry_by_age_and_samples(self, db_session):
        policy = ImprovementPolicy(max_test_age_days=30, max_test_samples=1000)
        agent = await create_agent(db_session)
        fresh = await create_test(db_session, agent)
        old = await create_test(db_session, agent, age=timedelta(days=31))
        manager = ExperimentManager(db_session, policy)

        assert manager.is_expired(fresh, 100) is False
        assert manager.is_expired(fresh, 1001) is True
        assert manager.is_expired(old, 20) is True
