"""
Compression scheduler sweeps and manual trigger.
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta
from unittest.mock import patch

import numpy as np
import pytest

from plan_memory.compression.scheduler import CompressionScheduler, FULL_SWEEP_TASK, LIGHT_SWEEP_TASK
from plan_memory.core.config import get_compression_settings
from plan_memory.core.errors import ValidationError
from plan_memory.core.schema import Plan
from plan_memory.vector.index import InMemoryEmbeddingStore

from conftest import FakePlanSource, RecordingJobRunner, make_vector


def vectors_for(plan_id, count):
    return [make_vector(f"{plan_id}-v{i}", np.ones(4), plan_id=plan_id, order=i) for i in range(count)]


@pytest.fixture
def settings():
    return replace(get_compression_settings(), enabled=True, archive_threshold=5, inactive_plan_days=30,
                   default_mode="light")


@pytest.fixture
def world():
    """Two large active plans, a stale one, an untouched one and a deleted one."""
    now = datetime.now()
    plans = [
        Plan(id="big", owner_id="alice", title="Big", updated_at=now),
        Plan(id="bigger", owner_id="bob", title="Bigger", updated_at=now),
        Plan(id="stale", owner_id="carol", title="Stale", updated_at=now - timedelta(days=90)),
        Plan(id="never-touched", owner_id="dave", title="Empty"),
        Plan(id="deleted", owner_id="erin", title="Deleted", is_deleted=True),
    ]
    store = InMemoryEmbeddingStore(
        vectors_for("big", 6) + vectors_for("bigger", 9) + vectors_for("stale", 2) + vectors_for("deleted", 20)
    )
    return FakePlanSource(plans), store


class TestLightSweep:

    def test_submits_light_jobs_for_large_plans(self, world, settings):
        plans, store = world
        runner = RecordingJobRunner()
        scheduler = CompressionScheduler(plans, store, runner, settings)

        report = asyncio.run(scheduler.run_light_sweep())

        assert report.operation == "light_sweep"
        assert report.plans_matched == 2
        assert report.jobs_submitted == 2
        assert report.failures == 0
        assert report.job_ids == ["job-1", "job-2"]
        assert report.completed_at is not None

        first, second = runner.submitted
        assert first["plan_id"] == "bigger"
        assert first["user_id"] == "bob"
        assert first["job_type"] == "memory_compression"
        assert first["params"] == {"plan_id": "bigger", "mode": "light", "user_id": "bob"}
        assert first["priority"] == 0
        assert second["plan_id"] == "big"

    def test_threshold_is_inclusive(self, world, settings):
        plans, store = world
        scheduler = CompressionScheduler(plans, store, RecordingJobRunner(), replace(settings, archive_threshold=6))

        matched = asyncio.run(scheduler.find_plans_needing_compression())

        assert [p.id for p in matched] == ["bigger", "big"]

    def test_one_failing_submission_does_not_stop_the_sweep(self, world, settings):
        plans, store = world
        runner = RecordingJobRunner(fail_for={"bigger"})
        scheduler = CompressionScheduler(plans, store, runner, settings)

        report = asyncio.run(scheduler.run_light_sweep())

        assert report.jobs_submitted == 1
        assert report.failures == 1
        assert report.errors[0].startswith("bigger: ")
        assert [s["plan_id"] for s in runner.submitted] == ["big"]

    def test_disabled_sweep_does_nothing(self, world, settings):
        plans, store = world
        runner = RecordingJobRunner()
        scheduler = CompressionScheduler(plans, store, runner, replace(settings, enabled=False))

        report = asyncio.run(scheduler.run_light_sweep())

        assert report.metadata == {"skipped": True, "reason": "MEMORY_COMPRESSION_ENABLED=false"}
        assert report.plans_matched == 0
        assert runner.submitted == []
        assert report.to_dict()["metadata"]["skipped"] is True


class TestFullSweep:

    def test_submits_full_jobs_for_inactive_plans_with_vectors(self, world, settings):
        plans, store = world
        runner = RecordingJobRunner()
        scheduler = CompressionScheduler(plans, store, runner, settings)

        report = asyncio.run(scheduler.run_full_sweep())

        assert report.operation == "full_sweep"
        assert report.plans_matched == 1
        [job] = runner.submitted
        assert job["plan_id"] == "stale"
        assert job["params"]["mode"] == "full"
        assert job["priority"] == 1

    def test_disabled_full_sweep(self, world, settings):
        plans, store = world
        scheduler = CompressionScheduler(plans, store, RecordingJobRunner(), replace(settings, enabled=False))

        report = asyncio.run(scheduler.run_full_sweep())

        assert report.metadata["skipped"] is True


class TestManualTrigger:

    def test_uses_default_mode(self, world, settings):
        plans, store = world
        runner = RecordingJobRunner()
        scheduler = CompressionScheduler(plans, store, runner, settings)

        job_id = asyncio.run(scheduler.trigger_compression_for_plan("big", "alice"))

        assert job_id == "job-1"
        assert runner.submitted[0]["params"]["mode"] == "light"

    def test_explicit_full_mode(self, world, settings):
        plans, store = world
        runner = RecordingJobRunner()
        scheduler = CompressionScheduler(plans, store, runner, settings)

        asyncio.run(scheduler.trigger_compression_for_plan("stale", "carol", mode="full"))

        assert runner.submitted[0]["priority"] == 1

    def test_trigger_ignores_enabled_flag(self, world, settings):
        plans, store = world
        runner = RecordingJobRunner()
        scheduler = CompressionScheduler(plans, store, runner, replace(settings, enabled=False))

        asyncio.run(scheduler.trigger_compression_for_plan("big", "alice"))

        assert len(runner.submitted) == 1

    @pytest.mark.parametrize("plan_id,mode", [("", "light"), ("big", "deep")])
    def test_rejects_bad_input(self, world, settings, plan_id, mode):
        plans, store = world
        runner = RecordingJobRunner()
        scheduler = CompressionScheduler(plans, store, runner, settings)

        with pytest.raises(ValidationError):
            asyncio.run(scheduler.trigger_compression_for_plan(plan_id, "alice", mode=mode))
        assert runner.submitted == []


class TestPlanChecks:

    def test_needs_compression(self, world, settings):
        plans, store = world
        scheduler = CompressionScheduler(plans, store, RecordingJobRunner(), settings)

        assert asyncio.run(scheduler.check_plan_needs_compression("big")) is True
        assert asyncio.run(scheduler.check_plan_needs_compression("stale")) is False

    def test_is_inactive(self, world, settings):
        plans, store = world
        scheduler = CompressionScheduler(plans, store, RecordingJobRunner(), settings)

        assert asyncio.run(scheduler.check_plan_is_inactive("stale")) is True
        assert asyncio.run(scheduler.check_plan_is_inactive("never-touched")) is True
        assert asyncio.run(scheduler.check_plan_is_inactive("big")) is False
        assert asyncio.run(scheduler.check_plan_is_inactive("missing")) is False

    def test_recent_message_keeps_plan_active(self, settings):
        now = datetime.now()
        plan = Plan(id="chatty", owner_id="u", title="Chatty", updated_at=now - timedelta(days=90),
                    last_message_at=now - timedelta(days=1))
        scheduler = CompressionScheduler(FakePlanSource([plan]), InMemoryEmbeddingStore(), RecordingJobRunner(),
                                         settings)

        assert asyncio.run(scheduler.check_plan_is_inactive("chatty")) is False


def test_register_heartbeat_tasks(world, settings):
    plans, store = world
    scheduler = CompressionScheduler(plans, store, RecordingJobRunner(),
                                     replace(settings, light_interval_sec=60, full_interval_sec=120))

    with patch("plan_memory.compression.scheduler.heartbeat.register_task") as register:
        names = scheduler.register_heartbeat_tasks()

    assert names == [LIGHT_SWEEP_TASK, FULL_SWEEP_TASK]
    registered = {call.args[0]: call.args[1] for call in register.call_args_list}
    assert registered == {LIGHT_SWEEP_TASK: 60, FULL_SWEEP_TASK: 120}


def test_registered_task_runs_a_sweep(world, settings):
    plans, store = world
    runner = RecordingJobRunner()
    scheduler = CompressionScheduler(plans, store, runner, settings)

    with patch("plan_memory.compression.scheduler.heartbeat.register_task") as register:
        scheduler.register_heartbeat_tasks()

    light_task = register.call_args_list[0].args[2]
    light_task()

    assert len(runner.submitted) == 2
