"""Tests for the maintenance job wrappers and scheduler."""

import asyncio

import pytest

from tutor_pipeline.core.jobs import (
    JobScheduler,
    SchedulerConfig,
    run_consolidation,
    run_memory_sweep,
    run_quota_rollover,
)
from tutor_pipeline.core.routing_types import MemoryEntry, MemoryStatus
from tutor_pipeline.memory.conversation_manager import InMemoryMessageLog
from tutor_pipeline.memory.memory_system import DAY_SECONDS
from tutor_pipeline.quota.enforcer import CHAT_MESSAGES, QuotaEnforcer

T0 = 1_700_000_000.0


@pytest.fixture
def enforcer(store):
    return QuotaEnforcer(store)


class TestJobWrappers:
    async def test_sweep(self, ledger):
        entry = MemoryEntry(
            user_id="u1", content="Likes regex golf", type="preference",
            created_at=T0, last_accessed_at=T0, confidence=0.3,
        )
        await ledger.store.add(entry)

        report = await run_memory_sweep(ledger, T0 + 200 * DAY_SECONDS)
        assert report.archived == 1
        assert entry.status == MemoryStatus.ARCHIVED

    async def test_consolidation(self, ledger):
        log = InMemoryMessageLog()
        log.append("c1", "user", "My name is Alice", user_id="u1", created_at=T0)

        assert await run_consolidation(ledger, log, T0 + 3 * DAY_SECONDS) == 1
        assert await run_consolidation(ledger, log, T0 + 3 * DAY_SECONDS) == 0

    async def test_rollover(self, enforcer):
        await enforcer.consume("u1", CHAT_MESSAGES, now=T0)
        assert await run_quota_rollover(enforcer, T0 + 31 * DAY_SECONDS) == 1
        assert await run_quota_rollover(enforcer, T0 + 31 * DAY_SECONDS) == 0


class TestScheduler:
    async def test_failed_run_is_counted_and_contained(self, ledger, enforcer):
        scheduler = JobScheduler(ledger, enforcer)

        async def boom():
            raise RuntimeError("store down")

        assert await scheduler.run_once("sweep", boom) is False
        assert scheduler.failures["sweep"] == 1
        assert scheduler.runs["sweep"] == 0

    async def test_start_runs_each_job_then_stops(self, ledger, enforcer):
        config = SchedulerConfig(sweep_interval=60, consolidation_interval=60, rollover_interval=60)
        scheduler = JobScheduler(ledger, enforcer, InMemoryMessageLog(), config=config, clock=lambda: T0)

        scheduler.start()
        assert scheduler.running
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert not scheduler.running
        assert scheduler.runs == {"sweep": 1, "consolidation": 1, "rollover": 1}
        assert scheduler.failures == {"sweep": 0, "consolidation": 0, "rollover": 0}

    async def test_without_message_log_consolidation_is_skipped(self, ledger, enforcer):
        scheduler = JobScheduler(ledger, enforcer, config=SchedulerConfig(60, 60, 60), clock=lambda: T0)
        scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()
        assert scheduler.runs["consolidation"] == 0
