"""Periodic maintenance jobs: memory sweep, consolidation and quota rollover.

Architectural role:
    Thin, restartable wrappers around ledger and quota maintenance. Each run
    takes an explicit cutoff timestamp so a re-run with the same cutoff is a
    no-op, and `JobScheduler` drives them on fixed intervals with asyncio tasks.

Failure handling:
    A failing job run is logged and retried at the next interval; it never
    stops the scheduler or the other jobs.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from tutor_pipeline.memory.conversation_manager import InMemoryMessageLog
from tutor_pipeline.memory.memory_system import MemoryLedger, SweepReport
from tutor_pipeline.quota.enforcer import QuotaEnforcer


logger = logging.getLogger(__name__)


async def run_memory_sweep(ledger: MemoryLedger, cutoff: float | None = None) -> SweepReport:
    cutoff = time.time() if cutoff is None else cutoff
    return await ledger.sweep(cutoff)


async def run_consolidation(
    ledger: MemoryLedger,
    log: InMemoryMessageLog,
    cutoff: float | None = None,
) -> int:
    """Promote facts from conversations older than the consolidation age."""
    cutoff = time.time() if cutoff is None else cutoff
    return await ledger.consolidate(log.conversations(), cutoff)


async def run_quota_rollover(enforcer: QuotaEnforcer, now: float | None = None) -> int:
    return await enforcer.rollover(now)


# =========================================================
# SCHEDULER
# =========================================================

@dataclass(frozen=True)
class SchedulerConfig:
    """Relevant environment variables:
        - `SWEEP_INTERVAL_SECONDS`
        - `CONSOLIDATION_INTERVAL_SECONDS`
        - `ROLLOVER_INTERVAL_SECONDS`
    """

    sweep_interval: float = float(os.getenv("SWEEP_INTERVAL_SECONDS", "86400"))
    consolidation_interval: float = float(os.getenv("CONSOLIDATION_INTERVAL_SECONDS", "3600"))
    rollover_interval: float = float(os.getenv("ROLLOVER_INTERVAL_SECONDS", "3600"))


class JobScheduler:
    def __init__(
        self,
        ledger: MemoryLedger,
        enforcer: QuotaEnforcer,
        log: InMemoryMessageLog | None = None,
        config: SchedulerConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ledger = ledger
        self.enforcer = enforcer
        self.log = log
        self.config = config or SchedulerConfig()
        self.clock = clock
        self._tasks: list[asyncio.Task] = []
        self.runs: dict[str, int] = {"sweep": 0, "consolidation": 0, "rollover": 0}
        self.failures: dict[str, int] = {"sweep": 0, "consolidation": 0, "rollover": 0}

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(
                self._loop("sweep", self.config.sweep_interval,
                           lambda: run_memory_sweep(self.ledger, self.clock()))
            ),
            asyncio.create_task(
                self._loop("rollover", self.config.rollover_interval,
                           lambda: run_quota_rollover(self.enforcer, self.clock()))
            ),
        ]
        if self.log is not None:
            self._tasks.append(
                asyncio.create_task(
                    self._loop("consolidation", self.config.consolidation_interval,
                               lambda: run_consolidation(self.ledger, self.log, self.clock()))
                )
            )
        logger.info("Job scheduler started jobs=%d", len(self._tasks))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Job scheduler stopped")

    async def run_once(self, name: str, job: Callable[[], Awaitable]) -> bool:
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failures[name] += 1
            logger.exception("Job run failed job=%s", name)
            return False
        self.runs[name] += 1
        return True

    async def _loop(self, name: str, interval: float, job: Callable[[], Awaitable]) -> None:
        while True:
            await self.run_once(name, job)
            await asyncio.sleep(max(interval, 0.0))
