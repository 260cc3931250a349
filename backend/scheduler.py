"""
Resumption Scheduler — periodic sweep of due enrollments.

Runs as a background task inside the FastAPI lifespan, and can be invoked
directly (``POST /api/v1/sweep`` or a cron job calling ``sweep()``).

Flow:
    Store → active enrollments with next_due_at <= now (oldest first, batch)
    → each one advanced independently through the state machine
    → per-enrollment errors logged, enrollment left untouched for the next pass

Concurrent sweeps (several processes, or an overlapping cron) are safe:
the state machine claims each enrollment before touching it, and a lost
claim is counted as a no-op.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from context.state_machine import AdvanceResult, EnrollmentStateMachine
from database.store_base import BaseEnrollmentStore
from models.schemas import Enrollment

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResumptionScheduler:
    """
    Resumes enrollments whose wait has elapsed.

    Configure in settings:
        engine:
          sweep_interval_seconds: 60
          sweep_batch_size: 50
          sweep_concurrency: 5
    """

    def __init__(
        self,
        store: BaseEnrollmentStore,
        state_machine: EnrollmentStateMachine,
        interval_s: int = 60,
        batch_size: int = 50,
        concurrency: int = 5,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.state_machine = state_machine
        self.interval_s = interval_s
        self.batch_size = batch_size
        self.concurrency = max(1, concurrency)
        self.clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the sweep loop as a background task."""
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop(), name="resumption_scheduler")
        logger.info("scheduler_started", interval_s=self.interval_s, batch_size=self.batch_size)

    async def stop(self) -> None:
        """Gracefully stop the scheduler."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("scheduler_stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def _sweep_loop(self) -> None:
        """Main loop — runs until stopped."""
        while self._running:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("sweep_cycle_error", error=str(e), exc_info=True)

            await asyncio.sleep(self.interval_s)

    async def sweep(self, now: Optional[datetime] = None) -> dict[str, int]:
        """
        Single sweep:
        1. Select due enrollments (bounded by batch size)
        2. Advance each one, at most ``concurrency`` at a time
        3. Count outcomes; one failure never stops the others

        Returns counts: {"due": N, "advanced": N, "noop": N, "errors": N}
        """
        now = now or self.clock()
        stats = {"due": 0, "advanced": 0, "noop": 0, "errors": 0}

        due = await self.store.list_due_enrollments(now, limit=self.batch_size)
        stats["due"] = len(due)
        if not due:
            return stats

        semaphore = asyncio.Semaphore(self.concurrency)

        async def resume_one(enrollment: Enrollment) -> Optional[AdvanceResult]:
            async with semaphore:
                try:
                    return await self.state_machine.advance(enrollment.id, now)
                except Exception as e:
                    logger.error("sweep_enrollment_failed",
                                 enrollment_id=enrollment.id,
                                 scenario_id=enrollment.scenario_id,
                                 error=str(e),
                                 exc_info=True)
                    return None

        results = await asyncio.gather(*(resume_one(e) for e in due))
        for result in results:
            if result is None:
                stats["errors"] += 1
            elif result:
                stats["advanced"] += 1
            else:
                stats["noop"] += 1

        logger.info("sweep_completed", **stats)
        return stats
