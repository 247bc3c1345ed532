"""Explicit queue for continuous-flow re-attempts.

Forming one next-tier cell can leave enough winners for another. Instead of
calling itself again, the advancer enqueues an ``AdvanceJob`` which a worker
(or ``run_pending`` in tests and sweeps) picks up with a fresh session.
"""

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.orm import Session

from .database import SessionLocal
from .logging_config import set_deliberation_id
from .notifications import EffectDispatcher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdvanceJob:
    """Retry next-tier formation for one deliberation tier."""

    deliberation_id: int
    tier: int


class AdvanceQueue:
    """In-process job queue with duplicate suppression."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        effects: EffectDispatcher | None = None,
        rng: random.Random | None = None,
        worker_name: str = "advance-worker",
    ):
        self.session_factory = session_factory
        self.effects = effects
        self.rng = rng
        self.worker_name = worker_name
        self._queue: asyncio.Queue[AdvanceJob] = asyncio.Queue()
        self._queued: set[AdvanceJob] = set()
        self._task: asyncio.Task | None = None
        self.running = False
        self.jobs_processed = 0
        self.jobs_failed = 0

    def enqueue(self, deliberation_id: int, tier: int) -> bool:
        """Queue a job; returns False if an identical job is already waiting."""
        job = AdvanceJob(deliberation_id, tier)
        if job in self._queued:
            logger.debug("[%s] Job already queued: %s", self.worker_name, job)
            return False
        self._queued.add(job)
        self._queue.put_nowait(job)
        logger.debug("[%s] Enqueued %s", self.worker_name, job)
        return True

    def __len__(self) -> int:
        return self._queue.qsize()

    async def process(self, job: AdvanceJob) -> None:
        """Run one formation attempt in its own session."""
        # Imported here: continuous_flow enqueues onto this queue
        from .continuous_flow import try_advance_tier

        set_deliberation_id(job.deliberation_id)
        db = self.session_factory()
        try:
            await try_advance_tier(
                db, job.deliberation_id, job.tier, effects=self.effects, queue=self, rng=self.rng
            )
        finally:
            db.close()

    async def _run_one(self, job: AdvanceJob) -> None:
        self._queued.discard(job)
        try:
            await self.process(job)
            self.jobs_processed += 1
        except Exception as e:
            self.jobs_failed += 1
            logger.error("[%s] Job %s failed: %s", self.worker_name, job, e, exc_info=True)

    async def run_pending(self) -> int:
        """Process queued jobs until the queue is empty; returns jobs run."""
        count = 0
        while not self._queue.empty():
            job = self._queue.get_nowait()
            await self._run_one(job)
            self._queue.task_done()
            count += 1
        return count

    async def _worker_loop(self) -> None:
        logger.info("[%s] Started", self.worker_name)
        while self.running:
            try:
                job = await self._queue.get()
            except asyncio.CancelledError:
                logger.info("[%s] Received cancellation signal", self.worker_name)
                break
            await self._run_one(job)
            self._queue.task_done()
        logger.info(
            "[%s] Shutting down. Processed: %d, Failed: %d",
            self.worker_name,
            self.jobs_processed,
            self.jobs_failed,
        )

    def start(self) -> asyncio.Task:
        """Start the background worker on the running loop."""
        if self._task is None or self._task.done():
            self.running = True
            self._task = asyncio.get_running_loop().create_task(self._worker_loop())
        return self._task

    async def stop(self) -> None:
        """Stop the background worker; queued jobs stay queued."""
        self.running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


_queue: AdvanceQueue | None = None


def get_advance_queue() -> AdvanceQueue:
    """Process-wide queue used when callers pass none."""
    global _queue
    if _queue is None:
        _queue = AdvanceQueue()
    return _queue
