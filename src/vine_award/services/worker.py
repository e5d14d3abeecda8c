"""Background draining of the award job queue.

This module provides the AwardQueueWorker class that pops queued award jobs
and runs them through the ``AwardRunner``. Only one worker drains at a time,
enforced by a TTL'd token lock in Redis, and a completion memo lets replayed
jobs finish without touching the ledger again.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any

from redis.exceptions import RedisError

from vine_award.core.errors import AwardStageError, VineAwardError
from vine_award.services.pipeline import AwardRunner
from vine_award.services.queue import AwardQueue

# Configure logger for this module
logger = logging.getLogger(__name__)

MAX_JOBS_PER_DRAIN = 3
MEMO_STATUSES = ("completed", "partial", "already_awarded")
LOCK_MARGIN_SECONDS = 60


@dataclass
class DrainReport:
    """Summary of one drain pass."""

    processed: int = 0
    failed: int = 0
    skipped: str | None = None
    last: dict[str, Any] | None = None
    outcomes: list[dict[str, Any]] = field(default_factory=list)


class AwardQueueWorker:
    """Drains queued award jobs under a single-flight lock.

    The worker can be driven on demand (``drain``, e.g. from a cron-hit HTTP
    endpoint) or as a periodic background loop (``start``/``stop``).
    """

    def __init__(
        self,
        queue: AwardQueue,
        runner: AwardRunner,
        *,
        lock_seconds: int = 60,
        poll_interval_seconds: float = 30.0,
        run_timeout_seconds: float = 240.0,
    ) -> None:
        self.queue = queue
        self.runner = runner
        self.lock_seconds = max(60, int(lock_seconds))
        self.poll_interval_seconds = poll_interval_seconds
        self.run_timeout_seconds = max(0.0, float(run_timeout_seconds))
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    def lock_ttl(self, jobs: int) -> int:
        """Worker lock TTL that outlives ``jobs`` runs at their full ceiling."""
        ceiling = math.ceil(jobs * self.run_timeout_seconds) + LOCK_MARGIN_SECONDS
        return max(self.lock_seconds, ceiling)

    async def drain(self, max_jobs: int = 1) -> DrainReport:
        """Process up to ``max_jobs`` queued jobs (clamped to 1..3)."""
        report = DrainReport()
        jobs = max(1, min(MAX_JOBS_PER_DRAIN, int(max_jobs)))
        lock = await self.queue.acquire_worker_lock(self.lock_ttl(jobs))
        if not lock.ok:
            logger.info("award-worker: skipped (worker_locked)")
            report.skipped = "worker_locked"
            return report

        try:
            for _ in range(jobs):
                job = await self.queue.pop()
                if job is None:
                    logger.debug("award-worker: no queued job")
                    break

                report.last = {"id": job.id, "domain": job.domain, "day": job.day}
                logger.info("award-worker: picked job %s", report.last)
                try:
                    if await self.queue.is_done(job.domain, job.day):
                        logger.info("award-worker: skipping already_done %s", report.last)
                        report.outcomes.append({**report.last, "status": "already_done"})
                        continue

                    outcome = await self.runner.run(job.domain, job.day)
                    report.processed += 1
                    report.outcomes.append(
                        {**report.last, "status": outcome.status, "stage": outcome.stage}
                    )
                    logger.info("award-worker: job %s finished with %s", job.id, outcome.status)
                    if outcome.status in MEMO_STATUSES:
                        await self.queue.mark_done(job.domain, job.day)
                except AwardStageError as e:
                    report.failed += 1
                    report.outcomes.append(
                        {**report.last, "status": "error", "stage": e.stage, "error": e.message}
                    )
                    logger.error(
                        "award-worker: job %s failed in %s: %s", job.id, e.stage, e.message
                    )
                except (VineAwardError, RedisError) as e:
                    report.failed += 1
                    report.outcomes.append({**report.last, "status": "error", "error": str(e)})
                    logger.error("award-worker: job %s failed: %s", job.id, e, exc_info=True)
                except Exception as e:
                    report.failed += 1
                    report.outcomes.append(
                        {**report.last, "status": "error", "error": str(e) or type(e).__name__}
                    )
                    logger.error(
                        "award-worker: job %s failed unexpectedly: %s", job.id, e, exc_info=True
                    )
                finally:
                    await self.queue.release_dedupe(job.domain, job.day)
        finally:
            await self.queue.release_worker_lock(lock.token)

        return report

    async def start(self) -> None:
        """Start the background drain loop."""

        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the background drain loop."""

        if self._task is None:
            return

        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        interval = max(0.1, float(self.poll_interval_seconds))

        while not self._stopping.is_set():
            try:
                await self.drain(MAX_JOBS_PER_DRAIN)
            except (RedisError, OSError, ConnectionError) as e:
                logger.warning("AwardQueueWorker encountered queue error: %s", e)
                await self._sleep(min(interval * 4, 300.0))
                continue
            except Exception as e:
                logger.error("AwardQueueWorker drain failed: %s", e, exc_info=True)
                await self._sleep(min(interval * 4, 300.0))
                continue

            await self._sleep(interval)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
