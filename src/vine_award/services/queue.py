# src/vine_award/services/queue.py
"""Redis-backed award job queue.

Jobs are deduplicated per ``(domain, day)`` with a TTL'd key, consumed FIFO,
drained under a single-flight worker lock, and short-circuited by a
completion memo so replayed jobs never award twice.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import WatchError

logger = logging.getLogger(__name__)

QUEUE_KEY = "vine:award:queue:v1"
WORKER_LOCK_KEY = "vine:award:worker:lock"


def dedupe_key(domain: str, day: str) -> str:
    return f"vine:award:dedupe:{domain}:{day}"


def done_key(domain: str, day: str) -> str:
    return f"vine:award:done:{domain}:{day}"


@dataclass(frozen=True)
class AwardJob:
    """One queued award request."""

    id: str
    domain: str
    day: str
    requested_by: str | None
    enqueued_at: str

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_raw(cls, raw: Any) -> AwardJob | None:
        """Parse a queued payload; returns None when it is unusable."""
        if not raw:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except ValueError:
                return None
        if not isinstance(raw, dict):
            return None
        domain = raw.get("domain") or raw.get("threadId")
        day = raw.get("day")
        if not domain or not day:
            return None
        return cls(
            id=str(raw.get("id") or uuid.uuid4()),
            domain=str(domain),
            day=str(day),
            requested_by=raw.get("requested_by") or raw.get("requestedBy"),
            enqueued_at=str(raw.get("enqueued_at") or raw.get("enqueuedAt") or ""),
        )


@dataclass(frozen=True)
class EnqueueResult:
    ok: bool
    reason: str | None = None
    job: AwardJob | None = None


@dataclass(frozen=True)
class WorkerLock:
    ok: bool
    token: str


class AwardQueue:
    """Dedupe-guarded FIFO queue with a single-flight worker lock."""

    def __init__(
        self,
        redis: Redis,
        *,
        dedupe_ttl_seconds: int = 30 * 60,
        dedupe_max_age_seconds: int = 15 * 60,
        done_ttl_seconds: int = 2 * 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self.dedupe_ttl_seconds = dedupe_ttl_seconds
        self.dedupe_max_age_seconds = dedupe_max_age_seconds
        self.done_ttl_seconds = done_ttl_seconds
        self._clock = clock

    def _dedupe_is_reclaimable(self, raw: Any) -> bool:
        """Return True for an absent, legacy, unparseable or expired dedupe payload."""
        if not raw:
            return True
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            return True
        if not isinstance(payload, dict):
            return True
        at_ms = payload.get("at_ms")
        if not isinstance(at_ms, (int, float)):
            return True
        age_seconds = self._clock() - float(at_ms) / 1000
        return age_seconds > self.dedupe_max_age_seconds

    async def enqueue(
        self, domain: str, day: str, requested_by: str | None = None
    ) -> EnqueueResult:
        """Queue an award job unless one for ``(domain, day)`` is pending."""
        if not domain or not day:
            raise ValueError("Missing domain/day")

        now = self._clock()
        job = AwardJob(
            id=str(uuid.uuid4()),
            domain=str(domain),
            day=str(day),
            requested_by=str(requested_by) if requested_by else None,
            enqueued_at=datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
        )
        marker = json.dumps({"id": job.id, "at_ms": int(now * 1000)})
        key = dedupe_key(job.domain, job.day)

        created = await self._redis.set(key, marker, nx=True, ex=self.dedupe_ttl_seconds)
        if not created and not await self._reclaim(key, marker):
            return EnqueueResult(ok=False, reason="duplicate")

        await self._redis.rpush(QUEUE_KEY, job.to_json())
        logger.info("Enqueued award job %s for %s/%s", job.id, job.domain, job.day)
        return EnqueueResult(ok=True, job=job)

    async def _reclaim(self, key: str, marker: str) -> bool:
        """Replace a poisoned or expired dedupe entry; False if it is live."""
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                existing = await pipe.get(key)
                if not self._dedupe_is_reclaimable(existing):
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, marker, ex=self.dedupe_ttl_seconds)
                await pipe.execute()
            except WatchError:
                return False
        logger.warning("Reclaimed stale dedupe entry %s", key)
        return True

    async def pop(self) -> AwardJob | None:
        """Dequeue the oldest job, skipping payloads that cannot be parsed."""
        while True:
            raw = await self._redis.lpop(QUEUE_KEY)
            if raw is None:
                return None
            job = AwardJob.from_raw(raw)
            if job is not None:
                return job
            logger.warning("Dropping unparseable award job payload: %r", raw)

    async def release_dedupe(self, domain: str, day: str) -> None:
        await self._redis.delete(dedupe_key(domain, day))

    async def mark_done(self, domain: str, day: str) -> None:
        await self._redis.set(done_key(domain, day), "1", ex=self.done_ttl_seconds)

    async def is_done(self, domain: str, day: str) -> bool:
        return bool(await self._redis.get(done_key(domain, day)))

    async def acquire_worker_lock(self, ttl_seconds: int = 60) -> WorkerLock:
        token = str(uuid.uuid4())
        ok = await self._redis.set(WORKER_LOCK_KEY, token, nx=True, ex=max(1, int(ttl_seconds)))
        return WorkerLock(ok=bool(ok), token=token)

    async def release_worker_lock(self, token: str) -> bool:
        """Delete the worker lock only while it still holds ``token``."""
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(WORKER_LOCK_KEY)
                current = await pipe.get(WORKER_LOCK_KEY)
                if isinstance(current, bytes):
                    current = current.decode("utf-8")
                if current != token:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(WORKER_LOCK_KEY)
                await pipe.execute()
            except WatchError:
                return False
        return True
