"""Day-scoped award lock over the append-only feed.

The feed offers neither compare-and-swap nor deletion, so the lock is
optimistic: append a claim, re-read the window, and the newest claim for the
day wins, provided no other live claim for the day is visible. A runner that
sees another live claim backs off and releases its own. An unreleased claim
older than ``max_age_ms`` is stale and treated as absent, which is the only
way a crashed run can be recovered.
"""

from __future__ import annotations

import enum
import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from vine_award.services.events import LockClaimed, LockReleased, LogEntry, encode_event
from vine_award.services.feed import LogWindowReader
from vine_award.services.state import (
    find_latest_lock_claim,
    find_lock_claims,
    has_award_completion,
    is_lock_released,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_MS = 20 * 60 * 1000


class LockStatus(str, enum.Enum):
    """Outcome of a lock acquisition attempt."""

    LOCKED = "locked"
    ALREADY_AWARDED = "already_awarded"
    IN_PROGRESS = "in_progress"
    RACE_LOST = "race_lost"
    LOCK_NOT_FOUND = "lock_not_found"


@dataclass(frozen=True)
class AwardLock:
    """A lock claim; ``nonce`` embeds ``created_at_ms``."""

    day: str
    nonce: str
    created_at_ms: int


@dataclass(frozen=True)
class LockAttempt:
    """Result of ``acquire``; ``lock`` is set only when ``status`` is LOCKED."""

    status: LockStatus
    lock: AwardLock | None = None
    holder_nonce: str | None = None

    @property
    def acquired(self) -> bool:
        return self.status is LockStatus.LOCKED


def make_nonce(now_ms: int) -> str:
    """Return a fresh nonce embedding ``now_ms``."""
    return f"{int(now_ms)}-{secrets.token_hex(6)}"


def decode_nonce_time(nonce: str) -> int | None:
    """Return the creation time embedded in ``nonce``, or None if malformed."""
    head = (nonce or "").split("-", 1)[0]
    if not head.isdigit():
        return None
    return int(head)


def _now_ms() -> int:
    return int(time.time() * 1000)


class Lock(Protocol):
    """Day-scoped mutual exclusion used by the award runner."""

    async def acquire(self, domain: str, day: str) -> LockAttempt: ...

    async def release(self, domain: str, day: str, nonce: str) -> bool: ...

    def is_stale(self, nonce: str, now_ms: int | None = None) -> bool: ...


class LockCoordinator:
    """Optimistic append-and-reread lock implementation of ``Lock``."""

    def __init__(
        self,
        reader: LogWindowReader,
        *,
        window_size: int = 300,
        max_age_ms: int = DEFAULT_MAX_AGE_MS,
        coordinator_id: str | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.reader = reader
        self.window_size = window_size
        self.max_age_ms = max_age_ms
        self.coordinator_id = coordinator_id
        self._clock = clock

    def is_stale(self, nonce: str, now_ms: int | None = None) -> bool:
        """Return True when the claim behind ``nonce`` is past ``max_age_ms``.

        A nonce whose time cannot be decoded is treated as stale.
        """
        created = decode_nonce_time(nonce)
        if created is None:
            return True
        now = self._clock() if now_ms is None else now_ms
        return now - created > self.max_age_ms

    def _live_rival(self, entries: list[LogEntry], day: str, nonce: str) -> str | None:
        for claim in find_lock_claims(entries, day, self.coordinator_id):
            if claim.nonce == nonce:
                continue
            if is_lock_released(entries, day, claim.nonce, self.coordinator_id):
                continue
            if not self.is_stale(claim.nonce):
                return claim.nonce
        return None

    async def acquire(self, domain: str, day: str) -> LockAttempt:
        """Try to take the award lock for ``(domain, day)``."""
        entries = await self.reader.fetch_window(domain, self.window_size)

        if has_award_completion(entries, day, self.coordinator_id):
            return LockAttempt(LockStatus.ALREADY_AWARDED)

        current = find_latest_lock_claim(entries, day, self.coordinator_id)
        if (
            current is not None
            and not is_lock_released(entries, day, current.nonce, self.coordinator_id)
            and not self.is_stale(current.nonce)
        ):
            logger.info("Award lock for %s/%s held by %s", domain, day, current.nonce)
            return LockAttempt(LockStatus.IN_PROGRESS, holder_nonce=current.nonce)

        now = self._clock()
        nonce = make_nonce(now)
        await self.reader.append(domain, encode_event(LockClaimed(day=day, nonce=nonce)))

        entries = await self.reader.fetch_window(domain, self.window_size)
        winner = find_latest_lock_claim(entries, day, self.coordinator_id)
        if winner is None:
            logger.error("Lock claim for %s/%s not visible after append", domain, day)
            return LockAttempt(LockStatus.LOCK_NOT_FOUND)
        if winner.nonce != nonce:
            logger.info("Lost award lock race for %s/%s to %s", domain, day, winner.nonce)
            await self.release(domain, day, nonce)
            return LockAttempt(LockStatus.RACE_LOST, holder_nonce=winner.nonce)

        rival = self._live_rival(entries, day, nonce)
        if rival is not None:
            logger.info("Award lock for %s/%s contested by %s", domain, day, rival)
            await self.release(domain, day, nonce)
            return LockAttempt(LockStatus.RACE_LOST, holder_nonce=rival)

        logger.info("Acquired award lock for %s/%s (%s)", domain, day, nonce)
        return LockAttempt(
            LockStatus.LOCKED,
            lock=AwardLock(day=day, nonce=nonce, created_at_ms=now),
            holder_nonce=nonce,
        )

    async def release(self, domain: str, day: str, nonce: str) -> bool:
        """Append a lock-done marker; failures only delay the next run."""
        try:
            await self.reader.append(domain, encode_event(LockReleased(day=day, nonce=nonce)))
        except Exception as exc:
            logger.warning("Failed to release award lock %s for %s/%s: %s", nonce, domain, day, exc)
            return False
        logger.info("Released award lock for %s/%s (%s)", domain, day, nonce)
        return True
