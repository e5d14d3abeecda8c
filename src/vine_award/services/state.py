"""Pure reconstruction of per-day state from a fetched feed window.

Every function here takes the window newest-first, exactly as the feed
returns it, performs no I/O and is deterministic: running it twice over the
same window yields the same result.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from vine_award.services.events import (
    Awarded,
    CheckedIn,
    LockClaimed,
    LockReleased,
    LogEntry,
    Overridden,
    SessionStarted,
)

ValueValidator = Callable[[str], bool]


@dataclass(frozen=True)
class LockClaim:
    """A lock-claim marker found in the window."""

    day: str
    nonce: str
    log_entry_id: int


@dataclass(frozen=True)
class DayState:
    """Snapshot of one ``(domain, day)`` derived from a window."""

    day: str
    start_id: int | None
    roster: dict[str, str] = field(default_factory=dict)
    awarded: bool = False
    latest_claim: LockClaim | None = None
    latest_claim_released: bool = False

    @property
    def session_started(self) -> bool:
        return self.start_id is not None

    @property
    def participants(self) -> list[str]:
        """Roster values deduplicated, in first-seen order."""
        return list(dict.fromkeys(self.roster.values()))


def _trusted(entry: LogEntry, coordinator_id: str | None) -> bool:
    return coordinator_id is None or entry.author_id == coordinator_id


def _default_valid(value: str) -> bool:
    return bool(value and value.strip())


def find_session_start_id(
    entries: Sequence[LogEntry], day: str, coordinator_id: str | None = None
) -> int | None:
    """Return the id of the newest ``START:<day>`` entry, or None.

    A restart later the same day supersedes earlier starts, which implicitly
    discards every check-in that preceded it.
    """
    for entry in entries:
        event = entry.event
        if (
            isinstance(event, SessionStarted)
            and event.day == day
            and _trusted(entry, coordinator_id)
        ):
            return entry.id
    return None


def build_roster(
    entries: Sequence[LogEntry],
    start_id: int | None,
    day: str,
    coordinator_id: str | None = None,
    is_valid_value: ValueValidator | None = None,
) -> dict[str, str]:
    """Fold check-ins and overrides after ``start_id`` into a roster.

    Check-ins are first-write-wins per participant. Overrides authored by
    ``coordinator_id`` for ``day`` always overwrite, so the latest override
    for a participant is the one that sticks. Overrides are ignored when no
    coordinator identity is known. Malformed entries are skipped.
    """
    if start_id is None:
        return {}

    valid = is_valid_value or _default_valid
    roster: dict[str, str] = {}
    # Fold order is significant; must stay oldest-to-newest and sequential.
    for entry in reversed([e for e in entries if e.id > start_id]):
        event = entry.event
        if isinstance(event, CheckedIn):
            if event.participant_id in roster or not valid(event.value):
                continue
            roster[event.participant_id] = event.value
        elif isinstance(event, Overridden):
            if coordinator_id is None or entry.author_id != coordinator_id:
                continue
            if event.day != day or not valid(event.value):
                continue
            roster[event.participant_id] = event.value
    return roster


def has_award_completion(
    entries: Sequence[LogEntry], day: str, coordinator_id: str | None = None
) -> bool:
    """Return True when an ``AWARDED:<day>`` marker is in the window."""
    return any(
        isinstance(entry.event, Awarded)
        and entry.event.day == day
        and _trusted(entry, coordinator_id)
        for entry in entries
    )


def find_latest_lock_claim(
    entries: Sequence[LogEntry], day: str, coordinator_id: str | None = None
) -> LockClaim | None:
    """Return the newest ``LOCK:<day>:<nonce>`` claim in the window."""
    for entry in entries:
        event = entry.event
        if isinstance(event, LockClaimed) and event.day == day and _trusted(entry, coordinator_id):
            return LockClaim(day=event.day, nonce=event.nonce, log_entry_id=entry.id)
    return None


def find_lock_claims(
    entries: Sequence[LogEntry], day: str, coordinator_id: str | None = None
) -> list[LockClaim]:
    """Return every claim for ``day`` in the window, newest first."""
    return [
        LockClaim(day=entry.event.day, nonce=entry.event.nonce, log_entry_id=entry.id)
        for entry in entries
        if isinstance(entry.event, LockClaimed)
        and entry.event.day == day
        and _trusted(entry, coordinator_id)
    ]


def is_lock_released(
    entries: Sequence[LogEntry], day: str, nonce: str, coordinator_id: str | None = None
) -> bool:
    """Return True when a ``LOCK_DONE`` marker references ``nonce``."""
    return any(
        isinstance(entry.event, LockReleased)
        and entry.event.day == day
        and entry.event.nonce == nonce
        and _trusted(entry, coordinator_id)
        for entry in entries
    )


def reconstruct(
    entries: Sequence[LogEntry],
    day: str,
    coordinator_id: str | None = None,
    is_valid_value: ValueValidator | None = None,
) -> DayState:
    """Derive the full ``DayState`` for ``day`` from one window."""
    start_id = find_session_start_id(entries, day, coordinator_id)
    claim = find_latest_lock_claim(entries, day, coordinator_id)
    return DayState(
        day=day,
        start_id=start_id,
        roster=build_roster(entries, start_id, day, coordinator_id, is_valid_value),
        awarded=has_award_completion(entries, day, coordinator_id),
        latest_claim=claim,
        latest_claim_released=(
            claim is not None and is_lock_released(entries, day, claim.nonce, coordinator_id)
        ),
    )
