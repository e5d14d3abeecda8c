"""Log entries and the marker events decoded from them.

Markers are embedded as substrings of free-form feed messages. Each entry is
decoded exactly once, when it is read from the feed, into one variant of the
closed ``LogEvent`` union; downstream code matches on the variant type and
never re-parses text.

Grammar (``<day>`` is ``YYYY-MM-DD``)::

    START:<day>
    CHECKIN:<participantId>:<value>
    OVERRIDE:<day>:<participantId>:<value>
    LOCK:<day>:<nonce>
    LOCK_DONE:<day>:<nonce>
    AWARDED:<day>
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Union

DAY_PATTERN = r"\d{4}-\d{2}-\d{2}"
_TOKEN = r"[^\s:]+"
_BOUNDARY = r"(?<![A-Za-z0-9_])"


@dataclass(frozen=True)
class SessionStarted:
    day: str


@dataclass(frozen=True)
class CheckedIn:
    participant_id: str
    value: str


@dataclass(frozen=True)
class Overridden:
    day: str
    participant_id: str
    value: str


@dataclass(frozen=True)
class LockClaimed:
    day: str
    nonce: str


@dataclass(frozen=True)
class LockReleased:
    day: str
    nonce: str


@dataclass(frozen=True)
class Awarded:
    day: str


LogEvent = Union[SessionStarted, CheckedIn, Overridden, LockClaimed, LockReleased, Awarded]

# Order matters: an entry carries at most one marker and the first match wins.
_DECODERS: tuple[tuple[re.Pattern[str], type], ...] = (
    (re.compile(rf"{_BOUNDARY}AWARDED:({DAY_PATTERN})(?![\d])"), Awarded),
    (re.compile(rf"{_BOUNDARY}LOCK_DONE:({DAY_PATTERN}):({_TOKEN})"), LockReleased),
    (re.compile(rf"{_BOUNDARY}LOCK:({DAY_PATTERN}):({_TOKEN})"), LockClaimed),
    (
        re.compile(rf"{_BOUNDARY}OVERRIDE:({DAY_PATTERN}):({_TOKEN}):({_TOKEN})"),
        Overridden,
    ),
    (re.compile(rf"{_BOUNDARY}START:({DAY_PATTERN})(?![\d])"), SessionStarted),
    (re.compile(rf"{_BOUNDARY}CHECKIN:({_TOKEN}):({_TOKEN})"), CheckedIn),
)


def decode_event(text: str | None) -> LogEvent | None:
    """Decode the marker embedded in ``text``, or return None."""
    if not text:
        return None
    for pattern, event_type in _DECODERS:
        match = pattern.search(text)
        if match:
            return event_type(*match.groups())
    return None


def encode_event(event: LogEvent) -> str:
    """Render ``event`` in the marker grammar."""
    if isinstance(event, SessionStarted):
        return f"START:{event.day}"
    if isinstance(event, CheckedIn):
        return f"CHECKIN:{event.participant_id}:{event.value}"
    if isinstance(event, Overridden):
        return f"OVERRIDE:{event.day}:{event.participant_id}:{event.value}"
    if isinstance(event, LockClaimed):
        return f"LOCK:{event.day}:{event.nonce}"
    if isinstance(event, LockReleased):
        return f"LOCK_DONE:{event.day}:{event.nonce}"
    if isinstance(event, Awarded):
        return f"AWARDED:{event.day}"
    raise TypeError(f"Unsupported log event: {event!r}")


def is_valid_day(day: str) -> bool:
    """Return True for a well-formed ``YYYY-MM-DD`` calendar day."""
    if not re.fullmatch(DAY_PATTERN, day or ""):
        return False
    try:
        datetime.strptime(day, "%Y-%m-%d")
    except ValueError:
        return False
    return True


@dataclass(frozen=True)
class LogEntry:
    """One immutable feed entry with its decoded marker.

    ``id`` is the feed's totally ordered key; ``approx_timestamp`` is
    informational only and never used for ordering.
    """

    id: int
    author_id: str | None
    text: str
    approx_timestamp: str | None = None
    event: LogEvent | None = field(default=None, compare=False)

    @classmethod
    def create(
        cls,
        entry_id: int | str,
        text: str,
        *,
        author_id: str | None = None,
        approx_timestamp: str | None = None,
    ) -> LogEntry:
        """Build an entry, decoding its marker once."""
        return cls(
            id=int(entry_id),
            author_id=str(author_id) if author_id is not None else None,
            text=text or "",
            approx_timestamp=approx_timestamp,
            event=decode_event(text),
        )
