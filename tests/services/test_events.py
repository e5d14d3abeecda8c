"""Tests for marker decoding."""

import pytest

from vine_award.services.events import (
    Awarded,
    CheckedIn,
    LockClaimed,
    LockReleased,
    LogEntry,
    Overridden,
    SessionStarted,
    decode_event,
    encode_event,
    is_valid_day,
)


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("START:2024-05-01", SessionStarted(day="2024-05-01")),
        ("gm! CHECKIN:alice:Wa11et", CheckedIn(participant_id="alice", value="Wa11et")),
        (
            "OVERRIDE:2024-05-01:bob:NewWallet",
            Overridden(day="2024-05-01", participant_id="bob", value="NewWallet"),
        ),
        ("LOCK:2024-05-01:1714550000000-abc", LockClaimed("2024-05-01", "1714550000000-abc")),
        ("LOCK_DONE:2024-05-01:1714550000000-abc", LockReleased("2024-05-01", "1714550000000-abc")),
        ("Run finished AWARDED:2024-05-01", Awarded(day="2024-05-01")),
    ],
)
def test_decode_event_recognises_each_marker(text: str, expected: object) -> None:
    assert decode_event(text) == expected


@pytest.mark.parametrize(
    "text",
    [
        "",
        None,
        "hello there",
        "START:2024-5-1",
        "CHECKIN:alice",
        "XSTART:2024-05-01",
        "RECHECKIN:alice:wallet",
        "LOCK:2024-05-01",
    ],
)
def test_decode_event_ignores_malformed_text(text: str | None) -> None:
    assert decode_event(text) is None


def test_lock_done_is_not_mistaken_for_lock() -> None:
    assert isinstance(decode_event("LOCK_DONE:2024-05-01:n1"), LockReleased)


def test_encode_event_uses_marker_grammar() -> None:
    assert encode_event(LockClaimed(day="2024-05-01", nonce="n1")) == "LOCK:2024-05-01:n1"
    assert encode_event(Awarded(day="2024-05-01")) == "AWARDED:2024-05-01"
    with pytest.raises(TypeError):
        encode_event("START:2024-05-01")  # type: ignore[arg-type]


def test_log_entry_decodes_once_on_create() -> None:
    entry = LogEntry.create("1234", "CHECKIN:carol:W", author_id=99)
    assert entry.id == 1234
    assert entry.author_id == "99"
    assert entry.event == CheckedIn(participant_id="carol", value="W")


def test_is_valid_day_rejects_impossible_dates() -> None:
    assert is_valid_day("2024-02-29")
    assert not is_valid_day("2023-02-29")
    assert not is_valid_day("2024-13-01")
    assert not is_valid_day("today")
