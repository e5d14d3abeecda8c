"""Tests for the feed client and window reader."""

import json

import httpx
import pytest

from conftest import NO_WAIT, InMemoryFeed
from vine_award.core.errors import FeedError, FeedPermissionError, TransientIOError
from vine_award.services.events import CheckedIn
from vine_award.services.feed import (
    DiscordFeedClient,
    FeedConfig,
    LogWindowReader,
    entry_from_message,
)

CONFIG = FeedConfig(
    base_url="https://feed.test/api", bot_token="tok", page_limit=100, timeout_seconds=5.0
)


def make_client(handler) -> DiscordFeedClient:
    return DiscordFeedClient(CONFIG, transport=httpx.MockTransport(handler))


def test_entry_from_message_reads_author_and_content() -> None:
    entry = entry_from_message(
        {"id": "55", "content": "CHECKIN:a:W", "author": {"id": "u1"}, "timestamp": "t"}
    )
    assert entry.id == 55
    assert entry.author_id == "u1"
    assert entry.event == CheckedIn(participant_id="a", value="W")


@pytest.mark.asyncio
async def test_fetch_page_sends_cursor_and_sorts_newest_first() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json=[
                {"id": "10", "content": "a", "author": {"id": "u"}},
                {"id": "12", "content": "b", "author": {"id": "u"}},
            ],
        )

    client = make_client(handler)
    try:
        page = await client.fetch_page("chan", 50, before=99)
    finally:
        await client.close()

    assert [entry.id for entry in page] == [12, 10]
    request = seen[0]
    assert request.url.path == "/api/channels/chan/messages"
    assert request.url.params["limit"] == "50"
    assert request.url.params["before"] == "99"
    assert request.headers["Authorization"] == "Bot tok"


@pytest.mark.asyncio
async def test_append_returns_new_entry_id() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content) == {"content": "START:2024-05-01"}
        return httpx.Response(200, json={"id": "777"})

    client = make_client(handler)
    try:
        assert await client.append("chan", "START:2024-05-01") == 777
    finally:
        await client.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "error"),
    [
        (403, FeedPermissionError),
        (404, FeedPermissionError),
        (400, FeedError),
        (503, TransientIOError),
    ],
)
async def test_request_errors_are_mapped(status_code: int, error: type[Exception]) -> None:
    client = make_client(lambda request: httpx.Response(status_code, json={}))
    try:
        with pytest.raises(error):
            await client.fetch_page("chan", 10)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_rate_limit_carries_retry_after() -> None:
    client = make_client(lambda request: httpx.Response(429, json={"retry_after": 1.5}))
    try:
        with pytest.raises(TransientIOError) as excinfo:
            await client.append("chan", "x")
    finally:
        await client.close()
    assert excinfo.value.retry_after == 1.5


@pytest.mark.asyncio
async def test_reader_retries_transient_failures() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(429, json={"retry_after": 0})
        return httpx.Response(200, json=[{"id": "1", "content": "x", "author": {"id": "u"}}])

    client = make_client(handler)
    reader = LogWindowReader(client, max_attempts=4, policy=NO_WAIT)
    try:
        window = await reader.fetch_window("chan", 10)
    finally:
        await client.close()

    assert calls["n"] == 3
    assert [entry.id for entry in window] == [1]


@pytest.mark.asyncio
async def test_reader_does_not_retry_permission_errors() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(403, json={})

    client = make_client(handler)
    reader = LogWindowReader(client, max_attempts=4, policy=NO_WAIT)
    try:
        with pytest.raises(FeedPermissionError):
            await reader.ensure_access("chan")
    finally:
        await client.close()
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_fetch_window_paginates_until_window_is_full() -> None:
    feed = InMemoryFeed(page_limit=2)
    for index in range(7):
        feed.add(f"msg {index}")
    reader = LogWindowReader(feed, policy=NO_WAIT)

    window = await reader.fetch_window("chan", 5)

    assert [entry.id for entry in window] == [1006, 1005, 1004, 1003, 1002]
    assert feed.fetch_calls == 3


@pytest.mark.asyncio
async def test_fetch_window_stops_on_short_page() -> None:
    feed = InMemoryFeed(page_limit=2)
    for index in range(3):
        feed.add(f"msg {index}")
    reader = LogWindowReader(feed, policy=NO_WAIT)

    window = await reader.fetch_window("chan", 300)

    assert [entry.id for entry in window] == [1002, 1001, 1000]
    assert feed.fetch_calls == 2


@pytest.mark.asyncio
async def test_ensure_access_joins_each_domain_once() -> None:
    feed = InMemoryFeed()
    reader = LogWindowReader(feed, policy=NO_WAIT)

    await reader.ensure_access("chan")
    await reader.ensure_access("chan")
    await reader.ensure_access("other")

    assert feed.joined == ["chan", "other"]


@pytest.mark.asyncio
async def test_identity_reads_the_bot_account() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/users/@me"
        return httpx.Response(200, json={"id": "4242", "username": "vine"})

    client = make_client(handler)
    try:
        assert await LogWindowReader(client, policy=NO_WAIT).identity() == "4242"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_identity_without_an_id_is_a_feed_error() -> None:
    client = make_client(lambda request: httpx.Response(200, json={}))
    try:
        with pytest.raises(FeedError):
            await client.identity()
    finally:
        await client.close()
