"""Feed client and bounded window reader.

This module provides the HTTP client for the append-only message feed (a
Discord-compatible REST API) and the ``LogWindowReader`` that turns it into
bounded, newest-first windows of decoded ``LogEntry`` objects. It includes:

- HTTP client with bot authentication and error mapping
- "before" cursor pagination when a window exceeds one page
- Bounded retries with jittered backoff for transient failures
- One-time read-access registration per domain (joining a thread)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from vine_award.core.errors import FeedError, FeedPermissionError, TransientIOError
from vine_award.core.settings import Settings
from vine_award.services.events import LogEntry
from vine_award.utils.retry import BackoffPolicy, retry_async

logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_OK = 200
HTTP_NO_CONTENT = 204
HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_NOT_FOUND = 404
HTTP_TOO_MANY_REQUESTS = 429
HTTP_INTERNAL_SERVER_ERROR = 500

DISCORD_MAX_PAGE = 100


class FeedService(Protocol):
    """Append-only log substrate used by the reader and the lock."""

    page_limit: int

    async def fetch_page(
        self, domain: str, limit: int, before: int | None = None
    ) -> list[LogEntry]: ...

    async def append(self, domain: str, text: str) -> int: ...

    async def join(self, domain: str) -> None: ...

    async def identity(self) -> str: ...


@dataclass(frozen=True)
class FeedConfig:
    """Immutable configuration for feed operations."""

    base_url: str
    bot_token: str | None
    page_limit: int
    timeout_seconds: float


def load_feed_config(settings: Settings) -> FeedConfig:
    """Build feed configuration from settings."""

    return FeedConfig(
        base_url=settings.feed_base_url,
        bot_token=settings.feed_bot_token,
        page_limit=max(1, min(DISCORD_MAX_PAGE, int(settings.feed_page_limit))),
        timeout_seconds=float(settings.feed_http_timeout_seconds),
    )


def _retry_after(response: httpx.Response) -> float | None:
    header = response.headers.get("retry-after")
    if header:
        try:
            return float(header)
        except ValueError:
            pass
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, Mapping) and payload.get("retry_after") is not None:
        try:
            return float(payload["retry_after"])
        except (TypeError, ValueError):
            return None
    return None


def entry_from_message(message: Mapping[str, Any]) -> LogEntry:
    """Convert a feed message payload into a decoded ``LogEntry``."""
    author = message.get("author") or {}
    return LogEntry.create(
        message["id"],
        message.get("content") or "",
        author_id=author.get("id"),
        approx_timestamp=message.get("timestamp"),
    )


class DiscordFeedClient:
    """HTTP client wrapper for a Discord-compatible channel/thread feed."""

    def __init__(
        self,
        config: FeedConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.page_limit = config.page_limit
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                headers = {"User-Agent": "vine-award (https://github.com, 0.1)"}
                if self.config.bot_token:
                    headers["Authorization"] = f"Bot {self.config.bot_token}"
                self._client = httpx.AsyncClient(
                    base_url=self.config.base_url,
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    headers=headers,
                    transport=self._transport,
                )
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json_data: Any | None = None,
    ) -> httpx.Response:
        client = await self._ensure_client()
        try:
            response = await client.request(method, path, params=params, json=json_data)
        except httpx.TimeoutException as exc:
            raise TransientIOError(f"Feed request timed out: {method} {path}") from exc
        except httpx.TransportError as exc:
            raise TransientIOError(f"Feed request failed: {exc}") from exc
        except httpx.HTTPError as exc:
            raise FeedError(f"Feed request failed: {exc}") from exc

        if response.status_code == HTTP_TOO_MANY_REQUESTS:
            raise TransientIOError(
                f"Feed rate limited on {method} {path}", retry_after=_retry_after(response)
            )
        if response.status_code >= HTTP_INTERNAL_SERVER_ERROR:
            raise TransientIOError(f"Feed responded with {response.status_code}")
        if response.status_code in (HTTP_UNAUTHORIZED, HTTP_FORBIDDEN, HTTP_NOT_FOUND):
            raise FeedPermissionError(
                f"Feed denied {method} {path} ({response.status_code})"
            )
        if response.status_code >= 400:
            raise FeedError(f"Feed responded with {response.status_code} for {method} {path}")
        return response

    async def fetch_page(
        self, domain: str, limit: int, before: int | None = None
    ) -> list[LogEntry]:
        """Fetch one newest-first page of messages from ``domain``."""
        params: dict[str, Any] = {"limit": max(1, min(self.page_limit, int(limit)))}
        if before is not None:
            params["before"] = str(before)
        response = await self._request("GET", f"/channels/{domain}/messages", params=params)
        payload = response.json()
        if not isinstance(payload, list):
            raise FeedError("Feed returned an unexpected message page")
        entries = [entry_from_message(item) for item in payload if item.get("id")]
        entries.sort(key=lambda entry: entry.id, reverse=True)
        return entries

    async def append(self, domain: str, text: str) -> int:
        """Post ``text`` to ``domain`` and return the new entry id."""
        response = await self._request(
            "POST", f"/channels/{domain}/messages", json_data={"content": text}
        )
        payload = response.json()
        return int(payload["id"])

    async def join(self, domain: str) -> None:
        """Join the thread so its history becomes readable."""
        await self._request("PUT", f"/channels/{domain}/thread-members/@me")

    async def identity(self) -> str:
        """Return the id of the account this client posts as."""
        response = await self._request("GET", "/users/@me")
        payload = response.json()
        if not isinstance(payload, dict) or not payload.get("id"):
            raise FeedError("Feed returned no identity for the bot account")
        return str(payload["id"])

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""

        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None


class LogWindowReader:
    """Reads bounded newest-first windows from a feed with retries."""

    def __init__(
        self,
        feed: FeedService,
        *,
        max_attempts: int = 4,
        policy: BackoffPolicy | None = None,
    ) -> None:
        self.feed = feed
        self.max_attempts = max_attempts
        self.policy = policy or BackoffPolicy()
        self._joined: set[str] = set()
        self._join_lock = asyncio.Lock()

    async def ensure_access(self, domain: str) -> None:
        """Register read access to ``domain`` once per reader."""
        if domain in self._joined:
            return
        async with self._join_lock:
            if domain in self._joined:
                return
            await retry_async(
                lambda: self.feed.join(domain),
                max_attempts=self.max_attempts,
                policy=self.policy,
                label=f"join {domain}",
            )
            self._joined.add(domain)
            logger.info("Registered read access to domain %s", domain)

    async def fetch_window(self, domain: str, window_size: int) -> list[LogEntry]:
        """Return up to ``window_size`` entries, newest-first."""
        window: list[LogEntry] = []
        before: int | None = None
        page_limit = max(1, int(self.feed.page_limit))

        while len(window) < window_size:
            want = min(page_limit, window_size - len(window))
            cursor = before
            page = await retry_async(
                lambda: self.feed.fetch_page(domain, want, cursor),
                max_attempts=self.max_attempts,
                policy=self.policy,
                label=f"fetch {domain}",
            )
            if not page:
                break
            window.extend(page)
            before = min(entry.id for entry in page)
            if len(page) < want:
                break

        logger.debug("Fetched %d entries from domain %s", len(window), domain)
        return window[:window_size]

    async def append(self, domain: str, text: str) -> int:
        """Append ``text`` to ``domain`` with transient-failure retry."""
        return await retry_async(
            lambda: self.feed.append(domain, text),
            max_attempts=self.max_attempts,
            policy=self.policy,
            label=f"append {domain}",
        )

    async def identity(self) -> str:
        """Return the feed account id markers are posted under."""
        return await retry_async(
            self.feed.identity,
            max_attempts=self.max_attempts,
            policy=self.policy,
            label="identity",
        )
