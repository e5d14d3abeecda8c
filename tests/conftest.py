# tests/conftest.py
from __future__ import annotations

import asyncio
from collections.abc import Iterator
from itertools import count

import base58
import fakeredis.aioredis
import pytest
from nacl.signing import SigningKey

from vine_award.core.errors import LedgerError
from vine_award.core.settings import Settings
from vine_award.services.events import LogEntry
from vine_award.services.feed import LogWindowReader
from vine_award.services.ledger import LedgerOperation
from vine_award.services.lock import LockCoordinator
from vine_award.services.pipeline import AwardContext, AwardRunner
from vine_award.utils.retry import BackoffPolicy

COORDINATOR_ID = "bot-1"
DOMAIN = "thread-42"
DAY = "2024-05-01"
NO_WAIT = BackoffPolicy(base_delay_seconds=0.0, max_delay_seconds=0.0, jitter=0.0)


def make_wallet() -> str:
    """Return a fresh base58 public id."""
    return base58.b58encode(bytes(SigningKey.generate().verify_key)).decode()


def make_secret() -> str:
    """Return a fresh base58-encoded 32-byte signing seed."""
    return base58.b58encode(bytes(SigningKey.generate())).decode()


class InMemoryFeed:
    """Feed fake with real newest-first pagination and monotonically increasing ids."""

    def __init__(self, *, author_id: str = COORDINATOR_ID, page_limit: int = 100) -> None:
        self.author_id = author_id
        self.page_limit = page_limit
        self.entries: list[LogEntry] = []
        self.joined: list[str] = []
        self.fetch_calls = 0
        self._ids = count(1000)

    def add(self, text: str, *, author_id: str | None = None) -> LogEntry:
        entry = LogEntry.create(next(self._ids), text, author_id=author_id or self.author_id)
        self.entries.append(entry)
        return entry

    def texts(self) -> list[str]:
        return [entry.text for entry in self.entries]

    async def fetch_page(
        self, domain: str, limit: int, before: int | None = None
    ) -> list[LogEntry]:
        await asyncio.sleep(0)
        self.fetch_calls += 1
        newest_first = sorted(self.entries, key=lambda entry: entry.id, reverse=True)
        if before is not None:
            newest_first = [entry for entry in newest_first if entry.id < before]
        return newest_first[: min(limit, self.page_limit)]

    async def append(self, domain: str, text: str) -> int:
        await asyncio.sleep(0)
        return self.add(text).id

    async def join(self, domain: str) -> None:
        self.joined.append(domain)

    async def identity(self) -> str:
        return self.author_id


class FakeLedger:
    """Ledger fake recording submissions and peak concurrency."""

    def __init__(self, *, fee: int = 5_000, balance: int = 10**9) -> None:
        self.fee = fee
        self.balance = balance
        self.failing: set[str] = set()
        self.submitted: list[str] = []
        self.active = 0
        self.peak = 0

    async def resolve_current_epoch(self, ledger_id: str) -> int:
        return 7

    async def build_operation(
        self,
        ledger_id: str,
        participant: str,
        amount: int,
        authority_id: str,
        payer_id: str,
        *,
        epoch: int | None = None,
    ) -> LedgerOperation:
        return LedgerOperation(
            ledger_id=ledger_id, participant=participant, payload=participant.encode()
        )

    async def estimate_fee(self, operation: LedgerOperation) -> int:
        return self.fee

    async def get_balance(self, account: str) -> int:
        return self.balance

    async def latest_handle(self) -> str:
        return "handle-1"

    async def submit(self, operation, signers, timeout: float) -> str:
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0)
            if operation.participant in self.failing:
                raise LedgerError("operation rejected")
            self.submitted.append(operation.participant)
            return f"ref-{operation.participant[:8]}"
        finally:
            self.active -= 1


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        coordinator_id=COORDINATOR_ID,
        feed_bot_token="bot-token",
        worker_secret="operator-secret",
        default_authority_secret=make_secret(),
        default_ledger_id="dao-1",
        retry_base_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
        award_concurrency=2,
        award_run_timeout_seconds=30,
        secrets_enc_key="11" * 32,
    )


@pytest.fixture()
def feed() -> InMemoryFeed:
    return InMemoryFeed()


@pytest.fixture()
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture()
def reader(feed: InMemoryFeed) -> LogWindowReader:
    return LogWindowReader(feed, policy=NO_WAIT)


@pytest.fixture()
def lock(reader: LogWindowReader) -> LockCoordinator:
    return LockCoordinator(reader, coordinator_id=COORDINATOR_ID)


@pytest.fixture()
def redis() -> Iterator[fakeredis.aioredis.FakeRedis]:
    yield fakeredis.aioredis.FakeRedis(decode_responses=True)


@pytest.fixture()
def award_context(
    test_settings: Settings,
    reader: LogWindowReader,
    lock: LockCoordinator,
    ledger: FakeLedger,
) -> AwardContext:
    return AwardContext(settings=test_settings, reader=reader, lock=lock, ledger=ledger)


@pytest.fixture()
def runner(award_context: AwardContext) -> AwardRunner:
    return AwardRunner(award_context)


@pytest.fixture()
def open_session(feed: InMemoryFeed) -> list[str]:
    """Start ``DAY`` and check in three wallets; returns them in check-in order."""
    wallets = [make_wallet() for _ in range(3)]
    feed.add(f"START:{DAY}")
    for index, wallet in enumerate(wallets):
        feed.add(f"CHECKIN:user-{index}:{wallet}", author_id=f"user-{index}")
    return wallets
