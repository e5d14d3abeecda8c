"""Tests for the Redis-backed award queue."""

import json

import pytest

from vine_award.services.queue import (
    QUEUE_KEY,
    WORKER_LOCK_KEY,
    AwardJob,
    AwardQueue,
    dedupe_key,
)

START = 1_714_550_000.0


class Clock:
    def __init__(self, now: float = START) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def clock() -> Clock:
    return Clock()


@pytest.fixture()
def queue(redis, clock: Clock) -> AwardQueue:
    return AwardQueue(redis, clock=clock)


@pytest.mark.asyncio
async def test_enqueue_rejects_duplicates_while_pending(queue: AwardQueue) -> None:
    first = await queue.enqueue("thread-1", "2024-05-01", "mod")
    second = await queue.enqueue("thread-1", "2024-05-01", "mod")

    assert first.ok and first.job is not None
    assert not second.ok and second.reason == "duplicate"
    assert (await queue.enqueue("thread-1", "2024-05-02")).ok


@pytest.mark.asyncio
async def test_expired_dedupe_entry_is_reclaimed(queue: AwardQueue, clock: Clock, redis) -> None:
    await queue.enqueue("thread-1", "2024-05-01")
    clock.now += 15 * 60 + 1

    result = await queue.enqueue("thread-1", "2024-05-01")

    assert result.ok
    assert await redis.llen(QUEUE_KEY) == 2
    marker = json.loads(await redis.get(dedupe_key("thread-1", "2024-05-01")))
    assert marker["id"] == result.job.id


@pytest.mark.asyncio
@pytest.mark.parametrize("legacy", ["1", "not json", json.dumps({"id": "x"}), "[]"])
async def test_legacy_dedupe_payloads_are_reclaimed(
    queue: AwardQueue, redis, legacy: str
) -> None:
    await redis.set(dedupe_key("thread-1", "2024-05-01"), legacy)

    assert (await queue.enqueue("thread-1", "2024-05-01")).ok


@pytest.mark.asyncio
async def test_pop_is_fifo_and_skips_garbage(queue: AwardQueue, redis) -> None:
    first = await queue.enqueue("thread-1", "2024-05-01")
    await redis.rpush(QUEUE_KEY, "{broken")
    second = await queue.enqueue("thread-2", "2024-05-01")

    assert (await queue.pop()) == first.job
    assert (await queue.pop()) == second.job
    assert await queue.pop() is None


def test_job_from_raw_accepts_legacy_field_names() -> None:
    job = AwardJob.from_raw(
        json.dumps({"id": "j1", "threadId": "t1", "day": "2024-05-01", "requestedBy": "mod"})
    )
    assert job is not None
    assert (job.domain, job.day, job.requested_by) == ("t1", "2024-05-01", "mod")
    assert AwardJob.from_raw(json.dumps({"day": "2024-05-01"})) is None


@pytest.mark.asyncio
async def test_enqueue_requires_domain_and_day(queue: AwardQueue) -> None:
    with pytest.raises(ValueError):
        await queue.enqueue("", "2024-05-01")


@pytest.mark.asyncio
async def test_completion_memo(queue: AwardQueue) -> None:
    assert not await queue.is_done("thread-1", "2024-05-01")
    await queue.mark_done("thread-1", "2024-05-01")
    assert await queue.is_done("thread-1", "2024-05-01")


@pytest.mark.asyncio
async def test_worker_lock_is_single_flight_and_token_checked(queue: AwardQueue, redis) -> None:
    held = await queue.acquire_worker_lock(60)
    contender = await queue.acquire_worker_lock(60)

    assert held.ok and not contender.ok
    assert not await queue.release_worker_lock(contender.token)
    assert await redis.get(WORKER_LOCK_KEY) == held.token
    assert await queue.release_worker_lock(held.token)
    assert (await queue.acquire_worker_lock(60)).ok
