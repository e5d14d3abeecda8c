"""Bounded-concurrency award execution.

One ledger operation is issued per participant. Operations are independent:
a failure is recorded against that participant and never stops its
siblings. Before anything is submitted, a preflight check makes sure the
payer can fund the whole batch.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from vine_award.core.errors import InsufficientFunds, VineAwardError
from vine_award.services.ledger import LedgerService
from vine_award.services.signers import ResolvedSigners

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionContext:
    """Everything one batch needs besides the participant list."""

    signers: ResolvedSigners
    amount: int = 1
    concurrency: int = 4
    op_timeout_seconds: float = 45.0
    op_delay_seconds: float = 0.0
    safety_margin: int = 5_000


@dataclass(frozen=True)
class AwardResult:
    """Outcome for one participant."""

    participant: str
    ok: bool
    reference: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class Preflight:
    epoch: int
    fee_per_op: int
    balance: int
    required: int


@dataclass
class AwardBatchResult:
    """Per-participant results in input order."""

    results: list[AwardResult]
    epoch: int | None = None
    fee_per_op: int | None = None
    ok: list[AwardResult] = field(init=False)
    bad: list[AwardResult] = field(init=False)

    def __post_init__(self) -> None:
        self.ok = [result for result in self.results if result.ok]
        self.bad = [result for result in self.results if not result.ok]

    @property
    def succeeded(self) -> bool:
        return len(self.ok) >= 1


def dedupe_participants(values: Sequence[str]) -> list[str]:
    """Drop blanks and repeats while keeping first-seen order."""
    return list(dict.fromkeys(value.strip() for value in values if value and value.strip()))


class AwardExecutor:
    """Issues one ledger operation per participant with a bounded worker pool."""

    def __init__(self, ledger: LedgerService) -> None:
        self.ledger = ledger

    async def preflight(self, participants: Sequence[str], context: ExecutionContext) -> Preflight:
        """Estimate the batch cost and abort if the payer cannot cover it."""
        signers = context.signers
        epoch = await self.ledger.resolve_current_epoch(signers.ledger_id)
        sample = await self.ledger.build_operation(
            signers.ledger_id,
            participants[0],
            context.amount,
            signers.authority.public_id,
            signers.payer.public_id,
            epoch=epoch,
        )
        fee = await self.ledger.estimate_fee(sample)
        balance = await self.ledger.get_balance(signers.payer.public_id)
        required = fee * len(participants) + context.safety_margin
        if balance < required:
            raise InsufficientFunds(balance=balance, required=required, count=len(participants))
        return Preflight(epoch=epoch, fee_per_op=fee, balance=balance, required=required)

    async def _award_one(
        self, participant: str, epoch: int, context: ExecutionContext
    ) -> AwardResult:
        signers = context.signers
        try:
            operation = await self.ledger.build_operation(
                signers.ledger_id,
                participant,
                context.amount,
                signers.authority.public_id,
                signers.payer.public_id,
                epoch=epoch,
            )
            operation = operation.with_handle(await self.ledger.latest_handle())
            reference = await asyncio.wait_for(
                self.ledger.submit(operation, signers.signers, context.op_timeout_seconds),
                timeout=context.op_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Award for %s timed out after %.1fs", participant, context.op_timeout_seconds
            )
            return AwardResult(participant=participant, ok=False, error="timeout")
        except VineAwardError as exc:
            logger.warning("Award for %s failed: %s", participant, exc)
            error = str(exc) or type(exc).__name__
            return AwardResult(participant=participant, ok=False, error=error)
        except Exception as exc:
            logger.error("Award for %s failed unexpectedly: %s", participant, exc, exc_info=True)
            error = str(exc) or type(exc).__name__
            return AwardResult(participant=participant, ok=False, error=error)
        return AwardResult(participant=participant, ok=True, reference=reference)

    async def execute(
        self,
        participants: Sequence[str],
        context: ExecutionContext,
        *,
        preflight: Preflight | None = None,
    ) -> AwardBatchResult:
        """Run the batch; raises ``InsufficientFunds`` before any submit.

        A ``preflight`` computed earlier for the same participants skips the
        second estimate.
        """
        values = dedupe_participants(participants)
        if not values:
            return AwardBatchResult(results=[])

        check = preflight if preflight is not None else await self.preflight(values, context)
        logger.info(
            "Awarding %d participant(s) on %s (epoch %d, fee %d, balance %d)",
            len(values),
            context.signers.ledger_id,
            check.epoch,
            check.fee_per_op,
            check.balance,
        )

        results: list[AwardResult | None] = [None] * len(values)
        cursor = 0
        cursor_lock = asyncio.Lock()

        async def next_index() -> int | None:
            nonlocal cursor
            async with cursor_lock:
                if cursor >= len(values):
                    return None
                index = cursor
                cursor += 1
                return index

        async def worker() -> None:
            while True:
                index = await next_index()
                if index is None:
                    return
                results[index] = await self._award_one(values[index], check.epoch, context)
                if context.op_delay_seconds > 0:
                    await asyncio.sleep(context.op_delay_seconds)

        pool = max(1, min(int(context.concurrency), len(values)))
        await asyncio.gather(*(worker() for _ in range(pool)))

        batch = AwardBatchResult(
            results=[
                result
                if result is not None
                else AwardResult(participant=values[i], ok=False, error="not attempted")
                for i, result in enumerate(results)
            ],
            epoch=check.epoch,
            fee_per_op=check.fee_per_op,
        )
        logger.info("Award batch finished: %d ok, %d failed", len(batch.ok), len(batch.bad))
        return batch
