"""Award run orchestration.

``AwardRunner`` reads the day's window, reconstructs the roster, takes the
day lock, runs the executor, appends the completion marker and releases the
lock. Every failure is reported with the stage that was running so an
operator can see where a run died; markers already appended stay valid and a
retry picks up from the feed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from redis.asyncio import Redis

from vine_award.core.errors import (
    AwardStageError,
    CoordinatorIdentityError,
    InsufficientFunds,
)
from vine_award.core.settings import Settings
from vine_award.services.award import (
    AwardBatchResult,
    AwardExecutor,
    ExecutionContext,
    dedupe_participants,
)
from vine_award.services.events import (
    Awarded,
    Overridden,
    SessionStarted,
    encode_event,
    is_valid_day,
)
from vine_award.services.feed import DiscordFeedClient, LogWindowReader, load_feed_config
from vine_award.services.ledger import HttpLedgerClient, LedgerService, load_ledger_config
from vine_award.services.lock import DEFAULT_MAX_AGE_MS, Lock, LockCoordinator, LockStatus
from vine_award.services.signers import Credential, SecretStore, is_public_id, resolve_signers
from vine_award.services.state import DayState, reconstruct
from vine_award.utils.retry import BackoffPolicy

logger = logging.getLogger(__name__)


@dataclass
class AwardContext:
    """Explicitly constructed collaborators shared by one process."""

    settings: Settings
    reader: LogWindowReader
    lock: Lock
    ledger: LedgerService
    secret_store: SecretStore | None = None
    ledger_factory: Callable[[str], LedgerService] | None = None
    coordinator_id: str | None = None

    def __post_init__(self) -> None:
        if self.coordinator_id is None:
            self.coordinator_id = self.settings.coordinator_id
        if isinstance(self.lock, LockCoordinator) and self.lock.coordinator_id is None:
            self.lock.coordinator_id = self.coordinator_id

    async def resolve_coordinator(self) -> str:
        """Return the identity markers are trusted from.

        When none is configured, the feed account this process posts as is
        looked up once and shared with the lock. Without an identity no
        marker could be told apart from a participant's, so callers refuse
        to proceed.
        """
        if self.coordinator_id:
            return self.coordinator_id
        try:
            identity = await self.reader.identity()
        except Exception as exc:
            raise CoordinatorIdentityError(
                f"Coordinator identity is not configured and could not be resolved: {exc}"
            ) from exc
        if not identity:
            raise CoordinatorIdentityError("Feed returned an empty coordinator identity")
        self.coordinator_id = identity
        if isinstance(self.lock, LockCoordinator) and self.lock.coordinator_id is None:
            self.lock.coordinator_id = identity
        logger.info("Resolved coordinator identity %s from the feed", identity)
        return identity

    def ledger_for(self, endpoint: str | None) -> tuple[LedgerService, bool]:
        """Return the ledger to use and whether the caller must close it."""
        if not endpoint or endpoint == self.settings.ledger_base_url:
            return self.ledger, False
        if self.ledger_factory is not None:
            return self.ledger_factory(endpoint), True
        return HttpLedgerClient(load_ledger_config(self.settings, endpoint)), True

    async def close(self) -> None:
        """Close the HTTP clients owned by this context."""
        for resource in (self.reader.feed, self.ledger):
            close = getattr(resource, "close", None)
            if close is not None:
                await close()


@dataclass
class AwardRunOutcome:
    """Result of one award run."""

    domain: str
    day: str
    status: str
    stage: str | None = None
    message: str | None = None
    participants: list[str] = field(default_factory=list)
    batch: AwardBatchResult | None = None
    lock_nonce: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in ("completed", "partial", "already_awarded")


@dataclass
class _Progress:
    stage: str = "access"


class AwardRunner:
    """Runs the read → lock → award → mark → release cycle for one day."""

    def __init__(self, context: AwardContext) -> None:
        self.context = context
        self.settings = context.settings

    def _value_validator(self) -> Callable[[str], bool] | None:
        return is_public_id if self.settings.validate_wallets else None

    async def describe(self, domain: str, day: str) -> DayState:
        """Return the reconstructed state of ``(domain, day)``."""
        coordinator = await self.context.resolve_coordinator()
        await self.context.reader.ensure_access(domain)
        entries = await self.context.reader.fetch_window(domain, self.settings.window_size)
        return reconstruct(entries, day, coordinator, self._value_validator())

    async def start_session(self, domain: str, day: str) -> int:
        """Append the day's start marker; a restart supersedes earlier ones."""
        if not is_valid_day(day):
            raise ValueError(f"Invalid day: {day}")
        await self.context.resolve_coordinator()
        await self.context.reader.ensure_access(domain)
        entry_id = await self.context.reader.append(domain, encode_event(SessionStarted(day=day)))
        logger.info("Started session %s/%s at entry %d", domain, day, entry_id)
        return entry_id

    async def post_override(self, domain: str, day: str, participant_id: str, value: str) -> int:
        """Append a moderator override for one participant."""
        if not is_valid_day(day):
            raise ValueError(f"Invalid day: {day}")
        if not participant_id or ":" in participant_id or any(c.isspace() for c in participant_id):
            raise ValueError("Invalid participant id")
        validator = self._value_validator()
        if validator is not None and not validator(value):
            raise ValueError("Invalid participant value")
        event = Overridden(day=day, participant_id=participant_id, value=value)
        await self.context.resolve_coordinator()
        await self.context.reader.ensure_access(domain)
        return await self.context.reader.append(domain, encode_event(event))

    async def run(
        self, domain: str, day: str, credential_override: Credential | None = None
    ) -> AwardRunOutcome:
        """Run one award cycle under the overall wall-clock ceiling.

        Raises:
            AwardStageError: when a stage fails or the ceiling is exceeded.
        """
        progress = _Progress()
        try:
            return await asyncio.wait_for(
                self._run(domain, day, credential_override, progress),
                timeout=self.settings.award_run_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.error("Award run %s/%s timed out during %s", domain, day, progress.stage)
            raise AwardStageError(
                progress.stage,
                f"award run exceeded {self.settings.award_run_timeout_seconds:.0f}s",
            ) from exc

    async def _run(
        self,
        domain: str,
        day: str,
        credential_override: Credential | None,
        progress: _Progress,
    ) -> AwardRunOutcome:
        context = self.context
        if not is_valid_day(day):
            raise AwardStageError("access", f"Invalid day: {day}")

        try:
            progress.stage = "access"
            coordinator = await context.resolve_coordinator()
            await context.reader.ensure_access(domain)

            progress.stage = "read"
            entries = await context.reader.fetch_window(domain, self.settings.window_size)

            progress.stage = "reconstruct"
            state = reconstruct(
                entries, day, coordinator, self._value_validator()
            )
            if state.awarded:
                return AwardRunOutcome(domain, day, "already_awarded", stage="reconstruct")
            if not state.session_started:
                return AwardRunOutcome(domain, day, "no_session", stage="reconstruct")
            participants = state.participants
            if not participants:
                return AwardRunOutcome(domain, day, "empty_roster", stage="reconstruct")

            progress.stage = "credentials"
            signers = await resolve_signers(
                domain,
                settings=self.settings,
                store=context.secret_store,
                override=credential_override,
            )

            progress.stage = "lock"
            attempt = await context.lock.acquire(domain, day)
        except AwardStageError:
            raise
        except Exception as exc:
            raise AwardStageError(progress.stage, str(exc) or type(exc).__name__) from exc

        if attempt.status is not LockStatus.LOCKED or attempt.lock is None:
            return AwardRunOutcome(
                domain,
                day,
                attempt.status.value,
                stage="lock",
                participants=participants,
                lock_nonce=attempt.holder_nonce,
            )

        nonce = attempt.lock.nonce
        ledger, owned = context.ledger_for(signers.endpoint)
        executor = AwardExecutor(ledger)
        execution = ExecutionContext(
            signers=signers,
            amount=self.settings.award_amount,
            concurrency=self.settings.award_concurrency,
            op_timeout_seconds=self.settings.award_op_timeout_seconds,
            op_delay_seconds=self.settings.award_op_delay_seconds,
            safety_margin=self.settings.award_fee_safety_margin,
        )
        try:
            try:
                progress.stage = "preflight"
                check = await executor.preflight(dedupe_participants(participants), execution)

                progress.stage = "execute"
                batch = await executor.execute(participants, execution, preflight=check)
            except InsufficientFunds as exc:
                logger.warning("Award run %s/%s aborted: %s", domain, day, exc)
                return AwardRunOutcome(
                    domain,
                    day,
                    "insufficient_funds",
                    stage="preflight",
                    message=str(exc),
                    participants=participants,
                    lock_nonce=nonce,
                )
            except Exception as exc:
                raise AwardStageError(progress.stage, str(exc) or type(exc).__name__) from exc

            if not batch.succeeded:
                return AwardRunOutcome(
                    domain,
                    day,
                    "failed",
                    stage="execute",
                    message="no ledger operation succeeded",
                    participants=participants,
                    batch=batch,
                    lock_nonce=nonce,
                )

            progress.stage = "complete"
            try:
                await context.reader.append(domain, encode_event(Awarded(day=day)))
            except Exception as exc:
                raise AwardStageError("complete", str(exc) or type(exc).__name__) from exc

            status = "completed" if not batch.bad else "partial"
            logger.info(
                "Award run %s/%s %s: %d ok, %d failed",
                domain,
                day,
                status,
                len(batch.ok),
                len(batch.bad),
            )
            return AwardRunOutcome(
                domain,
                day,
                status,
                stage="complete",
                participants=participants,
                batch=batch,
                lock_nonce=nonce,
            )
        finally:
            await context.lock.release(domain, day, nonce)
            if owned:
                close = getattr(ledger, "close", None)
                if close is not None:
                    await close()


def build_context(settings: Settings, redis: Redis | None = None) -> AwardContext:
    """Wire the default HTTP feed, feed-backed lock and ledger gateway."""
    policy = BackoffPolicy(
        base_delay_seconds=settings.retry_base_delay_seconds,
        max_delay_seconds=settings.retry_max_delay_seconds,
    )
    reader = LogWindowReader(
        DiscordFeedClient(load_feed_config(settings)),
        max_attempts=settings.retry_attempts,
        policy=policy,
    )
    lock = LockCoordinator(
        reader,
        window_size=settings.window_size,
        max_age_ms=max(DEFAULT_MAX_AGE_MS, settings.lock_max_age_ms),
        coordinator_id=settings.coordinator_id,
    )
    return AwardContext(
        settings=settings,
        reader=reader,
        lock=lock,
        ledger=HttpLedgerClient(load_ledger_config(settings)),
        secret_store=(
            SecretStore(redis, enc_key=settings.secrets_enc_key) if redis is not None else None
        ),
    )
