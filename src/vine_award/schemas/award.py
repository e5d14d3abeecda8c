# src/vine_award/schemas/award.py
"""Schemas for award runs, queue operations and day state."""
from __future__ import annotations

from pydantic import BaseModel, Field

from vine_award.services.pipeline import AwardRunOutcome
from vine_award.services.state import DayState


class EnqueueIn(BaseModel):
    """Request body for queueing an award run."""

    requested_by: str | None = Field(default=None, max_length=64)


class EnqueueOut(BaseModel):
    ok: bool
    reason: str | None = None
    job_id: str | None = None


class DrainOut(BaseModel):
    """Summary of one worker drain pass."""

    ok: bool = True
    processed: int
    failed: int
    skipped: str | None = None
    last: dict[str, str] | None = None


class AwardResultOut(BaseModel):
    participant: str
    ok: bool
    reference: str | None = None
    error: str | None = None


class AwardRunOut(BaseModel):
    """API response payload for a synchronous award run."""

    domain: str
    day: str
    status: str
    ok: bool
    stage: str | None = None
    message: str | None = None
    participants: list[str] = Field(default_factory=list)
    results: list[AwardResultOut] = Field(default_factory=list)
    ok_count: int = 0
    failed_count: int = 0

    @classmethod
    def from_outcome(cls, outcome: AwardRunOutcome) -> AwardRunOut:
        batch = outcome.batch
        return cls(
            domain=outcome.domain,
            day=outcome.day,
            status=outcome.status,
            ok=outcome.ok,
            stage=outcome.stage,
            message=outcome.message,
            participants=outcome.participants,
            results=[
                AwardResultOut(
                    participant=r.participant, ok=r.ok, reference=r.reference, error=r.error
                )
                for r in (batch.results if batch else [])
            ],
            ok_count=len(batch.ok) if batch else 0,
            failed_count=len(batch.bad) if batch else 0,
        )


class DayStateOut(BaseModel):
    """Reconstructed state of one domain/day."""

    day: str
    session_started: bool
    start_id: str | None = None
    roster: dict[str, str] = Field(default_factory=dict)
    awarded: bool
    lock_nonce: str | None = None
    lock_released: bool = False

    @classmethod
    def from_state(cls, state: DayState) -> DayStateOut:
        claim = state.latest_claim
        return cls(
            day=state.day,
            session_started=state.session_started,
            start_id=str(state.start_id) if state.start_id is not None else None,
            roster=state.roster,
            awarded=state.awarded,
            lock_nonce=claim.nonce if claim else None,
            lock_released=state.latest_claim_released,
        )


class OverrideIn(BaseModel):
    participant_id: str = Field(min_length=1, max_length=64)
    value: str = Field(min_length=1, max_length=128)


class MarkerOut(BaseModel):
    entry_id: str


class SignerIn(BaseModel):
    """Signer material for a domain; secrets are encrypted at rest."""

    authority_secret: str = Field(min_length=1)
    payer_secret: str | None = None
    endpoint: str | None = None
    external_ledger_id: str | None = None
    updated_by: str | None = None
