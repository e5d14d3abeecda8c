# src/vine_award/api/v1/endpoints/awards.py
"""Award coordination endpoints for the Vine Award API."""

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, status

from vine_award.core.errors import (
    AwardStageError,
    CredentialError,
    FeedPermissionError,
    TransientIOError,
    VineAwardError,
)
from vine_award.schemas.award import (
    AwardRunOut,
    DayStateOut,
    DrainOut,
    EnqueueIn,
    EnqueueOut,
    MarkerOut,
    OverrideIn,
    SignerIn,
)
from vine_award.services.signers import Credential, DomainConfig

from ..dependencies import ContextDep, OperatorDep, QueueDep, RunnerDep, WorkerDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["awards"], dependencies=[OperatorDep])


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, AwardStageError):
        cause = exc.__cause__
        code = (
            status.HTTP_403_FORBIDDEN
            if isinstance(cause, FeedPermissionError)
            else status.HTTP_502_BAD_GATEWAY
        )
        return HTTPException(status_code=code, detail={"stage": exc.stage, "error": exc.message})
    if isinstance(exc, FeedPermissionError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, TransientIOError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if isinstance(exc, (CredentialError, ValueError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


@router.get("/awards/{domain}/{day}", response_model=DayStateOut)
async def get_day_state(domain: str, day: str, runner: RunnerDep) -> DayStateOut:
    """Return the session, roster and award status reconstructed from the feed."""
    try:
        state = await runner.describe(domain, day)
    except VineAwardError as exc:
        raise _http_error(exc) from exc
    return DayStateOut.from_state(state)


@router.post("/awards/{domain}/{day}/start", response_model=MarkerOut)
async def start_session(domain: str, day: str, runner: RunnerDep) -> MarkerOut:
    """Open (or restart) the day's session."""
    try:
        entry_id = await runner.start_session(domain, day)
    except (VineAwardError, ValueError) as exc:
        raise _http_error(exc) from exc
    return MarkerOut(entry_id=str(entry_id))


@router.post("/awards/{domain}/{day}/override", response_model=MarkerOut)
async def post_override(
    domain: str, day: str, payload: OverrideIn, runner: RunnerDep
) -> MarkerOut:
    """Set a participant's roster value, replacing any check-in."""
    try:
        entry_id = await runner.post_override(domain, day, payload.participant_id, payload.value)
    except (VineAwardError, ValueError) as exc:
        raise _http_error(exc) from exc
    return MarkerOut(entry_id=str(entry_id))


@router.post("/awards/{domain}/{day}/run", response_model=AwardRunOut)
async def run_award(domain: str, day: str, runner: RunnerDep) -> AwardRunOut:
    """Run the award cycle synchronously."""
    try:
        outcome = await runner.run(domain, day)
    except VineAwardError as exc:
        logger.error("Award run %s/%s failed: %s", domain, day, exc)
        raise _http_error(exc) from exc
    return AwardRunOut.from_outcome(outcome)


@router.post("/awards/{domain}/{day}/enqueue", response_model=EnqueueOut)
async def enqueue_award(
    domain: str, day: str, queue: QueueDep, payload: EnqueueIn | None = None
) -> EnqueueOut:
    """Queue the award cycle for the background worker."""
    try:
        result = await queue.enqueue(domain, day, payload.requested_by if payload else None)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return EnqueueOut(
        ok=result.ok, reason=result.reason, job_id=result.job.id if result.job else None
    )


@router.post("/worker/drain", response_model=DrainOut)
async def drain_queue(
    worker: WorkerDep, max_jobs: int = Query(default=1, ge=1, le=3, alias="max")
) -> DrainOut:
    """Process queued award jobs; intended for cron triggers."""
    report = await worker.drain(max_jobs)
    return DrainOut(
        processed=report.processed,
        failed=report.failed,
        skipped=report.skipped,
        last=report.last,
    )


@router.put("/domains/{domain}/signer")
async def set_signer(domain: str, payload: SignerIn, context: ContextDep) -> dict[str, Any]:
    """Store the domain's signer (encrypted) and optional ledger id."""
    store = context.secret_store
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Secret store is unavailable."
        )
    try:
        meta = await store.set_credential(
            domain,
            Credential(
                authority_secret=payload.authority_secret,
                payer_secret=payload.payer_secret,
                endpoint=payload.endpoint,
            ),
            updated_by=payload.updated_by,
        )
        if payload.external_ledger_id:
            await store.set_domain_config(
                domain, DomainConfig(external_ledger_id=payload.external_ledger_id)
            )
    except CredentialError as exc:
        raise _http_error(exc) from exc
    return {"ok": True, "signer": meta}


@router.delete("/domains/{domain}/signer")
async def clear_signer(domain: str, context: ContextDep) -> dict[str, bool]:
    store = context.secret_store
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Secret store is unavailable."
        )
    return {"ok": await store.clear_credential(domain)}
