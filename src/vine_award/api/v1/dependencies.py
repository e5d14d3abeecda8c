"""Shared API dependencies for authentication and service access."""

import secrets
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from vine_award.services.pipeline import AwardContext, AwardRunner
from vine_award.services.queue import AwardQueue
from vine_award.services.worker import AwardQueueWorker

# HTTP Bearer scheme for operator/cron authentication
bearer_scheme = HTTPBearer(auto_error=False)


def get_context(request: Request) -> AwardContext:
    """Return the award context built at startup."""
    return request.app.state.award_context


def get_runner(request: Request) -> AwardRunner:
    return AwardRunner(get_context(request))


def get_queue(request: Request) -> AwardQueue:
    queue = getattr(request.app.state, "award_queue", None)
    if queue is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Award queue is unavailable.",
        )
    return queue


def get_worker(request: Request) -> AwardQueueWorker:
    worker = getattr(request.app.state, "award_worker", None)
    if worker is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Award worker is unavailable.",
        )
    return worker


def require_operator(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> None:
    """Reject callers that do not present the worker/operator bearer secret.

    Raises:
        HTTPException: 401 when the secret is missing or does not match
    """
    expected = get_context(request).settings.effective_worker_secret
    if not expected or credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    if not secrets.compare_digest(credentials.credentials, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


ContextDep = Annotated[AwardContext, Depends(get_context)]
RunnerDep = Annotated[AwardRunner, Depends(get_runner)]
QueueDep = Annotated[AwardQueue, Depends(get_queue)]
WorkerDep = Annotated[AwardQueueWorker, Depends(get_worker)]
OperatorDep = Depends(require_operator)
