# src/vine_award/main.py
"""Main entry point for the Vine Award application."""

from __future__ import annotations

import logging

from fastapi import FastAPI
from redis import asyncio as redis_asyncio

from vine_award.api.v1 import awards_router, system_router
from vine_award.core.errors import VineAwardError
from vine_award.core.settings import settings
from vine_award.services.pipeline import AwardContext, AwardRunner, build_context
from vine_award.services.queue import AwardQueue
from vine_award.services.worker import AwardQueueWorker

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Vine Award API",
    description="Daily check-in awards coordinated over an append-only feed",
    version=settings.app_version,
)

# Include API routers
app.include_router(awards_router, prefix="/api/v1")
app.include_router(system_router, prefix="/api/v1")


@app.on_event("startup")
async def on_startup() -> None:
    redis = (
        redis_asyncio.from_url(settings.redis_url, decode_responses=True)
        if settings.redis_url
        else None
    )
    context = build_context(settings, redis)
    if settings.coordinator_id is None and settings.feed_bot_token:
        try:
            await context.resolve_coordinator()
        except VineAwardError as exc:
            logger.error("Award runs are disabled until the coordinator is known: %s", exc)
    elif settings.coordinator_id is None:
        logger.warning("VINE_COORDINATOR_ID and DISCORD_BOT_TOKEN are unset; award runs will fail")
    app.state.redis = redis
    app.state.award_context = context
    app.state.award_queue = None
    app.state.award_worker = None

    if redis is None:
        logger.warning("REDIS_URL is not set; award queue and signer store are disabled")
        return

    queue = AwardQueue(
        redis,
        dedupe_ttl_seconds=settings.queue_dedupe_ttl_seconds,
        dedupe_max_age_seconds=settings.queue_dedupe_max_age_seconds,
        done_ttl_seconds=settings.queue_done_ttl_seconds,
    )
    worker = AwardQueueWorker(
        queue,
        AwardRunner(context),
        lock_seconds=settings.worker_lock_seconds,
        poll_interval_seconds=settings.worker_poll_interval_seconds,
        run_timeout_seconds=settings.award_run_timeout_seconds,
    )
    if settings.worker_enabled:
        await worker.start()
    app.state.award_queue = queue
    app.state.award_worker = worker


@app.on_event("shutdown")
async def on_shutdown() -> None:
    worker: AwardQueueWorker | None = getattr(app.state, "award_worker", None)
    if worker:
        await worker.stop()
    context: AwardContext | None = getattr(app.state, "award_context", None)
    if context:
        await context.close()
    redis = getattr(app.state, "redis", None)
    if redis is not None:
        await redis.aclose()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "description": "Daily check-in awards coordinated over an append-only feed",
        "docs": "/docs",
        "redoc": "/redoc",
    }


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
    uvicorn.run("vine_award.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
