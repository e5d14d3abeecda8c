"""System and transparency endpoints for the Vine Award API."""

from fastapi import APIRouter

from ..dependencies import ContextDep

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/config")
async def get_public_config(context: ContextDep) -> dict[str, object]:
    """Return a sanitized snapshot of runtime configuration.

    Excludes secrets, tokens and connection strings.
    """
    settings = context.settings
    return {
        "app": {"name": settings.app_name, "version": settings.app_version},
        "feed": {
            "page_limit": settings.feed_page_limit,
            "window_size": settings.window_size,
            "coordinator_configured": settings.coordinator_id is not None,
        },
        "lock": {"max_age_seconds": settings.lock_max_age_seconds},
        "award": {
            "amount": settings.award_amount,
            "concurrency": settings.award_concurrency,
            "op_timeout_seconds": settings.award_op_timeout_seconds,
            "run_timeout_seconds": settings.award_run_timeout_seconds,
            "fee_safety_margin": settings.award_fee_safety_margin,
        },
        "queue": {
            "dedupe_ttl_seconds": settings.queue_dedupe_ttl_seconds,
            "worker_enabled": settings.worker_enabled,
        },
    }
