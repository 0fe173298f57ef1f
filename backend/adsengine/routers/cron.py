"""
Cron / Scheduled Jobs — entry point for the external scheduler.

The scheduler (Upstash QStash, Railway cron, ...) calls
    POST /api/cron/orchestrate
with either header
    X-Cron-Secret: <CRON_SECRET>
or
    Authorization: Bearer <CRON_SECRET>

Each eligible user gets one `scheduled` run; users whose previous run is
still in progress are reported as already_running and left alone.
"""

import logging
import secrets
from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import async_sessionmaker

from adsengine.config import get_settings
from adsengine.database import get_session_factory
from adsengine.services.orchestrator import AdsOrchestrator
from adsengine.utils import safe_error_detail

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


async def _require_cron_secret(
    x_cron_secret: str | None = Header(None, alias="X-Cron-Secret"),
    authorization: str | None = Header(None),
) -> None:
    """Verify the request came from the scheduler."""
    secret = get_settings().cron_secret
    if not secret:
        raise HTTPException(500, "CRON_SECRET not configured")
    token = x_cron_secret
    if not token and authorization and authorization.startswith("Bearer "):
        token = authorization[7:]
    if not token or not secrets.compare_digest(token, secret):
        raise HTTPException(401, "Invalid cron secret")


@router.post("/orchestrate")
async def cron_orchestrate(
    _: None = Depends(_require_cron_secret),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Scheduled orchestration for every user with ads enabled and an active goal."""
    try:
        result = await AdsOrchestrator(session_factory).run_scheduled_batch()
    except Exception as e:
        raise HTTPException(500, safe_error_detail(e))

    statuses = [r["status"] for r in result["results"]]
    logger.info(
        f"Cron orchestrate: {result['users']} user(s), "
        f"{statuses.count('completed')} completed, "
        f"{statuses.count('completed_with_errors')} with errors, "
        f"{statuses.count('failed') + statuses.count('error')} failed, "
        f"{statuses.count('already_running')} skipped (already running)"
    )
    return {"status": "ok", **result}
