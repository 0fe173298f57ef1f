"""
Orchestrator Router — trigger runs and read the run ledger.
"""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adsengine.database import get_db, get_session_factory
from adsengine.errors import AlreadyRunning, UserNotFound
from adsengine.models import OrchestratorAction, OrchestratorRun
from adsengine.services.orchestrator import AdsOrchestrator
from adsengine.utils import parse_uuid, safe_error_detail

router = APIRouter(prefix="/orchestrator", tags=["Orchestrator"])


class RunRequest(BaseModel):
    user_id: str
    dry_run: bool = False


def get_orchestrator(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> AdsOrchestrator:
    return AdsOrchestrator(session_factory)


def _run_to_dict(run: OrchestratorRun) -> dict:
    return {
        "id": str(run.id),
        "user_id": str(run.user_id),
        "run_type": run.run_type,
        "status": run.status,
        "ads_mode": run.ads_mode,
        "summary": {
            "campaignsCreated": run.campaigns_created or 0,
            "winnersPromoted": run.winners_promoted or 0,
            "budgetsScaled": run.budgets_scaled or 0,
            "adsetsPaused": run.adsets_paused or 0,
            "errorsCount": run.errors_count or 0,
        },
        "error_message": run.error_message,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
    }


@router.post("/run")
async def run_orchestrator(
    payload: RunRequest,
    orchestrator: AdsOrchestrator = Depends(get_orchestrator),
):
    """
    Run orchestration for one user now.
    dry_run=true simulates every decision without touching the ad platform.
    """
    user_id = parse_uuid(payload.user_id, "user_id")
    try:
        result = await orchestrator.run(user_id, dry_run=payload.dry_run)
    except UserNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AlreadyRunning as e:
        raise HTTPException(
            status_code=409,
            detail={
                "error": "already_running",
                "message": str(e),
                "run_id": str(e.run_id) if e.run_id else None,
            },
        )
    except Exception as e:
        raise HTTPException(status_code=500, detail=safe_error_detail(e))
    return result.to_response()


@router.get("/runs")
async def list_runs(
    user_id: str = Query(...),
    status: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """Most recent runs for a user, newest first."""
    query = select(OrchestratorRun).where(OrchestratorRun.user_id == parse_uuid(user_id, "user_id"))
    if status:
        query = query.where(OrchestratorRun.status == status)
    query = query.order_by(OrchestratorRun.started_at.desc()).limit(limit)
    result = await db.execute(query)
    return [_run_to_dict(r) for r in result.scalars().all()]


@router.get("/runs/{run_id}/actions")
async def list_run_actions(run_id: str, db: AsyncSession = Depends(get_db)):
    """One run with its actions in sequence order."""
    run = await db.get(OrchestratorRun, parse_uuid(run_id, "run_id"))
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")

    result = await db.execute(
        select(OrchestratorAction)
        .where(OrchestratorAction.run_id == run.id)
        .order_by(OrchestratorAction.seq.asc())
    )
    return {
        "run": _run_to_dict(run),
        "actions": [
            {
                "seq": a.seq,
                "type": a.action_type,
                "goal_key": a.goal_key,
                "status": a.status,
                "message": a.message,
                "details": a.details or {},
                "created_at": a.created_at.isoformat() if a.created_at else None,
            }
            for a in result.scalars().all()
        ],
    }
