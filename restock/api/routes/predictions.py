"""Prediction engine trigger and run history."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from restock.api.deps import get_database, get_runner, require_cron_secret
from restock.config import settings
from restock.db.models import PredictionRun
from restock.worker.runner import PredictionRunError, PredictionRunner

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/predictions",
    tags=["predictions"],
    dependencies=[Depends(require_cron_secret)],
)


class RunStatsResponse(BaseModel):
    processed: int
    auto_added: int
    suggested: int
    ema_updated: int
    errors: int


class RunResponse(BaseModel):
    ok: bool
    run_id: str
    skipped: bool
    stats: RunStatsResponse


class PredictionRunResponse(BaseModel):
    id: int
    run_id: str
    trigger: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime]
    rules_processed: int
    auto_added: int
    suggested: int
    ema_updated: int
    errors: int
    error_message: Optional[str]
    duration_seconds: Optional[float]

    class Config:
        from_attributes = True


@router.post("/run", response_model=RunResponse)
async def trigger_run(runner: PredictionRunner = Depends(get_runner)):
    """Run the EMA updater and rule evaluator once."""
    try:
        summary = await runner.run(trigger="http")
    except PredictionRunError as e:
        raise HTTPException(
            status_code=500,
            detail={"error": str(e), "run_id": e.run_id, "stats": e.stats.to_dict()},
        )
    return summary.to_dict()


@router.get("/runs", response_model=List[PredictionRunResponse])
async def list_runs(
    status: Optional[str] = None,
    limit: Optional[int] = None,
    db: AsyncSession = Depends(get_database),
):
    """List recent prediction runs, newest first."""
    limit = min(limit or settings.run_history_limit, settings.run_history_limit)
    query = select(PredictionRun)
    if status:
        query = query.where(PredictionRun.status == status)
    query = query.order_by(PredictionRun.started_at.desc(), PredictionRun.id.desc()).limit(limit)

    result = await db.execute(query)
    return result.scalars().all()
