# backend/governor/api/training.py
"""
Training control: run batches, kill switch, budget status.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from governor.auth.dependencies import require_admin
from governor.database import get_db
from governor.runtime import GovernorRuntime, get_runtime
from governor.utils.logger import logger
from governor.utils.rate_limit import expensive_rate_limit, read_rate_limit, write_rate_limit

router = APIRouter(prefix="/api/sandbox", tags=["training"])


class TrainRequest(BaseModel):
    batchSize: Optional[int] = Field(default=None, ge=1)


class KillSwitchRequest(BaseModel):
    action: str
    reason: Optional[str] = None


@router.post("/train")
@expensive_rate_limit()
async def train(
    request: Request,
    payload: TrainRequest,
    operator: str = Depends(require_admin),
    runtime: GovernorRuntime = Depends(get_runtime),
):
    """
    Run one training batch and return its summary.

    BudgetExceeded -> 500, KillSwitchActive -> 503 (see the app exception handlers).
    """
    logger.info(f"[API] Training batch requested by {operator}: batchSize={payload.batchSize}")
    summary = await runtime.scheduler.run_batch(batch_size=payload.batchSize)
    return summary.to_dict()


@router.get("/train/status")
@read_rate_limit()
async def train_status(
    request: Request,
    db: Session = Depends(get_db),
    runtime: GovernorRuntime = Depends(get_runtime),
):
    status = runtime.scheduler.get_status(db)
    status["killSwitch"] = runtime.kill_switch.status(db)
    status["budget"] = runtime.monitor.get_budget_status(db).to_dict()
    return status


@router.get("/kill-switch")
@read_rate_limit()
async def get_kill_switch(
    request: Request,
    db: Session = Depends(get_db),
    runtime: GovernorRuntime = Depends(get_runtime),
):
    return runtime.kill_switch.status(db)


@router.post("/kill-switch")
@write_rate_limit()
async def set_kill_switch(
    request: Request,
    payload: KillSwitchRequest,
    operator: str = Depends(require_admin),
    db: Session = Depends(get_db),
    runtime: GovernorRuntime = Depends(get_runtime),
):
    if payload.action == "activate":
        runtime.kill_switch.activate(db, reason=payload.reason or "Manual activation", activated_by=operator)
    elif payload.action == "deactivate":
        runtime.kill_switch.deactivate(db, deactivated_by=operator)
    else:
        raise HTTPException(status_code=400, detail="action must be 'activate' or 'deactivate'")
    return runtime.kill_switch.status(db)


@router.get("/budget-status")
@read_rate_limit()
async def budget_status(
    request: Request,
    db: Session = Depends(get_db),
    runtime: GovernorRuntime = Depends(get_runtime),
):
    return runtime.monitor.get_budget_summary(db)
