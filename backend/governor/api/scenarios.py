# backend/governor/api/scenarios.py
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from governor.auth.dependencies import require_admin
from governor.database import get_db
from governor.errors import GovernorError
from governor.models.scenario import SCENARIO_STATUSES, Scenario
from governor.agents.scenario_injector import TERMINAL_STATUSES, ScenarioInjector, scenario_to_dict
from governor.runtime import GovernorRuntime, get_runtime
from governor.utils.logger import logger
from governor.utils.rate_limit import expensive_rate_limit, read_rate_limit

router = APIRouter(prefix="/api/sandbox/scenarios", tags=["scenarios"])


class InjectRequest(BaseModel):
    rawObjection: str = Field(min_length=1)
    basePersonaId: Optional[int] = None


async def _brute_force_in_background(injector: ScenarioInjector, scenario_id: int) -> None:
    try:
        result = await injector.brute_force(scenario_id)
        logger.info(f"[ScenarioInjector] Scenario {scenario_id} finished: {result['status']}")
    except GovernorError as e:
        logger.warning(f"[ScenarioInjector] Scenario {scenario_id} stopped: {type(e).__name__}: {e}")
    except Exception as e:
        logger.exception(f"[ScenarioInjector] Scenario {scenario_id} crashed: {e}")


@router.post("/inject", status_code=202)
@expensive_rate_limit()
async def inject_scenario(
    request: Request,
    payload: InjectRequest,
    background_tasks: BackgroundTasks,
    operator: str = Depends(require_admin),
    runtime: GovernorRuntime = Depends(get_runtime),
):
    """Synthesize the counterpart now; brute-force it in the background."""
    try:
        scenario_id = await runtime.injector.create_scenario(payload.rawObjection, payload.basePersonaId)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))

    background_tasks.add_task(_brute_force_in_background, runtime.injector, scenario_id)
    logger.info(f"[API] Scenario {scenario_id} injected by {operator}")
    return {"scenarioId": scenario_id, "status": "pending"}


@router.post("/{scenario_id}/run", status_code=202)
@expensive_rate_limit()
async def run_scenario(
    request: Request,
    scenario_id: int,
    background_tasks: BackgroundTasks,
    operator: str = Depends(require_admin),
    db: Session = Depends(get_db),
    runtime: GovernorRuntime = Depends(get_runtime),
):
    """Resume a pending or interrupted scenario; attempts already made are kept."""
    try:
        scenario = runtime.injector.get_scenario(db, scenario_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Scenario not found")
    if scenario["status"] in TERMINAL_STATUSES:
        raise HTTPException(status_code=409, detail=f"Scenario already {scenario['status']}")

    runtime.scheduler.preflight(db)
    background_tasks.add_task(_brute_force_in_background, runtime.injector, scenario_id)
    logger.info(f"[API] Scenario {scenario_id} resumed by {operator} at attempt {scenario['attempts']}")
    return {"scenarioId": scenario_id, "status": scenario["status"], "attempts": scenario["attempts"]}


@router.get("")
@read_rate_limit()
async def list_scenarios(
    request: Request,
    status: Optional[str] = None,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    if status is not None and status not in SCENARIO_STATUSES:
        raise HTTPException(status_code=400, detail=f"status must be one of {SCENARIO_STATUSES}")
    q = db.query(Scenario)
    if status:
        q = q.filter(Scenario.status == status)
    rows = q.order_by(Scenario.created_at.desc(), Scenario.id.desc()).limit(min(max(limit, 1), 200)).all()
    return {"scenarios": [scenario_to_dict(s) for s in rows]}


@router.get("/{scenario_id}")
@read_rate_limit()
async def get_scenario(
    request: Request,
    scenario_id: int,
    db: Session = Depends(get_db),
    runtime: GovernorRuntime = Depends(get_runtime),
):
    try:
        return runtime.injector.get_scenario(db, scenario_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Scenario not found")
