# backend/governor/api/breakthroughs.py
"""
Review and analytics endpoints over stored battles.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from governor.agents.breakthrough_detector import list_tactics, tactic_to_dict
from governor.agents.persona_analytics import get_humanity_grades, get_persona_analytics
from governor.auth.dependencies import require_admin
from governor.database import get_db
from governor.errors import EmptyTranscriptError, InvalidReviewTransition, PersistenceError
from governor.models.battle import BATTLE_STATUSES, Battle
from governor.models.tactic import Tactic
from governor.runtime import GovernorRuntime, get_runtime
from governor.utils.helpers import iso
from governor.utils.rate_limit import read_rate_limit, write_rate_limit

router = APIRouter(prefix="/api/sandbox", tags=["breakthroughs"])


class ReviewRequest(BaseModel):
    action: str


def battle_to_dict(b: Battle, include_transcript: bool = False) -> dict:
    out = {
        "id": b.id,
        "personaId": b.persona_id,
        "batchId": b.batch_id,
        "scenarioId": b.scenario_id,
        "status": b.status,
        "refereeScore": b.referee_score,
        "mathDefenseScore": b.math_defense_score,
        "humanityScore": b.humanity_score,
        "successScore": b.success_score,
        "verbalYesToPrice": b.verbal_yes_to_price,
        "documentStatus": b.document_status,
        "humanityGrade": b.humanity_grade,
        "closenessToCline": b.closeness_to_cline,
        "costUsd": b.cost_usd,
        "tokenUsage": b.token_usage,
        "turns": b.turns,
        "throttled": b.throttled,
        "judgeModel": b.judge_model,
        "error": b.error,
        "createdAt": iso(b.created_at),
        "endedAt": iso(b.ended_at),
    }
    if include_transcript:
        out["transcript"] = b.transcript
        out["prosodyFeatures"] = b.prosody_features
        out["roboticGapReport"] = b.robotic_gap_report
    return out


@router.get("/breakthroughs")
@read_rate_limit()
async def list_breakthroughs(
    request: Request,
    status: Optional[str] = None,
    limit: int = 50,
    db: Session = Depends(get_db),
    runtime: GovernorRuntime = Depends(get_runtime),
):
    try:
        return runtime.detector.list_breakthroughs(db, status=status, limit=min(max(limit, 1), 200))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/breakthroughs/{battle_id}")
@write_rate_limit()
async def review_breakthrough(
    request: Request,
    battle_id: int,
    payload: ReviewRequest,
    operator: str = Depends(require_admin),
    db: Session = Depends(get_db),
    runtime: GovernorRuntime = Depends(get_runtime),
):
    try:
        battle = runtime.detector.review(db, battle_id, payload.action, reviewer=operator)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidReviewTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    out = {"battleId": battle.id, "status": battle.status}
    if battle.status == "promoted":
        tactic = db.query(Tactic).filter(Tactic.battle_id == battle.id).first()
        out["tactic"] = tactic_to_dict(tactic) if tactic else None
    return out


@router.get("/tactics")
@read_rate_limit()
async def tactics(request: Request, active_only: bool = True, limit: int = 100, db: Session = Depends(get_db)):
    return {"tactics": list_tactics(db, active_only=active_only, limit=min(max(limit, 1), 500))}


@router.get("/persona-analytics")
@read_rate_limit()
async def persona_analytics(request: Request, db: Session = Depends(get_db)):
    return {"personas": get_persona_analytics(db)}


@router.get("/battles")
@read_rate_limit()
async def list_battles(
    request: Request,
    persona_id: Optional[int] = None,
    status: Optional[str] = None,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    if status is not None and status not in BATTLE_STATUSES:
        raise HTTPException(status_code=400, detail=f"status must be one of {BATTLE_STATUSES}")
    q = db.query(Battle)
    if persona_id is not None:
        q = q.filter(Battle.persona_id == persona_id)
    if status:
        q = q.filter(Battle.status == status)
    rows = q.order_by(Battle.created_at.desc(), Battle.id.desc()).limit(min(max(limit, 1), 200)).all()
    return {"battles": [battle_to_dict(b) for b in rows]}


@router.get("/battles/{battle_id}")
@read_rate_limit()
async def get_battle(request: Request, battle_id: int, db: Session = Depends(get_db)):
    battle = db.get(Battle, battle_id)
    if battle is None:
        raise HTTPException(status_code=404, detail="Battle not found")
    return battle_to_dict(battle, include_transcript=True)


@router.get("/humanity-grades")
@read_rate_limit()
async def humanity_grades(
    request: Request,
    persona_id: Optional[int] = None,
    limit: int = 20,
    db: Session = Depends(get_db),
    runtime: GovernorRuntime = Depends(get_runtime),
):
    return get_humanity_grades(db, runtime.config, limit=min(max(limit, 1), 200), persona_id=persona_id)


@router.post("/battles/{battle_id}/audit")
@write_rate_limit()
async def reaudit_battle(
    request: Request,
    battle_id: int,
    operator: str = Depends(require_admin),
    db: Session = Depends(get_db),
    runtime: GovernorRuntime = Depends(get_runtime),
):
    """Re-run the Vocal Soul audit on a stored battle."""
    battle = db.get(Battle, battle_id)
    if battle is None:
        raise HTTPException(status_code=404, detail="Battle not found")
    try:
        report = runtime.auditor.audit(db, battle.transcript or "", battle_id)
    except EmptyTranscriptError:
        raise HTTPException(status_code=422, detail="Battle has no transcript to audit")
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"battleId": battle_id, **report.to_dict()}
