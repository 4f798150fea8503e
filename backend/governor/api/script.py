# backend/governor/api/script.py
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from governor.auth.dependencies import require_admin
from governor.database import get_db
from governor.agents.gate_checker import GateIndexUnavailable
from governor.errors import ProviderError
from governor.runtime import GovernorRuntime, get_runtime
from governor.utils.rate_limit import expensive_rate_limit, read_rate_limit

router = APIRouter(prefix="/api/sandbox/script", tags=["script"])


class AdherenceRequest(BaseModel):
    transcript: str
    currentGate: Optional[int] = Field(default=None, ge=1)
    mode: str = "acquisition"


class EmbedRequest(BaseModel):
    mode: str = "acquisition"


@router.post("/check")
@read_rate_limit()
async def check_adherence(
    request: Request,
    payload: AdherenceRequest,
    db: Session = Depends(get_db),
    runtime: GovernorRuntime = Depends(get_runtime),
):
    """Embeds the transcript, so the kill switch and the budget apply."""
    runtime.scheduler.preflight(db)
    try:
        result = await runtime.gate_checker.check_adherence(
            db, payload.transcript, current_gate=payload.currentGate, mode=payload.mode
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return result.to_dict()


@router.post("/embed")
@expensive_rate_limit()
async def embed_gates(
    request: Request,
    payload: EmbedRequest,
    operator: str = Depends(require_admin),
    db: Session = Depends(get_db),
    runtime: GovernorRuntime = Depends(get_runtime),
):
    """Embed the reference text of every gate in a mode and store the index."""
    try:
        runtime.scheduler.preflight(db)
        count = await runtime.gate_checker.seed_gates(db, payload.mode)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except GateIndexUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return {"mode": payload.mode, "gatesEmbedded": count, "model": getattr(runtime.embedder, "model", None)}
