# backend/governor/main.py
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.orm import Session

from governor.api import breakthroughs, scenarios, script, training
from governor.config import get_config_status, load_governor_config, settings, validate_config
from governor.database import get_db, init_db
from governor.errors import BudgetExceeded, KillSwitchActive, MissingConfigError
from governor.utils.helpers import iso, utcnow
from governor.utils.logger import logger
from governor.utils.rate_limit import get_limiter

VERSION = "1.0.0"

app = FastAPI(title="Self-Play Training Governor", version=VERSION)

app.state.limiter = get_limiter()
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


def _summary_of(exc) -> dict:
    summary = getattr(exc, "summary", None)
    return summary.to_dict() if hasattr(summary, "to_dict") else None


@app.exception_handler(BudgetExceeded)
async def budget_exceeded_handler(request: Request, exc: BudgetExceeded):
    return JSONResponse(
        status_code=500,
        content={"error": "BudgetExceeded", "message": str(exc), "summary": _summary_of(exc)},
    )


@app.exception_handler(KillSwitchActive)
async def kill_switch_handler(request: Request, exc: KillSwitchActive):
    return JSONResponse(
        status_code=503,
        content={"error": "KillSwitchActive", "message": str(exc), "summary": _summary_of(exc)},
    )


@app.on_event("startup")
async def startup_event():
    logger.info("Training Governor Starting...")

    try:
        result = validate_config(raise_on_error=settings.ENVIRONMENT == "production")
        for warning in result.get("warnings", []):
            logger.warning(f"Config warning: {warning}")
        for error in result.get("errors", []):
            logger.error(f"Config error: {error}")

        # a misconfigured cap or threshold must keep the governor down
        governor_config = load_governor_config()
    except MissingConfigError as e:
        logger.critical(f"FATAL: {e}")
        raise SystemExit(1)

    init_db()
    logger.info("Database tables created/verified")
    logger.info(
        f"[Governor] env={governor_config.env} cap=${governor_config.daily_cap:.2f} "
        f"throttle=${governor_config.throttle_threshold:.2f} concurrency={governor_config.max_concurrent}"
    )
    logger.info("Training Governor Started")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup resources on shutdown."""
    logger.info("Training Governor Shutting Down...")

    try:
        from governor.agents.vocal_soul_auditor import cleanup_all_audit_sessions
        session_count = await cleanup_all_audit_sessions()
        if session_count > 0:
            logger.info(f"Cleaned up {session_count} audit sessions")
    except Exception as e:
        logger.error(f"Error cleaning up audit sessions: {e}")

    try:
        from governor.services.budget_monitor import reservation_book
        released = reservation_book.clear()
        if released > 0:
            logger.warning(f"Released {released} outstanding budget reservations")
    except Exception as e:
        logger.error(f"Error releasing reservations: {e}")

    try:
        from governor.services.openai_service import OpenAIService
        await OpenAIService.close_client()
    except Exception as e:
        logger.error(f"Error closing OpenAI client: {e}")

    logger.info("Training Governor Shutdown Complete")


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(training.router)
app.include_router(script.router)
app.include_router(scenarios.router)
app.include_router(breakthroughs.router)


@app.get("/")
async def root():
    return {"message": "Self-Play Training Governor API", "status": "running", "version": VERSION}


@app.get("/health")
async def health(db: Session = Depends(get_db)):
    """
    Health check: database connectivity, configuration, kill switch and
    in-flight audit sessions.
    """
    from governor.agents.vocal_soul_auditor import get_audit_session_count
    from governor.models.kill_switch import KILL_SWITCH_ROW_ID, KillSwitchState
    from governor.utils.circuit_breaker import get_all_breaker_stats

    health_status = {
        "status": "healthy",
        "timestamp": iso(utcnow()),
        "version": VERSION,
        "checks": {},
    }

    try:
        db.execute(text("SELECT 1"))
        health_status["checks"]["database"] = "ok"
    except Exception as e:
        health_status["checks"]["database"] = f"error: {str(e)[:100]}"
        health_status["status"] = "degraded"

    config_status = get_config_status()
    health_status["checks"]["config"] = config_status
    health_status["checks"]["active_audit_sessions"] = get_audit_session_count()
    health_status["checks"]["circuit_breakers"] = get_all_breaker_stats()

    try:
        row = db.get(KillSwitchState, KILL_SWITCH_ROW_ID)
        health_status["checks"]["kill_switch_active"] = bool(row and row.active)
    except Exception:
        health_status["checks"]["kill_switch_active"] = "unknown"

    if not config_status.get("database_configured"):
        health_status["status"] = "unhealthy"
    elif not config_status.get("openai_configured"):
        health_status["status"] = "degraded"

    return health_status


@app.get("/health/simple")
async def health_simple():
    return {"status": "ok"}
