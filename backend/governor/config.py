# backend/governor/config.py
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import quote_plus

from dotenv import load_dotenv

from governor.errors import MissingConfigError

BACKEND_DIR = Path(__file__).resolve().parents[1]   # backend/
REPO_DIR = BACKEND_DIR.parent                        # repo root

ENV_BACKEND = BACKEND_DIR / ".env"
ENV_REPO = REPO_DIR / ".env"
ENV_FILE = ENV_BACKEND if ENV_BACKEND.exists() else ENV_REPO

load_dotenv(dotenv_path=str(ENV_FILE), override=False)


def _build_database_url() -> str:
    """Use DATABASE_URL directly, or assemble a PostgreSQL URL from parts."""
    direct_url = os.getenv("DATABASE_URL")
    if direct_url:
        return direct_url

    host = os.getenv("DB_HOST", "127.0.0.1")
    port = os.getenv("DB_PORT", "5432")
    user = os.getenv("DB_USER", "postgres")
    password = quote_plus(os.getenv("DB_PASSWORD", ""))
    db = os.getenv("DB_NAME", "postgres")
    return f"postgresql://{user}:{password}@{host}:{port}/{db}"


def _parse_origins(raw: str) -> list[str]:
    out = []
    for o in (raw or "").split(","):
        o = (o or "").strip().rstrip("/")
        if o:
            out.append(o)
    return out


class Settings:
    DATABASE_URL: str = _build_database_url()

    OPENAI_API_KEY: str | None = os.getenv("OPENAI_API_KEY")

    CORS_ORIGINS: list[str] = _parse_origins(
        os.getenv("CORS_ORIGINS", "http://127.0.0.1:3000,http://localhost:3000")
    )

    # ================= Environment =================
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    # Ledger rows are tagged with this value; the budget monitor only sums matching rows
    GOVERNOR_ENV: str = os.getenv("GOVERNOR_ENV", "sandbox")

    # Bearer token for the control API. Unset means open (development only).
    ADMIN_API_TOKEN: str | None = os.getenv("ADMIN_API_TOKEN")

    # Out-of-band alerts (kill switch, budget, breakthroughs)
    SLACK_WEBHOOK_URL: str | None = os.getenv("SLACK_WEBHOOK_URL")

    # ================= Budget =================
    DAILY_TRAINING_CAP_USD: str | None = os.getenv("DAILY_TRAINING_CAP_USD", "15.00")
    THROTTLE_THRESHOLD_USD: str | None = os.getenv("THROTTLE_THRESHOLD_USD", "3.00")
    ESTIMATED_BATTLE_COST_USD: str | None = os.getenv("ESTIMATED_BATTLE_COST_USD", "0.25")

    # ================= Scheduler =================
    MAX_CONCURRENT_BATTLES: str | None = os.getenv("MAX_CONCURRENT_BATTLES", "3")
    MAX_BATTLES_PER_BATCH: str | None = os.getenv("MAX_BATTLES_PER_BATCH", "10")
    DEFAULT_BATCH_SIZE: str | None = os.getenv("DEFAULT_BATCH_SIZE", "5")
    MAX_BATTLE_TURNS: str | None = os.getenv("MAX_BATTLE_TURNS", "15")

    # ================= Scenario injection =================
    MAX_SCENARIO_ATTEMPTS: str | None = os.getenv("MAX_SCENARIO_ATTEMPTS", "5")
    SCENARIO_SUCCESS_THRESHOLD: str | None = os.getenv("SCENARIO_SUCCESS_THRESHOLD", "80")
    SCENARIO_TEMPERATURE: str | None = os.getenv("SCENARIO_TEMPERATURE", "0.8")

    # ================= Vocal soul auditor =================
    HUMANITY_FEEDBACK_THRESHOLD: str | None = os.getenv("HUMANITY_FEEDBACK_THRESHOLD", "85")
    TEXTURE_FREQUENCY_BASE: str | None = os.getenv("TEXTURE_FREQUENCY_BASE", "0.3")
    TEXTURE_FREQUENCY_DELTA: str | None = os.getenv("TEXTURE_FREQUENCY_DELTA", "0.1")
    TEXTURE_FREQUENCY_MAX: str | None = os.getenv("TEXTURE_FREQUENCY_MAX", "0.9")
    TEXTURE_FEEDBACK_SESSIONS: str | None = os.getenv("TEXTURE_FEEDBACK_SESSIONS", "50")
    WORDS_PER_MINUTE: str | None = os.getenv("WORDS_PER_MINUTE", "150")
    GOLD_STANDARD_JSON: str | None = os.getenv("GOLD_STANDARD_JSON")
    AUDITOR_CATEGORY_WEIGHTS_JSON: str | None = os.getenv("AUDITOR_CATEGORY_WEIGHTS_JSON")

    # ================= Script gates =================
    GATE_ADVANCE_THRESHOLD: str | None = os.getenv("GATE_ADVANCE_THRESHOLD", "0.75")

    # ================= Breakthroughs =================
    BREAKTHROUGH_REFEREE_MIN: str | None = os.getenv("BREAKTHROUGH_REFEREE_MIN", "95")
    BREAKTHROUGH_HUMANITY_MIN: str | None = os.getenv("BREAKTHROUGH_HUMANITY_MIN", "85")
    BREAKTHROUGH_WINDOW_HOURS: str | None = os.getenv("BREAKTHROUGH_WINDOW_HOURS", "24")

    # ================= Models =================
    JUDGE_MODEL: str = os.getenv("JUDGE_MODEL", "gpt-4o")
    JUDGE_MODEL_THROTTLED: str = os.getenv("JUDGE_MODEL_THROTTLED", "gpt-4o-mini")
    CLOSER_MODEL: str = os.getenv("CLOSER_MODEL", "gpt-4o")
    PERSONA_MODEL: str = os.getenv("PERSONA_MODEL", "gpt-4o-mini")
    EMBEDDING_MODEL: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")


settings = Settings()


# =============================================================================
# GOVERNOR CONFIGURATION
# =============================================================================

# Gold-standard delivery profile the auditor grades against
DEFAULT_GOLD_STANDARD: Dict[str, float] = {
    "pitch_variance": 0.75,
    "rhythm_variability": 0.82,
    "jitter": 0.45,
    "shimmer": 0.38,
    "average_pause_duration": 1.2,
    "speech_rate": 145.0,
    "pitch_range": 8.5,
    "texture_density": 12.0,
}

DEFAULT_CATEGORY_WEIGHTS: Dict[str, float] = {
    "pitch_rhythm": 0.5,
    "jitter_shimmer": 0.3,
    "pause_texture": 0.2,
}


@dataclass(frozen=True)
class GovernorConfig:
    """Validated tunables for the training governor."""

    env: str
    daily_cap: float
    throttle_threshold: float
    estimated_battle_cost: float
    max_concurrent: int
    max_battles: int
    default_batch_size: int
    max_turns: int
    max_scenario_attempts: int
    scenario_success_threshold: float
    scenario_temperature: float
    humanity_feedback_threshold: float
    texture_frequency_base: float
    texture_frequency_delta: float
    texture_frequency_max: float
    texture_feedback_sessions: int
    words_per_minute: float
    gate_advance_threshold: float
    breakthrough_referee_min: float
    breakthrough_humanity_min: float
    breakthrough_window_hours: int
    judge_model: str
    judge_model_throttled: str
    gold_standard: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_GOLD_STANDARD))
    category_weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_CATEGORY_WEIGHTS))


def _parse_float(name: str, raw: Optional[str], errors: List[str]) -> float:
    if raw is None or str(raw).strip() == "":
        errors.append(f"{name} is required")
        return 0.0
    try:
        return float(raw)
    except (TypeError, ValueError):
        errors.append(f"{name} must be a number, got {raw!r}")
        return 0.0


def _parse_int(name: str, raw: Optional[str], errors: List[str]) -> int:
    if raw is None or str(raw).strip() == "":
        errors.append(f"{name} is required")
        return 0
    try:
        return int(raw)
    except (TypeError, ValueError):
        errors.append(f"{name} must be an integer, got {raw!r}")
        return 0


def _parse_json_map(name: str, raw: Optional[str], default: Dict[str, float], errors: List[str]) -> Dict[str, float]:
    if not raw:
        return dict(default)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        errors.append(f"{name} is not valid JSON: {e}")
        return dict(default)
    if not isinstance(data, dict):
        errors.append(f"{name} must be a JSON object")
        return dict(default)
    out: Dict[str, float] = {}
    for key, value in data.items():
        try:
            out[str(key)] = float(value)
        except (TypeError, ValueError):
            errors.append(f"{name}.{key} must be a number")
    return out


def load_governor_config(source: Optional[Settings] = None) -> GovernorConfig:
    """
    Build and validate the governor configuration.

    Raises:
        MissingConfigError: if any cap, threshold or profile is missing or
            inconsistent. The governor must not start in that case.
    """
    s = source or settings
    errors: List[str] = []

    daily_cap = _parse_float("DAILY_TRAINING_CAP_USD", s.DAILY_TRAINING_CAP_USD, errors)
    throttle = _parse_float("THROTTLE_THRESHOLD_USD", s.THROTTLE_THRESHOLD_USD, errors)
    estimate = _parse_float("ESTIMATED_BATTLE_COST_USD", s.ESTIMATED_BATTLE_COST_USD, errors)
    max_concurrent = _parse_int("MAX_CONCURRENT_BATTLES", s.MAX_CONCURRENT_BATTLES, errors)
    max_battles = _parse_int("MAX_BATTLES_PER_BATCH", s.MAX_BATTLES_PER_BATCH, errors)
    batch_size = _parse_int("DEFAULT_BATCH_SIZE", s.DEFAULT_BATCH_SIZE, errors)
    attempts = _parse_int("MAX_SCENARIO_ATTEMPTS", s.MAX_SCENARIO_ATTEMPTS, errors)
    success_threshold = _parse_float("SCENARIO_SUCCESS_THRESHOLD", s.SCENARIO_SUCCESS_THRESHOLD, errors)
    humanity_threshold = _parse_float("HUMANITY_FEEDBACK_THRESHOLD", s.HUMANITY_FEEDBACK_THRESHOLD, errors)
    max_turns = _parse_int("MAX_BATTLE_TURNS", s.MAX_BATTLE_TURNS, errors)
    scenario_temperature = _parse_float("SCENARIO_TEMPERATURE", s.SCENARIO_TEMPERATURE, errors)
    texture_base = _parse_float("TEXTURE_FREQUENCY_BASE", s.TEXTURE_FREQUENCY_BASE, errors)
    texture_delta = _parse_float("TEXTURE_FREQUENCY_DELTA", s.TEXTURE_FREQUENCY_DELTA, errors)
    texture_max = _parse_float("TEXTURE_FREQUENCY_MAX", s.TEXTURE_FREQUENCY_MAX, errors)
    feedback_sessions = _parse_int("TEXTURE_FEEDBACK_SESSIONS", s.TEXTURE_FEEDBACK_SESSIONS, errors)
    words_per_minute = _parse_float("WORDS_PER_MINUTE", s.WORDS_PER_MINUTE, errors)
    gate_threshold = _parse_float("GATE_ADVANCE_THRESHOLD", s.GATE_ADVANCE_THRESHOLD, errors)
    referee_min = _parse_float("BREAKTHROUGH_REFEREE_MIN", s.BREAKTHROUGH_REFEREE_MIN, errors)
    humanity_min = _parse_float("BREAKTHROUGH_HUMANITY_MIN", s.BREAKTHROUGH_HUMANITY_MIN, errors)
    window_hours = _parse_int("BREAKTHROUGH_WINDOW_HOURS", s.BREAKTHROUGH_WINDOW_HOURS, errors)

    gold = _parse_json_map("GOLD_STANDARD_JSON", s.GOLD_STANDARD_JSON, DEFAULT_GOLD_STANDARD, errors)
    weights = _parse_json_map(
        "AUDITOR_CATEGORY_WEIGHTS_JSON", s.AUDITOR_CATEGORY_WEIGHTS_JSON, DEFAULT_CATEGORY_WEIGHTS, errors
    )

    if not errors:
        if daily_cap <= 0:
            errors.append("DAILY_TRAINING_CAP_USD must be greater than 0")
        if throttle < 0 or throttle > daily_cap:
            errors.append("THROTTLE_THRESHOLD_USD must be between 0 and DAILY_TRAINING_CAP_USD")
        if estimate < 0:
            errors.append("ESTIMATED_BATTLE_COST_USD must not be negative")
        if max_concurrent < 1:
            errors.append("MAX_CONCURRENT_BATTLES must be at least 1")
        if max_battles < 1:
            errors.append("MAX_BATTLES_PER_BATCH must be at least 1")
        if batch_size < 1:
            errors.append("DEFAULT_BATCH_SIZE must be at least 1")
        if attempts < 1:
            errors.append("MAX_SCENARIO_ATTEMPTS must be at least 1")
        if not 0 <= success_threshold <= 100:
            errors.append("SCENARIO_SUCCESS_THRESHOLD must be within 0-100")
        if not 0 <= humanity_threshold <= 100:
            errors.append("HUMANITY_FEEDBACK_THRESHOLD must be within 0-100")
        missing = sorted(set(DEFAULT_GOLD_STANDARD) - set(gold))
        if missing:
            errors.append(f"GOLD_STANDARD_JSON is missing features: {', '.join(missing)}")
        if set(weights) != set(DEFAULT_CATEGORY_WEIGHTS) or sum(weights.values()) <= 0:
            errors.append(
                "AUDITOR_CATEGORY_WEIGHTS_JSON needs positive weights for "
                + ", ".join(DEFAULT_CATEGORY_WEIGHTS)
            )
        if max_turns < 1:
            errors.append("MAX_BATTLE_TURNS must be at least 1")
        if not 0 <= scenario_temperature <= 2:
            errors.append("SCENARIO_TEMPERATURE must be within 0-2")
        if words_per_minute <= 0:
            errors.append("WORDS_PER_MINUTE must be greater than 0")
        if not 0 <= texture_base <= texture_max <= 1:
            errors.append("TEXTURE_FREQUENCY_BASE/MAX must satisfy 0 <= base <= max <= 1")
        if texture_delta <= 0:
            errors.append("TEXTURE_FREQUENCY_DELTA must be greater than 0")
        if feedback_sessions < 1:
            errors.append("TEXTURE_FEEDBACK_SESSIONS must be at least 1")
        if not 0 < gate_threshold <= 1:
            errors.append("GATE_ADVANCE_THRESHOLD must be within (0, 1]")
        if not 0 <= referee_min <= 100:
            errors.append("BREAKTHROUGH_REFEREE_MIN must be within 0-100")
        if not 0 <= humanity_min <= 100:
            errors.append("BREAKTHROUGH_HUMANITY_MIN must be within 0-100")
        if window_hours < 1:
            errors.append("BREAKTHROUGH_WINDOW_HOURS must be at least 1")

    if errors:
        raise MissingConfigError(f"Governor configuration errors: {'; '.join(errors)}")

    return GovernorConfig(
        env=s.GOVERNOR_ENV,
        daily_cap=daily_cap,
        throttle_threshold=throttle,
        estimated_battle_cost=estimate,
        max_concurrent=max_concurrent,
        max_battles=max_battles,
        default_batch_size=batch_size,
        max_turns=max_turns,
        max_scenario_attempts=attempts,
        scenario_success_threshold=success_threshold,
        scenario_temperature=scenario_temperature,
        humanity_feedback_threshold=humanity_threshold,
        texture_frequency_base=texture_base,
        texture_frequency_delta=texture_delta,
        texture_frequency_max=texture_max,
        texture_feedback_sessions=feedback_sessions,
        words_per_minute=words_per_minute,
        gate_advance_threshold=gate_threshold,
        breakthrough_referee_min=referee_min,
        breakthrough_humanity_min=humanity_min,
        breakthrough_window_hours=window_hours,
        judge_model=s.JUDGE_MODEL,
        judge_model_throttled=s.JUDGE_MODEL_THROTTLED,
        gold_standard=gold,
        category_weights=weights,
    )


def validate_config(raise_on_error: bool = True) -> dict:
    """
    Validate provider configuration.

    Governor tunables are validated separately by load_governor_config().

    Returns:
        Dict with 'errors' (critical) and 'warnings' (non-critical) lists.
    """
    errors = []
    warnings = []

    if not settings.DATABASE_URL:
        errors.append("DATABASE_URL is required")

    if not settings.OPENAI_API_KEY:
        warnings.append("OPENAI_API_KEY missing - battle synthesis, judging and gate embeddings unavailable")
    if not settings.SLACK_WEBHOOK_URL:
        warnings.append("SLACK_WEBHOOK_URL missing - kill switch and budget alerts only go to the log")

    if settings.ENVIRONMENT == "production":
        if not settings.ADMIN_API_TOKEN:
            errors.append("ADMIN_API_TOKEN is required in production")
        if any("localhost" in o for o in settings.CORS_ORIGINS):
            warnings.append("CORS_ORIGINS includes localhost in production - consider restricting")

    result = {"errors": errors, "warnings": warnings}

    if raise_on_error and errors:
        raise MissingConfigError(f"Configuration errors: {'; '.join(errors)}")

    return result


def get_config_status() -> dict:
    """Configuration presence flags for health endpoints."""
    return {
        "environment": settings.ENVIRONMENT,
        "governor_env": settings.GOVERNOR_ENV,
        "database_configured": bool(settings.DATABASE_URL),
        "openai_configured": bool(settings.OPENAI_API_KEY),
        "slack_configured": bool(settings.SLACK_WEBHOOK_URL),
        "admin_token_configured": bool(settings.ADMIN_API_TOKEN),
    }
