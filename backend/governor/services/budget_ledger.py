# backend/governor/services/budget_ledger.py
"""
Budget ledger: append-only record of provider spend.

Every provider call the governor makes (battle synthesis, judging, persona
synthesis, gate embeddings) is written here as one row. The Budget Monitor
sums these rows; nothing else is a source of truth for spend.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from governor.config import settings
from governor.database import safe_commit
from governor.errors import PersistenceError
from governor.models.budget_ledger import BudgetLedgerEntry
from governor.utils.logger import logger


# =============================================================================
# Cost rates (USD)
# =============================================================================

# Token prices are per 1M tokens
OPENAI_TOKEN_RATES: Dict[str, Dict[str, float]] = {
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "text-embedding-3-small": {"input": 0.02, "output": 0.0},
    "text-embedding-3-large": {"input": 0.13, "output": 0.0},
}

# Voice providers bill per minute of call audio
VOICE_MINUTE_RATES: Dict[str, float] = {
    "vapi": 0.18,
    "elevenlabs": 0.07,
}

# Unknown models are billed at the most expensive known chat rate
FALLBACK_MODEL = "gpt-4o"


def _rates_for(model: Optional[str]) -> Dict[str, float]:
    if not model:
        return OPENAI_TOKEN_RATES[FALLBACK_MODEL]
    if model in OPENAI_TOKEN_RATES:
        return OPENAI_TOKEN_RATES[model]
    # dated snapshots, e.g. gpt-4o-mini-2024-07-18
    for known in sorted(OPENAI_TOKEN_RATES, key=len, reverse=True):
        if model.startswith(known):
            return OPENAI_TOKEN_RATES[known]
    logger.warning(f"[BudgetLedger] No rate for model {model!r}; billing at {FALLBACK_MODEL} rates")
    return OPENAI_TOKEN_RATES[FALLBACK_MODEL]


def calculate_openai_cost(model: Optional[str], input_tokens: int, output_tokens: int = 0) -> float:
    rates = _rates_for(model)
    cost = (max(input_tokens, 0) * rates["input"] + max(output_tokens, 0) * rates["output"]) / 1_000_000
    return round(cost, 6)


def calculate_voice_cost(provider: str, minutes: float) -> float:
    rate = VOICE_MINUTE_RATES.get(provider)
    if rate is None:
        raise ValueError(f"Unknown voice provider: {provider}")
    return round(max(minutes, 0.0) * rate, 6)


@dataclass
class ProviderUsage:
    """What one provider call consumed. cost_usd is computed from rates when None."""

    provider: str
    model: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    duration_minutes: Optional[float] = None
    cost_usd: Optional[float] = None

    @property
    def total_tokens(self) -> int:
        return (self.input_tokens or 0) + (self.output_tokens or 0)

    def resolve_cost(self) -> float:
        if self.cost_usd is not None:
            return float(self.cost_usd)
        if self.provider in VOICE_MINUTE_RATES:
            return calculate_voice_cost(self.provider, self.duration_minutes or 0.0)
        return calculate_openai_cost(self.model, self.input_tokens or 0, self.output_tokens or 0)


class BudgetLedger:
    def __init__(self, env: Optional[str] = None):
        self.env = env or settings.GOVERNOR_ENV

    def record(
        self,
        db: Session,
        provider: str,
        cost_usd: float,
        model: Optional[str] = None,
        input_tokens: Optional[int] = None,
        output_tokens: Optional[int] = None,
        duration_minutes: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BudgetLedgerEntry:
        """
        Append one spend row and commit it.

        Raises:
            ValueError: negative cost
            PersistenceError: the row could not be committed
        """
        if cost_usd < 0:
            raise ValueError(f"Ledger cost must not be negative, got {cost_usd}")

        entry = BudgetLedgerEntry(
            provider=provider,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_minutes=duration_minutes,
            cost_usd=float(cost_usd),
            env=self.env,
            entry_metadata=dict(metadata or {}),
        )
        db.add(entry)
        ok, err = safe_commit(db, "budget ledger append")
        if not ok:
            raise PersistenceError(err or "budget ledger append failed")

        logger.debug(f"[BudgetLedger] +${cost_usd:.6f} {provider}/{model or '-'} {metadata or {}}")
        return entry

    def record_usage(
        self,
        db: Session,
        usage: ProviderUsage,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BudgetLedgerEntry:
        return self.record(
            db,
            provider=usage.provider,
            cost_usd=usage.resolve_cost(),
            model=usage.model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            duration_minutes=usage.duration_minutes,
            metadata=metadata,
        )
