# backend/governor/services/budget_monitor.py
"""
Budget Monitor.

Today's spend is the ledger sum for this environment since the most recent
UTC midnight, so the budget resets by itself every UTC day. There is no
weekly or monthly cap.

Reservations: before a battle starts the scheduler reserves its estimated
cost here. A battle is admitted only while spend plus outstanding
reservations stays under the daily cap; the reservation is released when the
battle finishes and its real cost is in the ledger. The book is per process;
schedulers in other processes can still overshoot by their in-flight battles.
"""

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from governor.config import GovernorConfig
from governor.models.budget_ledger import BudgetLedgerEntry
from governor.utils.helpers import iso, utc_midnight, utcnow
from governor.utils.logger import logger


@dataclass
class BudgetStatus:
    today_spend: float
    daily_cap: float
    throttle_threshold: float
    remaining: float
    percentage_used: float
    is_throttled: bool
    is_exceeded: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "todaySpend": round(self.today_spend, 4),
            "dailyCap": self.daily_cap,
            "throttleThreshold": self.throttle_threshold,
            "remaining": round(self.remaining, 4),
            "percentageUsed": self.percentage_used,
            "isThrottled": self.is_throttled,
            "isExceeded": self.is_exceeded,
        }


class ReservationBook:
    """Outstanding estimated cost of battles that have started but not finished."""

    def __init__(self):
        self._lock = threading.Lock()
        self._reservations: Dict[str, float] = {}

    def reserve(self, amount: float) -> str:
        token = uuid.uuid4().hex
        with self._lock:
            self._reservations[token] = float(amount)
        return token

    def release(self, token: Optional[str]) -> None:
        if not token:
            return
        with self._lock:
            self._reservations.pop(token, None)

    def outstanding(self) -> float:
        with self._lock:
            return sum(self._reservations.values())

    def count(self) -> int:
        with self._lock:
            return len(self._reservations)

    def clear(self) -> int:
        with self._lock:
            n = len(self._reservations)
            self._reservations.clear()
            return n


# Shared by every scheduler in this process
reservation_book = ReservationBook()


class BudgetMonitor:
    def __init__(self, config: GovernorConfig, reservations: Optional[ReservationBook] = None):
        self.config = config
        self.reservations = reservations or reservation_book

    def get_today_spend(self, db: Session, now: Optional[datetime] = None) -> float:
        since = utc_midnight(now)
        total = (
            db.query(func.coalesce(func.sum(BudgetLedgerEntry.cost_usd), 0.0))
            .filter(
                BudgetLedgerEntry.env == self.config.env,
                BudgetLedgerEntry.created_at >= since,
            )
            .scalar()
        )
        return float(total or 0.0)

    def _status_for(self, spend: float) -> BudgetStatus:
        cap = self.config.daily_cap
        return BudgetStatus(
            today_spend=spend,
            daily_cap=cap,
            throttle_threshold=self.config.throttle_threshold,
            remaining=max(0.0, cap - spend),
            percentage_used=round(spend / cap * 100, 1) if cap else 100.0,
            is_throttled=spend >= self.config.throttle_threshold,
            is_exceeded=spend >= cap,
        )

    def get_budget_status(self, db: Session, now: Optional[datetime] = None) -> BudgetStatus:
        return self._status_for(self.get_today_spend(db, now))

    def get_budget_summary(self, db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Status plus today's per-provider breakdown and in-flight reservations."""
        now = now or utcnow()
        since = utc_midnight(now)
        status = self.get_budget_status(db, now)

        rows = (
            db.query(
                BudgetLedgerEntry.provider,
                func.sum(BudgetLedgerEntry.cost_usd),
                func.count(BudgetLedgerEntry.id),
            )
            .filter(
                BudgetLedgerEntry.env == self.config.env,
                BudgetLedgerEntry.created_at >= since,
            )
            .group_by(BudgetLedgerEntry.provider)
            .all()
        )
        breakdown = {
            provider: {"spend": round(float(total or 0.0), 4), "entries": int(count)}
            for provider, total, count in rows
        }

        out = status.to_dict()
        out.update({
            "env": self.config.env,
            "windowStart": iso(since),
            "breakdown": breakdown,
            "reserved": round(self.reservations.outstanding(), 4),
            "inFlightBattles": self.reservations.count(),
        })
        return out

    def try_reserve(self, db: Session, amount: Optional[float] = None) -> Optional[str]:
        """
        Reserve the estimated cost of one battle.

        Returns a reservation token, or None when spend plus outstanding
        reservations has already reached the cap. Callers must release the
        token when the battle finishes.
        """
        amount = self.config.estimated_battle_cost if amount is None else amount
        spend = self.get_today_spend(db)
        outstanding = self.reservations.outstanding()
        if spend + outstanding >= self.config.daily_cap:
            logger.info(
                f"[BudgetMonitor] Reservation refused: spend ${spend:.4f} + reserved ${outstanding:.4f} "
                f">= cap ${self.config.daily_cap:.2f}"
            )
            return None
        return self.reservations.reserve(amount)

    def release(self, token: Optional[str]) -> None:
        self.reservations.release(token)
