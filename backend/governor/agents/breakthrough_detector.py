# backend/governor/agents/breakthrough_detector.py
"""
Tactical scout: flags exceptional battles for human review.

A completed, audited battle inside the recency window becomes
`pending_review` when referee_score >= BREAKTHROUGH_REFEREE_MIN and
humanity_grade >= BREAKTHROUGH_HUMANITY_MIN. Both bars are inclusive, so a
95 / 85 battle qualifies at the defaults.

Review is one-way: pending_review -> reviewed | promoted | rejected.
Promoting a battle turns its winning rebuttal into an active Tactic.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from governor.config import GovernorConfig
from governor.database import safe_commit
from governor.errors import InvalidReviewTransition, PersistenceError
from governor.models.battle import Battle
from governor.models.persona import Persona
from governor.models.tactic import Tactic
from governor.utils.helpers import hours_ago, iso, utcnow
from governor.utils.logger import logger

REVIEW_ACTIONS: Dict[str, str] = {
    "mark_reviewed": "reviewed",
    "promote": "promoted",
    "reject": "rejected",
}

BREAKTHROUGH_STATUSES = ("pending_review", "reviewed", "promoted", "rejected")

MAX_TACTIC_CHARS = 500


class BreakthroughDetector:
    def __init__(self, config: GovernorConfig):
        self.config = config

    def scan(self, db: Session, now: Optional[datetime] = None) -> List[Battle]:
        """Flag qualifying battles from the recency window. Returns the newly flagged rows."""
        now = now or utcnow()
        since = hours_ago(self.config.breakthrough_window_hours, now)

        candidates = (
            db.query(Battle)
            .filter(
                Battle.status == "completed",
                Battle.error.is_(None),
                Battle.created_at >= since,
                Battle.referee_score >= self.config.breakthrough_referee_min,
                Battle.humanity_grade >= self.config.breakthrough_humanity_min,
            )
            .all()
        )
        if not candidates:
            return []

        for battle in candidates:
            battle.status = "pending_review"
            battle.breakthrough_detected_at = now

        ok, err = safe_commit(db, "flag breakthroughs")
        if not ok:
            raise PersistenceError(err or "flagging breakthroughs failed")

        logger.info(f"[TacticalScout] Flagged {len(candidates)} breakthrough(s): {[b.id for b in candidates]}")
        return candidates

    def list_breakthroughs(
        self,
        db: Session,
        status: Optional[str] = None,
        limit: int = 50,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or utcnow()
        if status is not None and status not in BREAKTHROUGH_STATUSES:
            raise ValueError(f"status must be one of {BREAKTHROUGH_STATUSES}")

        q = (
            db.query(Battle, Persona)
            .join(Persona, Battle.persona_id == Persona.id)
            .filter(Battle.breakthrough_detected_at.isnot(None))
        )
        if status:
            q = q.filter(Battle.status == status)
        rows = q.order_by(Battle.breakthrough_detected_at.desc(), Battle.id.desc()).limit(limit).all()

        unread = (
            db.query(Battle)
            .filter(
                Battle.status == "pending_review",
                Battle.breakthrough_detected_at >= hours_ago(24, now),
            )
            .count()
        )

        return {
            "breakthroughs": [
                {
                    "battleId": b.id,
                    "personaId": p.id,
                    "personaName": p.name,
                    "personaType": p.persona_type,
                    "status": b.status,
                    "refereeScore": b.referee_score,
                    "humanityGrade": b.humanity_grade,
                    "winningRebuttal": b.winning_rebuttal,
                    "detectedAt": iso(b.breakthrough_detected_at),
                    "createdAt": iso(b.created_at),
                }
                for b, p in rows
            ],
            "unreadCount": unread,
        }

    def review(self, db: Session, battle_id: int, action: str, reviewer: Optional[str] = None) -> Battle:
        """
        Raises:
            ValueError: unknown action
            LookupError: unknown battle, or a promotion with no winning rebuttal
            InvalidReviewTransition: battle is not pending review
        """
        if action not in REVIEW_ACTIONS:
            raise ValueError(f"action must be one of {sorted(REVIEW_ACTIONS)}")

        battle = db.get(Battle, battle_id)
        if battle is None:
            raise LookupError(f"Battle {battle_id} not found")
        if battle.status != "pending_review":
            raise InvalidReviewTransition(
                f"Battle {battle_id} is {battle.status}; only pending_review battles can be reviewed"
            )

        tactic = None
        if action == "promote":
            tactic = self._activate_tactic(db, battle, reviewer)

        battle.status = REVIEW_ACTIONS[action]
        ok, err = safe_commit(db, f"review battle {battle_id}")
        if not ok:
            raise PersistenceError(err or f"review of battle {battle_id} failed")

        logger.info(f"[TacticalScout] Battle {battle_id} {action} by {reviewer or 'admin'} -> {battle.status}")
        if tactic is not None:
            logger.info(f"[TacticalScout] Tactic {tactic.id} from battle {battle_id} is now active")
        return battle

    def _activate_tactic(self, db: Session, battle: Battle, reviewer: Optional[str]) -> Tactic:
        text = extract_winning_rebuttal(battle)
        if not text:
            raise LookupError(f"No winning rebuttal found for battle {battle.id}")

        tactic = db.query(Tactic).filter(Tactic.battle_id == battle.id).first()
        if tactic is None:
            tactic = Tactic(battle_id=battle.id, tactic_text=text)
            db.add(tactic)
        tactic.is_active = True
        tactic.promoted_by = reviewer or "admin"
        tactic.promoted_at = utcnow()
        return tactic


def extract_winning_rebuttal(battle: Battle) -> Optional[str]:
    """The judge's winning rebuttal, else the closer's last three lines."""
    if battle.winning_rebuttal and battle.winning_rebuttal.strip():
        return battle.winning_rebuttal.strip()

    closer_lines = [
        line.split(":", 1)[1].strip()
        for line in (battle.transcript or "").splitlines()
        if line.strip().lower().startswith("closer:")
    ]
    closer_lines = [line for line in closer_lines if line]
    if not closer_lines:
        return None
    text = " ".join(closer_lines[-3:])
    return text if len(text) <= MAX_TACTIC_CHARS else text[:MAX_TACTIC_CHARS] + "..."


def tactic_to_dict(tactic: Tactic) -> Dict[str, Any]:
    return {
        "tacticId": tactic.id,
        "battleId": tactic.battle_id,
        "tacticText": tactic.tactic_text,
        "isSynthetic": tactic.is_synthetic,
        "priority": tactic.priority,
        "isActive": tactic.is_active,
        "promotedBy": tactic.promoted_by,
        "promotedAt": iso(tactic.promoted_at),
    }


def list_tactics(db: Session, active_only: bool = True, limit: int = 100) -> List[Dict[str, Any]]:
    q = db.query(Tactic)
    if active_only:
        q = q.filter(Tactic.is_active.is_(True))
    rows = q.order_by(Tactic.priority.desc(), Tactic.promoted_at.desc(), Tactic.id.desc()).limit(limit).all()
    return [tactic_to_dict(t) for t in rows]
