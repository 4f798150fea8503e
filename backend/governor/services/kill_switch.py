# backend/governor/services/kill_switch.py
"""
Kill Switch.

The flag is a single database row (id=1), so every scheduler sharing the
database sees the same state and it survives restarts. It is advisory:
schedulers check it at the loop head, in-flight battles are never cancelled.
It never deactivates itself.
"""

from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from governor.database import safe_commit
from governor.errors import PersistenceError
from governor.models.kill_switch import KILL_SWITCH_ROW_ID, KillSwitchState
from governor.services.notifier import Notifier
from governor.utils.helpers import iso, utcnow
from governor.utils.logger import logger


class KillSwitch:
    def __init__(self, notifier: Optional[Notifier] = None):
        self.notifier = notifier or Notifier()

    def _row(self, db: Session) -> KillSwitchState:
        row = db.get(KillSwitchState, KILL_SWITCH_ROW_ID)
        if row is not None:
            return row

        row = KillSwitchState(id=KILL_SWITCH_ROW_ID, active=False)
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            # another process created it first
            db.rollback()
            row = db.get(KillSwitchState, KILL_SWITCH_ROW_ID)
        return row

    def is_active(self, db: Session) -> bool:
        row = db.get(KillSwitchState, KILL_SWITCH_ROW_ID)
        if row is None:
            return False
        db.refresh(row)
        return bool(row.active)

    def activate(self, db: Session, reason: str, activated_by: str = "system") -> KillSwitchState:
        """
        Activate the switch.

        Idempotent: on an already-active switch only `reason` is updated and
        the first `activated_at` is kept. The notification fires only on the
        inactive -> active transition.
        """
        row = self._row(db)
        db.refresh(row)
        was_active = bool(row.active)

        if was_active:
            if row.reason != reason:
                row.reason = reason
        else:
            row.active = True
            row.activated_at = utcnow()
            row.reason = reason
            row.activated_by = activated_by
            row.deactivated_at = None

        ok, err = safe_commit(db, "kill switch activate")
        if not ok:
            raise PersistenceError(err or "kill switch activate failed")

        if not was_active:
            logger.error(f"[KillSwitch] ACTIVATED by {activated_by}: {reason}")
            try:
                self.notifier.kill_switch_activated(reason, activated_by)
            except Exception as e:
                logger.error(f"[KillSwitch] Notification failed: {e}")
        else:
            logger.info(f"[KillSwitch] Already active; reason now: {reason}")
        return row

    def deactivate(self, db: Session, deactivated_by: str = "admin") -> KillSwitchState:
        row = self._row(db)
        db.refresh(row)
        if not row.active:
            return row

        row.active = False
        row.deactivated_at = utcnow()
        ok, err = safe_commit(db, "kill switch deactivate")
        if not ok:
            raise PersistenceError(err or "kill switch deactivate failed")

        logger.warning(f"[KillSwitch] Deactivated by {deactivated_by}")
        return row

    def status(self, db: Session) -> Dict[str, Any]:
        row = self._row(db)
        db.refresh(row)
        return {
            "active": bool(row.active),
            "activatedAt": iso(row.activated_at),
            "reason": row.reason,
            "activatedBy": row.activated_by,
            "deactivatedAt": iso(row.deactivated_at),
        }
