# backend/governor/models/kill_switch.py

from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text

from governor.database import Base

KILL_SWITCH_ROW_ID = 1


class KillSwitchState(Base):
    """
    Shared safety flag. Exactly one row (id=1) so every scheduler process
    reading the same database sees the same state.
    """

    __tablename__ = "kill_switch_state"

    id = Column(Integer, primary_key=True, default=KILL_SWITCH_ROW_ID)
    active = Column(Boolean, nullable=False, default=False)
    activated_at = Column(DateTime, nullable=True)
    reason = Column(Text, nullable=True)
    activated_by = Column(String(255), nullable=True)
    deactivated_at = Column(DateTime, nullable=True)
