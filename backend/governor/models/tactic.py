# backend/governor/models/tactic.py

from sqlalchemy import Column, Integer, Text, Boolean, DateTime, ForeignKey

from governor.database import Base
from governor.utils.helpers import utcnow


class Tactic(Base):
    """A winning rebuttal lifted from a promoted breakthrough battle."""

    __tablename__ = "tactics"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    battle_id = Column(Integer, ForeignKey("battles.id"), nullable=False, unique=True, index=True)
    tactic_text = Column(Text, nullable=False)
    is_synthetic = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=5)
    is_active = Column(Boolean, nullable=False, default=False, index=True)
    promoted_by = Column(Text, nullable=True)
    promoted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
