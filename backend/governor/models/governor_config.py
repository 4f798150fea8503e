# backend/governor/models/governor_config.py

from sqlalchemy import Column, String, DateTime, JSON

from governor.database import Base
from governor.utils.helpers import utcnow


class GovernorConfigEntry(Base):
    """Key/value config rows written at runtime (feedback adjustments, overrides)."""

    __tablename__ = "governor_config"

    key = Column(String(100), primary_key=True)
    value = Column(JSON, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
