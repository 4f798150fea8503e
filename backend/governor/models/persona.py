# backend/governor/models/persona.py

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Boolean
from sqlalchemy.orm import relationship

from governor.database import Base
from governor.utils.helpers import utcnow


class Persona(Base):
    """
    Counterpart profile used to play the seller side of a battle.

    behavior_params is a free-form bag. The auditor's feedback loop owns the
    "acoustic_texture_frequency" entry. Personas are deactivated, never deleted.
    """

    __tablename__ = "personas"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(255), nullable=False, index=True)
    persona_type = Column(String(100), nullable=False, default="standard")
    description = Column(Text)
    system_prompt = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    behavior_params = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True, onupdate=utcnow)

    battles = relationship("Battle", back_populates="persona")
