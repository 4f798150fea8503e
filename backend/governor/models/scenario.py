# backend/governor/models/scenario.py

from sqlalchemy import Column, Integer, String, Float, DateTime, Text, JSON, ForeignKey

from governor.database import Base
from governor.utils.helpers import utcnow

SCENARIO_STATUSES = ("pending", "running", "solved", "exhausted")


class Scenario(Base):
    """
    A raw objection seeded into a synthesized persona and brute-forced.

    pending -> running -> solved | exhausted
    """

    __tablename__ = "scenarios"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    raw_objection = Column(Text, nullable=False)
    synthesized_persona_id = Column(Integer, ForeignKey("personas.id"), nullable=True)
    conflict_state = Column(JSON, nullable=True)
    status = Column(String(32), nullable=False, default="pending", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    best_score = Column(Float, nullable=True)
    winning_battle_id = Column(Integer, nullable=True)
    winning_transcript = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
