# backend/governor/models/battle.py

from sqlalchemy import Column, Integer, String, Float, DateTime, Text, JSON, Boolean, ForeignKey
from sqlalchemy.orm import relationship

from governor.database import Base
from governor.utils.helpers import utcnow

BATTLE_STATUSES = ("running", "completed", "pending_review", "reviewed", "promoted", "rejected")
DOCUMENT_STATUSES = ("pending", "sent", "completed")


class Battle(Base):
    """
    One simulated sales call between the closer policy and a persona.

    Inserted with status=running when the battle starts, updated once on
    completion, then optionally by the auditor (humanity fields) and by
    breakthrough review (status).
    """

    __tablename__ = "battles"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    persona_id = Column(Integer, ForeignKey("personas.id"), nullable=False, index=True)
    batch_id = Column(String(64), index=True)
    scenario_id = Column(Integer, ForeignKey("scenarios.id"), nullable=True, index=True)

    status = Column(String(32), nullable=False, default="running", index=True)
    transcript = Column(Text)

    # Judge-provided scores
    referee_score = Column(Float, nullable=True)
    math_defense_score = Column(Float, nullable=True)
    humanity_score = Column(Float, nullable=True)
    success_score = Column(Float, nullable=True)
    verbal_yes_to_price = Column(Boolean, nullable=False, default=False)
    document_status = Column(String(32), nullable=True)
    referee_feedback = Column(Text)
    winning_rebuttal = Column(Text)
    judge_model = Column(String(64))

    # Auditor-computed
    humanity_grade = Column(Float, nullable=True)
    closeness_to_cline = Column(Float, nullable=True)
    prosody_features = Column(JSON, nullable=True)
    robotic_gap_report = Column(JSON, nullable=True)

    # Breakthrough review
    breakthrough_detected_at = Column(DateTime, nullable=True, index=True)

    cost_usd = Column(Float, nullable=False, default=0.0)
    token_usage = Column(Integer, nullable=False, default=0)
    turns = Column(Integer, nullable=False, default=0)
    throttled = Column(Boolean, nullable=False, default=False)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    ended_at = Column(DateTime, nullable=True)

    persona = relationship("Persona", back_populates="battles")
