# backend/governor/models/script_gate.py

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, UniqueConstraint

from governor.database import Base
from governor.utils.helpers import utcnow


class ScriptGate(Base):
    """Reference text and embedding for one ordered stage of a sales script."""

    __tablename__ = "script_gates"
    __table_args__ = (UniqueConstraint("mode", "gate_number", name="uq_script_gates_mode_gate"),)

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    mode = Column(String(32), nullable=False, index=True)  # acquisition / disposition
    gate_number = Column(Integer, nullable=False)
    gate_name = Column(String(255), nullable=False)
    reference_text = Column(Text, nullable=False)
    embedding = Column(JSON, nullable=True)
    embedding_model = Column(String(100), nullable=True)

    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
