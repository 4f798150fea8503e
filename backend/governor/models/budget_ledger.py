# backend/governor/models/budget_ledger.py

from sqlalchemy import Column, Integer, String, Float, DateTime, JSON, Index

from governor.database import Base
from governor.utils.helpers import utcnow


class BudgetLedgerEntry(Base):
    """
    Append-only record of provider spend.

    Rows are never updated or deleted; the budget monitor sums them.
    created_at is always naive UTC.
    """

    __tablename__ = "budget_ledger"
    __table_args__ = (Index("ix_budget_ledger_env_created", "env", "created_at"),)

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    provider = Column(String(50), nullable=False, index=True)  # openai / vapi / elevenlabs
    model = Column(String(100), nullable=True)
    input_tokens = Column(Integer, nullable=True)
    output_tokens = Column(Integer, nullable=True)
    duration_minutes = Column(Float, nullable=True)
    cost_usd = Column(Float, nullable=False)
    env = Column(String(32), nullable=False, default="sandbox")
    entry_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
