# backend/tests/conftest.py
"""
Shared fixtures.

The environment is pinned before anything from `governor` is imported:
in-memory SQLite, no file logs, no rate limits, no real providers.
"""

import os

os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["GOVERNOR_FILE_LOGS"] = "0"
os.environ["RATE_LIMIT_ENABLED"] = "0"
os.environ["ENVIRONMENT"] = "test"
os.environ["GOVERNOR_ENV"] = "sandbox"
for _var in ("OPENAI_API_KEY", "SLACK_WEBHOOK_URL", "ADMIN_API_TOKEN"):
    os.environ.pop(_var, None)

import asyncio
import dataclasses
import hashlib
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest

from governor.agents.vocal_soul_auditor import audit_arena
from governor.config import load_governor_config
from governor.database import Base, SessionLocal, engine, init_db
from governor.errors import ProviderError
from governor.models.budget_ledger import BudgetLedgerEntry
from governor.models.persona import Persona
from governor.runtime import set_runtime
from governor.services.budget_ledger import ProviderUsage
from governor.services.budget_monitor import reservation_book
from governor.services.notifier import Notifier
from governor.services.openai_service import JudgeResult, PersonaDraft, SynthesisResult
from governor.services.referee import JudgeScores
from governor.utils import circuit_breaker


PLAIN_TRANSCRIPT = """Closer: Hi, this is Sam with the acquisitions team calling about the house on Maple Street.
Seller: Okay. What do you want to know?
Closer: How soon are you looking to sell, and what condition is the property in right now?
Seller: The roof is old and the kitchen needs work. I want to move by spring.
Closer: Based on recent sales and the repairs, we can offer one hundred eighty thousand in cash.
Seller: That is lower than I hoped but I understand the repairs.
Closer: We cover all closing costs and can close on your timeline. Does that work for you?
Seller: Yes, I think that works. Send me the agreement."""

TEXTURED_TRANSCRIPT = """Closer: Hi, [breath] this is Sam with the acquisitions team calling about the house on Maple Street.
Seller: Okay. What do you want to know?
Closer: Um, how soon are you looking to sell... and what condition is the property in right now? [pause]
Seller: The roof is old and the kitchen needs work. I want to move by spring.
Closer: [sigh] Based on recent sales and, uh, the repairs, we can offer one hundred eighty thousand in cash. [pause]
Seller: That is lower than I hoped but I understand the repairs.
Closer: [laughs] You know, we cover all closing costs and can close on your timeline. [pause] Does that work for you?
Seller: Yes, I think that works. Send me the agreement."""


# =============================================================================
# Fakes
# =============================================================================

class FakeNotifier(Notifier):
    """Records alerts instead of sending them."""

    def __init__(self):
        super().__init__(webhook_url="")
        self.sent: List[Dict[str, Any]] = []

    def notify(self, title, message, fields=None):
        self.sent.append({"title": title, "message": message, "fields": fields or {}})


class FakeCollaborator:
    """
    Deterministic synthesis/judge collaborator.

    referee_scores are consumed one per judge call (70.0 once exhausted).
    """

    def __init__(
        self,
        referee_scores: Optional[List[float]] = None,
        transcript: str = PLAIN_TRANSCRIPT,
        cost: float = 0.01,
        fail_for: tuple = (),
        delay: float = 0.0,
        on_synthesize=None,
        document_status: str = "completed",
    ):
        self.referee_scores = list(referee_scores or [])
        self.transcript = transcript
        self.cost = cost
        self.fail_for = set(fail_for)
        self.delay = delay
        self.on_synthesize = on_synthesize
        self.document_status = document_status
        self.synth_calls: List[Dict[str, Any]] = []
        self.judge_models: List[str] = []
        self.persona_requests: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def synthesize(self, persona, options):
        self.synth_calls.append({"persona_id": persona["id"], "options": options})
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.on_synthesize is not None:
                self.on_synthesize(persona, options)
            await asyncio.sleep(self.delay)
            if persona["id"] in self.fail_for:
                raise ProviderError("synthetic provider outage")
            return SynthesisResult(
                transcript=self.transcript,
                turns=8,
                usage=ProviderUsage("openai", "gpt-4o", 100, 200, cost_usd=self.cost),
            )
        finally:
            self.in_flight -= 1

    async def judge(self, transcript, model):
        self.judge_models.append(model)
        score = self.referee_scores.pop(0) if self.referee_scores else 70.0
        scores = JudgeScores(
            referee_score=score,
            math_defense_score=score,
            humanity_score=score,
            success_score=score,
            verbal_yes_to_price=score >= 80,
            document_status=self.document_status if score >= 80 else "pending",
        )
        return JudgeResult(
            scores=scores,
            model=model,
            usage=ProviderUsage("openai", model, 50, 50, cost_usd=self.cost),
        )

    async def synthesize_persona(self, raw_objection, base_persona=None):
        self.persona_requests.append(raw_objection)
        return PersonaDraft(
            name="Scenario Seller",
            persona_type="scenario",
            description=raw_objection,
            system_prompt="Stay firm on the objection until it is genuinely resolved.",
            conflict_state={
                "objection": raw_objection,
                "emotionalState": "guarded",
                "underlyingConcern": "being lowballed",
                "blockers": ["price"],
                "resolutionCriteria": ["clear math on repairs"],
            },
            usage=ProviderUsage("openai", "gpt-4o-mini", 20, 40, cost_usd=0.001),
        )


class FakeEmbedder:
    """Bag-of-words hashing embedder: identical text -> identical vector."""

    model = "fake-embedding"

    def __init__(self, dims: int = 256, fail: bool = False):
        self.dims = dims
        self.fail = fail
        self.calls = 0
        self.last_usage: Optional[ProviderUsage] = None

    async def embed(self, texts):
        self.calls += 1
        if self.fail:
            raise ProviderError("embedding provider outage")
        vectors = []
        for text in texts:
            v = [0.0] * self.dims
            for token in re.findall(r"[a-z']+", text.lower()):
                v[int(hashlib.md5(token.encode()).hexdigest(), 16) % self.dims] += 1.0
            vectors.append(v)
        self.last_usage = ProviderUsage("openai", self.model, input_tokens=10, cost_usd=0.0)
        return vectors


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def fresh_state():
    """Empty schema and process-wide registries for every test."""
    Base.metadata.drop_all(bind=engine)
    init_db()
    reservation_book.clear()
    audit_arena.clear()
    circuit_breaker._breakers.clear()
    set_runtime(None)
    yield
    reservation_book.clear()
    audit_arena.clear()
    set_runtime(None)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_config():
    base = load_governor_config()

    def _make(**overrides):
        return dataclasses.replace(base, **overrides)

    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def make_persona(db):
    def _make(name: str = "Motivated Mike", persona_type: str = "standard", is_active: bool = True, **params):
        persona = Persona(
            name=name,
            persona_type=persona_type,
            description=f"{name} test persona",
            is_active=is_active,
            behavior_params=dict(params),
        )
        db.add(persona)
        db.commit()
        return persona

    return _make


@pytest.fixture
def add_spend(db):
    def _add(amount: float, at: Optional[datetime] = None, env: str = "sandbox", provider: str = "openai"):
        entry = BudgetLedgerEntry(provider=provider, model="gpt-4o", cost_usd=amount, env=env, entry_metadata={})
        if at is not None:
            entry.created_at = at
        db.add(entry)
        db.commit()
        return entry

    return _add


@pytest.fixture
def make_runtime(config, notifier):
    """Full runtime wired to fakes. Only the database is real."""
    from governor.runtime import build_runtime

    def _make(collaborator=None, embedder=None, governor_config=None):
        return build_runtime(
            governor_config or config,
            collaborator=collaborator or FakeCollaborator(),
            embedder=embedder if embedder is not None else FakeEmbedder(),
            notifier=notifier,
        )

    return _make
