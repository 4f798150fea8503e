# backend/governor/agents/gate_checker.py
"""
Script adherence checker.

Embeds a live transcript and compares it (cosine similarity) with the
reference embedding of each ordered script gate. The recommended gate only
advances by one, and only when the current gate is clearly covered.

If the gate index is missing or the embedder fails the checker returns an
all-zero result with a `warning` instead of raising.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from governor.database import safe_commit
from governor.errors import GovernorError, PersistenceError
from governor.models.script_gate import ScriptGate
from governor.services.budget_ledger import BudgetLedger
from governor.services.openai_service import Embedder
from governor.utils.helpers import utcnow
from governor.utils.logger import logger
from governor.utils.similarity import cosine_similarity

DEFAULT_ADVANCE_THRESHOLD = 0.75

# (gate number, gate name, reference text)
ACQUISITION_GATES: List[Tuple[int, str, str]] = [
    (1, "Intro (Contact/Credibility)",
     "Hi, this is the acquisitions team calling about your property. We buy houses directly, "
     "as-is, with no agent fees. Is now a good time to talk for a couple of minutes?"),
    (2, "Fact Find - Motivation",
     "What has you thinking about selling? If we bought the house, where would you be moving, "
     "and how soon would you need to be out?"),
    (3, "Fact Find - Condition",
     "Tell me about the condition of the house. How old is the roof, the HVAC and the water heater? "
     "Any foundation, plumbing or electrical issues we should know about?"),
    (4, "Transition to Numbers",
     "Thanks, that helps. If it makes sense, I would like to walk through some numbers with you. "
     "Do you have a price in mind for the property?"),
    (5, "Running Comps / Hold",
     "Let me pull up recent sales in your neighborhood. Can you hold for a moment while I run the comps "
     "and factor in the repairs?"),
    (6, "The Offer",
     "Based on the comps and the repairs needed, we can offer a cash price, close on your timeline, "
     "and cover all closing costs."),
    (7, "The Close - Expectations",
     "Here is what happens next: I send over a simple purchase agreement, our inspector walks the "
     "property, and title handles the closing."),
    (8, "Final Commitment",
     "If I send the agreement over right now, are you ready to sign it today so we can lock in "
     "your closing date?"),
]

DISPOSITION_GATES: List[Tuple[int, str, str]] = [
    (1, "The Intro (Value Proposition)",
     "Hi, I have an off-market investment property under contract that fits your buy box. "
     "Do you have a minute to hear the numbers?"),
    (2, "Fact Find (ARV & Condition)",
     "The after-repair value is supported by recent comps. Here is the condition, the rehab "
     "estimate, and what the house needs."),
    (3, "The Pitch (Neighborhood Context)",
     "The neighborhood has strong rental demand, good schools, and recent flips sold quickly "
     "on the same street."),
    (4, "The Offer (Timeline & Terms)",
     "The assignment price is fixed, we need earnest money deposited within two days, and "
     "closing is in two weeks."),
    (5, "The Close (Agreement & Next Steps)",
     "If the numbers work for you, I will send the assignment agreement now and schedule the "
     "walkthrough for tomorrow."),
]

SCRIPT_GATES: Dict[str, List[Tuple[int, str, str]]] = {
    "acquisition": ACQUISITION_GATES,
    "disposition": DISPOSITION_GATES,
}


class GateIndexUnavailable(GovernorError):
    """No usable gate embeddings are stored for this mode."""
    pass


@dataclass
class GateMatch:
    gate: int
    name: str
    similarity: float

    def to_dict(self) -> Dict[str, Any]:
        return {"gate": self.gate, "name": self.name, "similarity": round(self.similarity, 4)}


@dataclass
class AdherenceResult:
    mode: str
    gates: List[GateMatch]
    adherence_score: int
    recommended_gate: int
    current_gate: Optional[int] = None
    warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "mode": self.mode,
            "gates": [g.to_dict() for g in self.gates],
            "adherenceScore": self.adherence_score,
            "recommendedGate": self.recommended_gate,
            "currentGate": self.current_gate,
        }
        if self.warning:
            out["warning"] = self.warning
        return out


def _gate_defs(mode: str) -> List[Tuple[int, str, str]]:
    if mode not in SCRIPT_GATES:
        raise ValueError(f"Unknown script mode {mode!r}; expected one of {sorted(SCRIPT_GATES)}")
    return SCRIPT_GATES[mode]


class GateIndex:
    """Ordered gate reference embeddings for one mode."""

    def __init__(self, mode: str, entries: Sequence[Tuple[int, str, List[float]]]):
        self.mode = mode
        self.entries = sorted(entries, key=lambda e: e[0])

    @classmethod
    def load(cls, db: Session, mode: str) -> "GateIndex":
        expected = _gate_defs(mode)
        rows = db.query(ScriptGate).filter(ScriptGate.mode == mode).all()
        by_number = {r.gate_number: r for r in rows if r.embedding}
        missing = [n for n, _, _ in expected if n not in by_number]
        if missing:
            raise GateIndexUnavailable(f"No embeddings stored for {mode} gates {missing}")
        return cls(mode, [(n, by_number[n].gate_name, list(by_number[n].embedding)) for n, _, _ in expected])

    def __len__(self) -> int:
        return len(self.entries)

    def match(self, vector: Sequence[float]) -> List[GateMatch]:
        return [GateMatch(gate=n, name=name, similarity=cosine_similarity(vector, emb)) for n, name, emb in self.entries]


def recommend_gate(matches: List[GateMatch], current_gate: Optional[int], threshold: float) -> int:
    """
    Advance one gate if the current one is covered, otherwise hold.

    Without a current gate the best-matching gate is returned (lowest number
    on ties, gate 1 when nothing matches).
    """
    if not matches:
        return current_gate or 1
    last = max(m.gate for m in matches)

    if current_gate is not None:
        current = next((m for m in matches if m.gate == current_gate), None)
        if current is not None and current.similarity > threshold:
            return min(last, current_gate + 1)
        return current_gate

    best = max(matches, key=lambda m: (m.similarity, -m.gate))
    return best.gate if best.similarity > 0 else 1


class GateChecker:
    def __init__(
        self,
        embedder: Optional[Embedder],
        advance_threshold: float = DEFAULT_ADVANCE_THRESHOLD,
        ledger: Optional[BudgetLedger] = None,
    ):
        self.embedder = embedder
        self.advance_threshold = advance_threshold
        self.ledger = ledger

    def _record_usage(self, db: Session, kind: str, mode: str) -> None:
        usage = getattr(self.embedder, "last_usage", None)
        if self.ledger is None or usage is None:
            return
        try:
            self.ledger.record_usage(db, usage, metadata={"type": kind, "mode": mode})
        except GovernorError as e:
            logger.error(f"[GateChecker] Could not record embedding spend: {e}")

    def _degraded(self, mode: str, current_gate: Optional[int], warning: str) -> AdherenceResult:
        logger.warning(f"[GateChecker] Degraded result for {mode}: {warning}")
        return AdherenceResult(
            mode=mode,
            gates=[GateMatch(gate=n, name=name, similarity=0.0) for n, name, _ in _gate_defs(mode)],
            adherence_score=0,
            recommended_gate=current_gate or 1,
            current_gate=current_gate,
            warning=warning,
        )

    async def check_adherence(
        self,
        db: Session,
        transcript: str,
        current_gate: Optional[int] = None,
        mode: str = "acquisition",
    ) -> AdherenceResult:
        """
        Raises:
            ValueError: unknown mode or a current gate outside the script
        """
        defs = _gate_defs(mode)
        if current_gate is not None and not 1 <= current_gate <= len(defs):
            raise ValueError(f"current_gate must be within 1-{len(defs)} for {mode}")

        if self.embedder is None:
            return self._degraded(mode, current_gate, "similarity index unavailable: no embedder configured")

        try:
            index = GateIndex.load(db, mode)
        except GateIndexUnavailable as e:
            return self._degraded(mode, current_gate, f"similarity index unavailable: {e}")

        if not transcript or not transcript.strip():
            return self._degraded(mode, current_gate, "empty transcript")

        try:
            vectors = await self.embedder.embed([transcript])
        except GovernorError as e:
            return self._degraded(mode, current_gate, f"similarity index unavailable: {e}")
        if not vectors:
            return self._degraded(mode, current_gate, "similarity index unavailable: embedder returned nothing")
        self._record_usage(db, "gate_check", mode)

        matches = index.match(vectors[0])
        mean = sum(m.similarity for m in matches) / len(matches)
        recommended = recommend_gate(matches, current_gate, self.advance_threshold)

        logger.debug(f"[GateChecker] {mode} current={current_gate} -> recommended={recommended}")
        return AdherenceResult(
            mode=mode,
            gates=matches,
            adherence_score=int(round(mean * 100)),
            recommended_gate=recommended,
            current_gate=current_gate,
        )

    async def seed_gates(self, db: Session, mode: str) -> int:
        """
        Embed the reference text of every gate in `mode` and upsert the index.

        Raises:
            ProviderError: the embedder failed
            PersistenceError: the rows could not be committed
        """
        defs = _gate_defs(mode)
        if self.embedder is None:
            raise GateIndexUnavailable("No embedder configured")

        vectors = await self.embedder.embed([text for _, _, text in defs])
        self._record_usage(db, "gate_embedding", mode)
        existing = {r.gate_number: r for r in db.query(ScriptGate).filter(ScriptGate.mode == mode).all()}

        for (number, name, text), vector in zip(defs, vectors):
            row = existing.get(number) or ScriptGate(mode=mode, gate_number=number)
            row.gate_name = name
            row.reference_text = text
            row.embedding = list(vector)
            row.embedding_model = getattr(self.embedder, "model", None)
            row.updated_at = utcnow()
            db.add(row)

        ok, err = safe_commit(db, f"seed {mode} gates")
        if not ok:
            raise PersistenceError(err or f"seeding {mode} gates failed")

        logger.info(f"[GateChecker] Seeded {len(defs)} {mode} gates with {getattr(self.embedder, 'model', '?')}")
        return len(defs)
