# backend/governor/agents/vocal_soul_auditor.py
"""
Vocal Soul Auditor
==================

Grades how human a battle transcript's delivery reads, compared with a
gold-standard delivery profile.

The feature names (pitch_variance, jitter, shimmer, ...) are heuristic labels
computed from transcript markup, not signal-processing outputs. Extraction is
a pluggable strategy; only the contract holds: a 0-100 grade plus a
structured feature report.

Feedback loop: a grade below the threshold raises the persona's
acoustic-texture dial by a fixed delta (capped) for the next N sessions.
Repeated low grades re-arm the same N sessions, they do not stack.
"""

import re
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy.orm import Session

from governor.config import GovernorConfig
from governor.database import safe_commit
from governor.errors import EmptyTranscriptError, PersistenceError
from governor.models.battle import Battle
from governor.models.persona import Persona
from governor.utils.helpers import iso, merge_params, round1, utcnow
from governor.utils.logger import logger

TEXTURE_PARAM = "acoustic_texture_frequency"

# feature -> category used for the weighted grade
FEATURE_CATEGORIES: Dict[str, str] = {
    "pitch_variance": "pitch_rhythm",
    "rhythm_variability": "pitch_rhythm",
    "pitch_range": "pitch_rhythm",
    "speech_rate": "pitch_rhythm",
    "jitter": "jitter_shimmer",
    "shimmer": "jitter_shimmer",
    "average_pause_duration": "pause_texture",
    "texture_density": "pause_texture",
}

CATEGORY_ADVICE: Dict[str, str] = {
    "pitch_rhythm": "Vary pitch and pacing: mix short and long sentences, ask rhetorical questions.",
    "jitter_shimmer": "Add natural voice instability: hesitations, self-corrections, audible breaths.",
    "pause_texture": "Use deliberate pauses before numbers and after questions.",
}


# =============================================================================
# Feature extraction
# =============================================================================

class ProsodyStrategy(Protocol):
    name: str

    def extract(self, transcript: str) -> Dict[str, float]: ...


PAUSE_RE = re.compile(r"\[(long pause|pause|beat|silence)\]|\.\.\.", re.IGNORECASE)
CUE_RE = re.compile(
    r"\[(breath|breathes|inhale|exhale|sigh|sighs|laugh|laughs|chuckle|chuckles|clears throat)\]",
    re.IGNORECASE,
)
FILLER_RE = re.compile(r"\b(um+|uh+|er+|hmm+|you know|i mean)\b", re.IGNORECASE)
BRACKET_RE = re.compile(r"\[[^\]]*\]")
SPEAKER_RE = re.compile(r"^\s*[A-Za-z ]{1,20}:\s*", re.MULTILINE)
WORD_RE = re.compile(r"[A-Za-z0-9']+")

PAUSE_SECONDS = {"long pause": 2.0, "pause": 0.8, "beat": 0.5, "silence": 2.5, "...": 0.5}


class HeuristicProsodyStrategy:
    """
    Counts pause, filler and acoustic-cue markers and normalises them by the
    estimated speaking time (words / words-per-minute).
    """

    name = "heuristic_markup"

    def __init__(self, words_per_minute: float = 150.0):
        self.words_per_minute = words_per_minute

    def extract(self, transcript: str) -> Dict[str, float]:
        text = SPEAKER_RE.sub("", transcript or "")

        pause_seconds: List[float] = []
        for m in PAUSE_RE.finditer(text):
            key = (m.group(1) or "...").lower()
            pause_seconds.append(PAUSE_SECONDS.get(key, 0.8))
        cues = len(CUE_RE.findall(text))
        fillers = len(FILLER_RE.findall(text))

        words = len(WORD_RE.findall(BRACKET_RE.sub(" ", text)))
        minutes = max(words / self.words_per_minute, 1.0 / 60)

        p = len(pause_seconds) / minutes
        f = fillers / minutes
        c = cues / minutes
        pause_total = sum(pause_seconds)

        return {
            "pitch_variance": min(1.0, 0.1 * (c + f)),
            "rhythm_variability": min(1.0, 0.1 * (p + f)),
            "jitter": min(1.0, 0.06 * f + 0.03 * c),
            "shimmer": min(1.0, 0.06 * c + 0.02 * p),
            "average_pause_duration": pause_total / len(pause_seconds) if pause_seconds else 0.0,
            "speech_rate": words / (minutes + pause_total / 60),
            "pitch_range": min(16.0, 2.0 + 0.6 * (c + f)),
            "texture_density": p + f + c,
        }


# =============================================================================
# Gap report
# =============================================================================

@dataclass
class GapReport:
    humanity_grade: float
    closeness_to_cline: float
    prosody_features: Dict[str, float]
    feature_gaps: Dict[str, float]
    category_gaps: Dict[str, float]
    recommendations: List[str] = field(default_factory=list)
    strategy: str = HeuristicProsodyStrategy.name

    def to_dict(self) -> Dict[str, Any]:
        return {
            "humanityGrade": self.humanity_grade,
            "closenessToCline": self.closeness_to_cline,
            "prosodyFeatures": self.prosody_features,
            "featureGaps": self.feature_gaps,
            "categoryGaps": self.category_gaps,
            "recommendations": self.recommendations,
            "strategy": self.strategy,
        }


def compare_to_gold(
    features: Dict[str, float],
    gold: Dict[str, float],
    weights: Dict[str, float],
) -> GapReport:
    """Weighted absolute-difference gap against the gold standard."""
    feature_gaps: Dict[str, float] = {}
    for name, target in gold.items():
        value = float(features.get(name, 0.0))
        scale = abs(target) if target else 1.0
        feature_gaps[name] = min(1.0, abs(value - target) / scale)

    grouped: Dict[str, List[float]] = {}
    for name, gap in feature_gaps.items():
        grouped.setdefault(FEATURE_CATEGORIES.get(name, "pause_texture"), []).append(gap)
    category_gaps = {cat: sum(g) / len(g) for cat, g in grouped.items()}

    total_weight = sum(weights.get(cat, 0.0) for cat in category_gaps) or 1.0
    weighted_gap = sum(weights.get(cat, 0.0) * gap for cat, gap in category_gaps.items()) / total_weight
    closeness = 1.0 - sum(feature_gaps.values()) / len(feature_gaps) if feature_gaps else 0.0

    recommendations = [
        CATEGORY_ADVICE[cat] for cat, gap in sorted(category_gaps.items(), key=lambda kv: -kv[1])
        if gap > 0.25 and cat in CATEGORY_ADVICE
    ]
    texture = features.get("texture_density", 0.0)
    texture_gold = gold.get("texture_density", 0.0)
    if texture_gold and texture < texture_gold * 0.75:
        recommendations.append(
            f"Raise acoustic texture: {texture:.1f} cues/min vs {texture_gold:.1f} in the gold standard."
        )
    elif texture_gold and texture > texture_gold * 1.5:
        recommendations.append(
            f"Reduce acoustic texture: {texture:.1f} cues/min reads as scripted over-acting."
        )

    return GapReport(
        humanity_grade=round1(100 * (1 - weighted_gap)),
        closeness_to_cline=round1(100 * closeness),
        prosody_features={k: round(v, 4) for k, v in features.items()},
        feature_gaps={k: round(v, 4) for k, v in feature_gaps.items()},
        category_gaps={k: round(v, 4) for k, v in category_gaps.items()},
        recommendations=recommendations,
    )


# =============================================================================
# Audit arena (per-battle audit state)
# =============================================================================

MAX_AUDIT_SESSIONS = 1000
STALE_SESSION_SECONDS = 3600


@dataclass
class AuditSession:
    battle_id: int
    persona_id: Optional[int]
    texture_frequency: float
    opened_at: datetime = field(default_factory=utcnow)
    report: Optional[GapReport] = None


class AuditArena:
    """
    Per-battle audit state keyed by battle id.

    Opened when a battle starts and closed when it ends (in a finally block),
    so the map only ever holds in-flight battles.
    """

    def __init__(self, max_sessions: int = MAX_AUDIT_SESSIONS):
        self.max_sessions = max_sessions
        self._sessions: Dict[int, AuditSession] = {}
        self._lock = threading.Lock()

    def open(self, battle_id: int, persona_id: Optional[int] = None, texture_frequency: float = 0.0) -> AuditSession:
        with self._lock:
            if battle_id not in self._sessions and len(self._sessions) >= self.max_sessions:
                self._drop_stale()
            session = AuditSession(battle_id=battle_id, persona_id=persona_id, texture_frequency=texture_frequency)
            self._sessions[battle_id] = session
            return session

    def get(self, battle_id: int) -> Optional[AuditSession]:
        with self._lock:
            return self._sessions.get(battle_id)

    def close(self, battle_id: int) -> None:
        with self._lock:
            self._sessions.pop(battle_id, None)

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def clear(self) -> int:
        with self._lock:
            n = len(self._sessions)
            self._sessions.clear()
            return n

    def _drop_stale(self) -> int:
        now = utcnow()
        stale = [
            bid for bid, s in self._sessions.items()
            if (now - s.opened_at).total_seconds() > STALE_SESSION_SECONDS
        ]
        for bid in stale:
            del self._sessions[bid]
        if stale:
            logger.warning(f"[VocalSoul] Dropped {len(stale)} stale audit sessions")
        return len(stale)


audit_arena = AuditArena()


def get_audit_session_count() -> int:
    return audit_arena.count()


async def cleanup_all_audit_sessions() -> int:
    """Clear all audit sessions. Called at shutdown."""
    return audit_arena.clear()


# =============================================================================
# Texture dial
# =============================================================================

def consume_texture_frequency(db: Session, persona: Persona, config: GovernorConfig) -> float:
    """
    Read the persona's acoustic-texture dial for one battle.

    An active adjustment is used and its sessions_remaining decremented; when
    it reaches zero the dial reverts to base.
    """
    params = persona.behavior_params or {}
    dial = params.get(TEXTURE_PARAM)
    if not isinstance(dial, dict):
        return config.texture_frequency_base

    base = float(dial.get("base", config.texture_frequency_base))
    remaining = int(dial.get("sessions_remaining", 0) or 0)
    if remaining <= 0:
        return base

    value = float(dial.get("adjusted", base))
    remaining -= 1
    updated = dict(dial, sessions_remaining=remaining)
    if remaining == 0:
        updated["adjusted"] = base
        logger.info(f"[VocalSoul] Persona {persona.id} texture adjustment expired; back to {base:.2f}")

    persona.behavior_params = merge_params(params, **{TEXTURE_PARAM: updated})
    ok, err = safe_commit(db, "texture dial consume")
    if not ok:
        raise PersistenceError(err or "texture dial consume failed")
    return value


# =============================================================================
# Auditor
# =============================================================================

class VocalSoulAuditor:
    def __init__(self, config: GovernorConfig, strategy: Optional[ProsodyStrategy] = None):
        self.config = config
        self.strategy = strategy or HeuristicProsodyStrategy(words_per_minute=config.words_per_minute)

    def analyze(self, transcript: str) -> GapReport:
        """Grade a transcript without touching the database."""
        if not transcript or not transcript.strip():
            raise EmptyTranscriptError("Cannot audit an empty transcript")
        features = self.strategy.extract(transcript)
        report = compare_to_gold(features, self.config.gold_standard, self.config.category_weights)
        report.strategy = getattr(self.strategy, "name", type(self.strategy).__name__)
        return report

    def audit(self, db: Session, transcript: str, battle_id: int) -> GapReport:
        """
        Grade a battle, persist the report on its row, and run the feedback loop.

        Raises:
            EmptyTranscriptError: blank transcript (nothing is written)
            LookupError: unknown battle id
            PersistenceError: the grade could not be committed
        """
        report = self.analyze(transcript)

        battle = db.get(Battle, battle_id)
        if battle is None:
            raise LookupError(f"Battle {battle_id} not found")

        battle.humanity_grade = report.humanity_grade
        battle.closeness_to_cline = report.closeness_to_cline
        battle.prosody_features = report.prosody_features
        battle.robotic_gap_report = {
            "featureGaps": report.feature_gaps,
            "categoryGaps": report.category_gaps,
            "recommendations": report.recommendations,
            "strategy": report.strategy,
            "auditedAt": iso(utcnow()),
        }
        ok, err = safe_commit(db, f"audit battle {battle_id}")
        if not ok:
            raise PersistenceError(err or f"audit of battle {battle_id} failed")

        session = audit_arena.get(battle_id)
        if session is not None:
            session.report = report

        logger.info(
            f"[VocalSoul] Battle {battle_id}: grade {report.humanity_grade} "
            f"closeness {report.closeness_to_cline}%"
        )

        if report.humanity_grade < self.config.humanity_feedback_threshold and battle.persona is not None:
            self.apply_feedback(db, battle.persona, report.humanity_grade)
        return report

    def apply_feedback(self, db: Session, persona: Persona, grade: float) -> Dict[str, Any]:
        """Raise the persona's texture dial by one delta, capped, for the next N sessions."""
        cfg = self.config
        params = persona.behavior_params or {}
        dial = params.get(TEXTURE_PARAM) if isinstance(params.get(TEXTURE_PARAM), dict) else {}

        base = float(dial.get("base", cfg.texture_frequency_base))
        current = float(dial.get("adjusted", base)) if dial.get("sessions_remaining") else base
        adjusted = min(cfg.texture_frequency_max, current + cfg.texture_frequency_delta)

        updated = {
            "base": base,
            "adjusted": round(adjusted, 4),
            "sessions_remaining": cfg.texture_feedback_sessions,
            "last_grade": grade,
            "updated_at": iso(utcnow()),
        }
        persona.behavior_params = merge_params(params, **{TEXTURE_PARAM: updated})
        ok, err = safe_commit(db, f"texture feedback persona {persona.id}")
        if not ok:
            raise PersistenceError(err or "texture feedback failed")

        logger.info(
            f"[VocalSoul] Persona {persona.id} grade {grade} < {cfg.humanity_feedback_threshold}: "
            f"texture {current:.2f} -> {adjusted:.2f} for {cfg.texture_feedback_sessions} sessions"
        )
        return updated
