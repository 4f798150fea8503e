# backend/governor/services/referee.py
"""
Referee client contract.

The judge itself is an external collaborator (see openai_service). This
module owns the shape of its scores, the dual success criterion, and the
aggregate statistics persona analytics is built on.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from governor.errors import ProviderError
from governor.models.battle import DOCUMENT_STATUSES

SCORE_FIELDS = {
    "referee_score": "refereeScore",
    "math_defense_score": "mathDefenseScore",
    "humanity_score": "humanityScore",
    "success_score": "successScore",
}


def _pick(data: Dict[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    if snake in data:
        return data[snake]
    return data.get(camel, default)


def _score(value: Any, name: str) -> Optional[float]:
    if value is None:
        return None
    try:
        return max(0.0, min(100.0, float(value)))
    except (TypeError, ValueError):
        raise ProviderError(f"Judge returned a non-numeric {name}: {value!r}")


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


@dataclass
class JudgeScores:
    referee_score: float
    math_defense_score: Optional[float] = None
    humanity_score: Optional[float] = None
    success_score: Optional[float] = None
    verbal_yes_to_price: bool = False
    document_status: str = "pending"
    feedback: Optional[str] = None
    winning_rebuttal: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JudgeScores":
        """
        Parse a judge response (snake_case or camelCase keys).

        Scores are clamped to 0-100. An unknown document status is read as
        "pending".

        Raises:
            ProviderError: refereeScore is missing or a score is not numeric.
        """
        if not isinstance(data, dict):
            raise ProviderError("Judge response is not an object")

        scores = {
            snake: _score(_pick(data, snake, camel), camel)
            for snake, camel in SCORE_FIELDS.items()
        }
        if scores["referee_score"] is None:
            raise ProviderError("Judge response has no refereeScore")

        document_status = str(_pick(data, "document_status", "documentStatus", "pending") or "pending").lower()
        if document_status not in DOCUMENT_STATUSES:
            document_status = "pending"

        return cls(
            verbal_yes_to_price=_flag(_pick(data, "verbal_yes_to_price", "verbalYesToPrice", False)),
            document_status=document_status,
            feedback=_pick(data, "feedback", "feedback"),
            winning_rebuttal=_pick(data, "winning_rebuttal", "winningRebuttal"),
            **scores,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "refereeScore": self.referee_score,
            "mathDefenseScore": self.math_defense_score,
            "humanityScore": self.humanity_score,
            "successScore": self.success_score,
            "verbalYesToPrice": self.verbal_yes_to_price,
            "documentStatus": self.document_status,
        }


def is_primary_success(result: Any) -> bool:
    """Seller said yes to the price."""
    return bool(getattr(result, "verbal_yes_to_price", False))


def is_ultimate_success(result: Any) -> bool:
    """Primary success and the contract was completed."""
    return is_primary_success(result) and getattr(result, "document_status", None) == "completed"


def aggregate_persona_stats(battles: Iterable[Any]) -> Dict[str, Any]:
    """
    Aggregate judged battles (rows or JudgeScores).

    Battles without a referee score are ignored.
    """
    total = 0
    primary = 0
    successful = 0
    score_sum = 0.0
    success_score_sum = 0.0
    success_score_n = 0

    for b in battles:
        if getattr(b, "referee_score", None) is None:
            continue
        total += 1
        score_sum += float(b.referee_score)
        if getattr(b, "success_score", None) is not None:
            success_score_sum += float(b.success_score)
            success_score_n += 1
        if is_primary_success(b):
            primary += 1
            if is_ultimate_success(b):
                successful += 1

    return {
        "totalBattles": total,
        "primarySuccesses": primary,
        "successfulBattles": successful,
        "successRate": round(successful / total * 100, 1) if total else 0.0,
        "averageScore": round(score_sum / total, 1) if total else 0.0,
        "averageSuccessScore": round(success_score_sum / success_score_n, 1) if success_score_n else 0.0,
    }
