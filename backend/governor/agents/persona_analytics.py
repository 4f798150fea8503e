# backend/governor/agents/persona_analytics.py
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from governor.config import GovernorConfig
from governor.models.battle import Battle
from governor.models.persona import Persona
from governor.services.referee import aggregate_persona_stats
from governor.utils.helpers import iso, round1


def get_persona_analytics(db: Session) -> List[Dict[str, Any]]:
    """
    Per active persona success statistics, hardest to close first.

    Only judged battles count; failed battles have no referee score.
    """
    personas = db.query(Persona).filter(Persona.is_active.is_(True)).all()

    out = []
    for persona in personas:
        battles = (
            db.query(Battle)
            .filter(Battle.persona_id == persona.id, Battle.referee_score.isnot(None))
            .all()
        )
        stats = aggregate_persona_stats(battles)
        stats.update({
            "personaId": persona.id,
            "personaName": persona.name,
            "personaType": persona.persona_type,
        })
        out.append(stats)

    out.sort(key=lambda s: (s["successRate"], s["personaName"]))
    return out


def get_humanity_grades(db: Session, config: GovernorConfig, limit: int = 20, persona_id: Optional[int] = None) -> Dict[str, Any]:
    q = db.query(Battle).filter(Battle.humanity_grade.isnot(None))
    if persona_id is not None:
        q = q.filter(Battle.persona_id == persona_id)

    grades = [b.humanity_grade for b in q.all()]
    recent = q.order_by(Battle.created_at.desc(), Battle.id.desc()).limit(limit).all()

    return {
        "count": len(grades),
        "averageGrade": round1(sum(grades) / len(grades)) if grades else 0.0,
        "belowThreshold": sum(1 for g in grades if g < config.humanity_feedback_threshold),
        "threshold": config.humanity_feedback_threshold,
        "recent": [
            {
                "battleId": b.id,
                "personaId": b.persona_id,
                "humanityGrade": b.humanity_grade,
                "closenessToCline": b.closeness_to_cline,
                "createdAt": iso(b.created_at),
            }
            for b in recent
        ],
    }
