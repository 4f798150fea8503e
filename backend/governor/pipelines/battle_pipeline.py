# backend/governor/pipelines/battle_pipeline.py
"""
One battle end-to-end:

  insert Battle (running) -> synthesize transcript -> judge -> update Battle
  (completed) -> audit (unless throttled)

Each provider call is written to the budget ledger as soon as it returns, so
spend is recorded even when a later step fails. A battle that fails after
its row exists is finalised with `error` set and no scores.

Sessions are never held across an await with uncommitted writes.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from governor.agents.vocal_soul_auditor import VocalSoulAuditor, audit_arena, consume_texture_frequency
from governor.config import GovernorConfig
from governor.database import SessionLocal, safe_commit
from governor.errors import EmptyTranscriptError, GovernorError, PersistenceError
from governor.models.battle import Battle
from governor.models.persona import Persona
from governor.services.budget_ledger import BudgetLedger, ProviderUsage
from governor.services.openai_service import BattleCollaborator, SynthesisOptions
from governor.utils.helpers import utcnow
from governor.utils.logger import logger


@dataclass
class BattleConfig:
    """Per-battle quality settings chosen by the scheduler at admission."""

    judge_model: str
    auditor_enabled: bool = True
    throttled: bool = False
    temperature: float = 0.7
    max_turns: int = 15


@dataclass
class BattleOutcome:
    battle_id: int
    persona_id: int
    referee_score: Optional[float] = None
    humanity_grade: Optional[float] = None
    cost_usd: float = 0.0
    audited: bool = False
    transcript: str = ""


def persona_snapshot(persona: Persona) -> Dict[str, Any]:
    return {
        "id": persona.id,
        "name": persona.name,
        "persona_type": persona.persona_type,
        "description": persona.description,
        "system_prompt": persona.system_prompt,
        "behavior_params": dict(persona.behavior_params or {}),
    }


class BattlePipeline:
    def __init__(
        self,
        config: GovernorConfig,
        collaborator: BattleCollaborator,
        ledger: Optional[BudgetLedger] = None,
        auditor: Optional[VocalSoulAuditor] = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.config = config
        self.collaborator = collaborator
        self.ledger = ledger or BudgetLedger(env=config.env)
        self.auditor = auditor or VocalSoulAuditor(config)
        self.session_factory = session_factory

    def _start(self, persona_id: int, battle_config: BattleConfig, batch_id: Optional[str], scenario_id: Optional[int]):
        db = self.session_factory()
        try:
            persona = db.get(Persona, persona_id)
            if persona is None:
                raise LookupError(f"Persona {persona_id} not found")

            texture = consume_texture_frequency(db, persona, self.config)
            snapshot = persona_snapshot(persona)

            battle = Battle(
                persona_id=persona_id,
                batch_id=batch_id,
                scenario_id=scenario_id,
                status="running",
                throttled=battle_config.throttled,
                judge_model=battle_config.judge_model,
            )
            db.add(battle)
            ok, err = safe_commit(db, "battle insert")
            if not ok:
                raise PersistenceError(err or "battle insert failed")
            return battle.id, snapshot, texture
        finally:
            db.close()

    def _record(self, battle_id: int, persona_id: int, usage: ProviderUsage, kind: str) -> float:
        db = self.session_factory()
        try:
            entry = self.ledger.record_usage(
                db, usage, metadata={"battleId": battle_id, "personaId": persona_id, "type": kind}
            )
            return float(entry.cost_usd)
        finally:
            db.close()

    def _fail(self, battle_id: int, error: str, **fields) -> None:
        db = self.session_factory()
        try:
            battle = db.get(Battle, battle_id)
            if battle is None:
                return
            battle.status = "completed"
            battle.error = error[:2000]
            battle.ended_at = utcnow()
            for key, value in fields.items():
                setattr(battle, key, value)
            ok, err = safe_commit(db, f"battle {battle_id} failure")
            if not ok:
                logger.error(f"[Pipeline] Could not record failure of battle {battle_id}: {err}")
        finally:
            db.close()

    async def run(
        self,
        persona_id: int,
        battle_config: BattleConfig,
        batch_id: Optional[str] = None,
        scenario_id: Optional[int] = None,
    ) -> BattleOutcome:
        """
        Raises:
            EmptyTranscriptError: synthesis returned nothing (not audited)
            ProviderError: synthesis or judge failed
            PersistenceError: the battle row could not be written
        """
        battle_id, snapshot, texture = self._start(persona_id, battle_config, batch_id, scenario_id)
        audit_arena.open(battle_id, persona_id, texture)
        outcome = BattleOutcome(battle_id=battle_id, persona_id=persona_id)
        tokens = 0

        try:
            try:
                synth = await self.collaborator.synthesize(
                    snapshot,
                    SynthesisOptions(
                        max_turns=battle_config.max_turns,
                        temperature=battle_config.temperature,
                        texture_frequency=texture,
                    ),
                )
                outcome.cost_usd += self._record(battle_id, persona_id, synth.usage, "synthesis")
                tokens += synth.usage.total_tokens

                transcript = (synth.transcript or "").strip()
                if not transcript:
                    raise EmptyTranscriptError(f"Battle {battle_id} produced an empty transcript")
                outcome.transcript = transcript

                verdict = await self.collaborator.judge(transcript, battle_config.judge_model)
                outcome.cost_usd += self._record(battle_id, persona_id, verdict.usage, "judge")
                tokens += verdict.usage.total_tokens
            except Exception as e:
                self._fail(
                    battle_id, f"{type(e).__name__}: {e}",
                    transcript=outcome.transcript or None,
                    cost_usd=outcome.cost_usd,
                    token_usage=tokens,
                )
                raise

            scores = verdict.scores
            db = self.session_factory()
            try:
                battle = db.get(Battle, battle_id)
                battle.transcript = transcript
                battle.turns = synth.turns
                battle.referee_score = scores.referee_score
                battle.math_defense_score = scores.math_defense_score
                battle.humanity_score = scores.humanity_score
                battle.success_score = scores.success_score
                battle.verbal_yes_to_price = scores.verbal_yes_to_price
                battle.document_status = scores.document_status
                battle.referee_feedback = scores.feedback
                battle.winning_rebuttal = scores.winning_rebuttal
                battle.judge_model = verdict.model
                battle.cost_usd = round(outcome.cost_usd, 6)
                battle.token_usage = tokens
                battle.status = "completed"
                battle.ended_at = utcnow()
                ok, err = safe_commit(db, f"battle {battle_id} completion")
                if not ok:
                    raise PersistenceError(err or f"battle {battle_id} completion failed")

                outcome.referee_score = scores.referee_score

                if battle_config.auditor_enabled:
                    try:
                        report = self.auditor.audit(db, transcript, battle_id)
                        outcome.humanity_grade = report.humanity_grade
                        outcome.audited = True
                    except (GovernorError, LookupError) as e:
                        logger.error(f"[Pipeline] Audit of battle {battle_id} failed: {e}")
            finally:
                db.close()

            logger.info(
                f"[Pipeline] Battle {battle_id} persona={persona_id} referee={scores.referee_score} "
                f"humanity={outcome.humanity_grade} cost=${outcome.cost_usd:.4f}"
            )
            return outcome
        finally:
            audit_arena.close(battle_id)
