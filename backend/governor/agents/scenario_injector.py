# backend/governor/agents/scenario_injector.py
"""
Scenario Injector
=================

Seeds a raw objection into a synthesized counterpart persona, then
brute-forces single-battle batches against it until one scores at or above
the success threshold (solved) or the attempt cap is reached (exhausted).

Every attempt goes through the scheduler, so the kill switch and the budget
apply exactly as they do for training batches. A halt puts the scenario back
to `pending` (attempts so far are kept) and propagates. `brute_force` picks
up any non-terminal scenario, including one left `running` by a crash, and
continues from its stored attempt count.

    pending -> running -> solved | exhausted
"""

from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from governor.agents.battle_scheduler import BattleScheduler
from governor.config import GovernorConfig
from governor.database import SessionLocal, safe_commit
from governor.errors import BudgetExceeded, KillSwitchActive, PersistenceError
from governor.models.battle import Battle
from governor.models.persona import Persona
from governor.models.scenario import Scenario
from governor.pipelines.battle_pipeline import persona_snapshot
from governor.services.budget_ledger import BudgetLedger
from governor.services.openai_service import BattleCollaborator
from governor.utils.helpers import iso, utcnow
from governor.utils.logger import logger

TERMINAL_STATUSES = ("solved", "exhausted")


def scenario_to_dict(scenario: Scenario) -> Dict[str, Any]:
    return {
        "scenarioId": scenario.id,
        "rawObjection": scenario.raw_objection,
        "personaId": scenario.synthesized_persona_id,
        "status": scenario.status,
        "attempts": scenario.attempts,
        "maxAttempts": scenario.max_attempts,
        "bestScore": scenario.best_score,
        "winningBattleId": scenario.winning_battle_id,
        "winningTranscript": scenario.winning_transcript,
        "conflictState": scenario.conflict_state,
        "createdAt": iso(scenario.created_at),
        "completedAt": iso(scenario.completed_at),
    }


class ScenarioInjector:
    def __init__(
        self,
        config: GovernorConfig,
        collaborator: BattleCollaborator,
        scheduler: BattleScheduler,
        ledger: Optional[BudgetLedger] = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.config = config
        self.collaborator = collaborator
        self.scheduler = scheduler
        self.ledger = ledger or BudgetLedger(env=config.env)
        self.session_factory = session_factory

    def _commit(self, db: Session, what: str) -> None:
        ok, err = safe_commit(db, what)
        if not ok:
            raise PersistenceError(err or f"{what} failed")

    async def create_scenario(self, raw_objection: str, base_persona_id: Optional[int] = None) -> int:
        """
        Synthesize the counterpart persona and store a pending scenario.

        Raises:
            ValueError: blank objection
            LookupError: unknown base persona
            KillSwitchActive / BudgetExceeded: synthesis is not allowed to spend
        """
        raw_objection = (raw_objection or "").strip()
        if not raw_objection:
            raise ValueError("raw_objection must not be empty")

        db = self.session_factory()
        try:
            self.scheduler.preflight(db)
            base = None
            if base_persona_id is not None:
                persona = db.get(Persona, base_persona_id)
                if persona is None:
                    raise LookupError(f"Persona {base_persona_id} not found")
                base = persona_snapshot(persona)
        finally:
            db.close()

        draft = await self.collaborator.synthesize_persona(raw_objection, base)

        db = self.session_factory()
        try:
            if draft.usage is not None:
                self.ledger.record_usage(
                    db, draft.usage, metadata={"type": "persona_synthesis", "objection": raw_objection[:200]}
                )

            persona = Persona(
                name=draft.name,
                persona_type=draft.persona_type or "scenario",
                description=draft.description,
                system_prompt=draft.system_prompt,
                is_active=True,
                behavior_params={
                    "conflict_state": draft.conflict_state,
                    "scenario_objection": raw_objection,
                    "base_persona_id": base_persona_id,
                },
            )
            db.add(persona)
            self._commit(db, "scenario persona insert")

            scenario = Scenario(
                raw_objection=raw_objection,
                synthesized_persona_id=persona.id,
                conflict_state=draft.conflict_state,
                status="pending",
                attempts=0,
                max_attempts=self.config.max_scenario_attempts,
            )
            db.add(scenario)
            self._commit(db, "scenario insert")
            logger.info(f"[ScenarioInjector] Scenario {scenario.id} created with persona {persona.id} ({persona.name})")
            return scenario.id
        finally:
            db.close()

    def _load(self, db: Session, scenario_id: int) -> Scenario:
        scenario = db.get(Scenario, scenario_id)
        if scenario is None:
            raise LookupError(f"Scenario {scenario_id} not found")
        return scenario

    def _set_status(self, scenario_id: int, status: str) -> None:
        db = self.session_factory()
        try:
            scenario = self._load(db, scenario_id)
            scenario.status = status
            self._commit(db, f"scenario {scenario_id} -> {status}")
        finally:
            db.close()

    def _latest_battle(self, db: Session, scenario_id: int, batch_id: str) -> Optional[Battle]:
        return (
            db.query(Battle)
            .filter(Battle.scenario_id == scenario_id, Battle.batch_id == batch_id)
            .order_by(Battle.id.desc())
            .first()
        )

    async def brute_force(self, scenario_id: int) -> Dict[str, Any]:
        """
        Run attempts until solved or exhausted. Pending and running rows are
        both picked up; stored attempts count toward the cap.

        Raises:
            LookupError: unknown scenario
            KillSwitchActive / BudgetExceeded: halted; the scenario is pending again
        """
        db = self.session_factory()
        try:
            scenario = self._load(db, scenario_id)
            if scenario.status in TERMINAL_STATUSES:
                return scenario_to_dict(scenario)
            persona_id = scenario.synthesized_persona_id
            resume_from = scenario.attempts + 1
            scenario.status = "running"
            self._commit(db, f"scenario {scenario_id} start")
        finally:
            db.close()

        threshold = self.config.scenario_success_threshold
        logger.info(
            f"[ScenarioInjector] Brute-forcing scenario {scenario_id} from attempt {resume_from} (threshold {threshold})"
        )

        while True:
            db = self.session_factory()
            try:
                scenario = self._load(db, scenario_id)
                if scenario.attempts >= scenario.max_attempts:
                    scenario.status = "exhausted"
                    scenario.completed_at = utcnow()
                    self._commit(db, f"scenario {scenario_id} exhausted")
                    logger.warning(f"[ScenarioInjector] Scenario {scenario_id} exhausted after {scenario.attempts} attempts")
                    return scenario_to_dict(scenario)
            finally:
                db.close()

            try:
                summary = await self.scheduler.run_batch(
                    batch_size=1,
                    persona_ids=[persona_id],
                    temperature=self.config.scenario_temperature,
                    scenario_id=scenario_id,
                )
            except (KillSwitchActive, BudgetExceeded):
                self._set_status(scenario_id, "pending")
                logger.warning(f"[ScenarioInjector] Scenario {scenario_id} halted; back to pending")
                raise

            if summary.started == 0:
                # reservation refused or persona gone; nothing was attempted
                self._set_status(scenario_id, "pending")
                logger.warning(f"[ScenarioInjector] Scenario {scenario_id} not attempted: {summary.halted_reason}")
                db = self.session_factory()
                try:
                    return scenario_to_dict(self._load(db, scenario_id))
                finally:
                    db.close()

            db = self.session_factory()
            try:
                scenario = self._load(db, scenario_id)
                scenario.attempts += 1
                battle = self._latest_battle(db, scenario_id, summary.batch_id)
                score = battle.referee_score if battle is not None else None

                if score is not None and (scenario.best_score is None or score > scenario.best_score):
                    scenario.best_score = score

                if score is not None and score >= threshold:
                    scenario.status = "solved"
                    scenario.winning_battle_id = battle.id
                    scenario.winning_transcript = battle.transcript
                    scenario.completed_at = utcnow()
                    self._commit(db, f"scenario {scenario_id} solved")
                    logger.info(
                        f"[ScenarioInjector] Scenario {scenario_id} solved on attempt {scenario.attempts} "
                        f"(battle {battle.id}, score {score})"
                    )
                    return scenario_to_dict(scenario)

                self._commit(db, f"scenario {scenario_id} attempt {scenario.attempts}")
                logger.info(
                    f"[ScenarioInjector] Scenario {scenario_id} attempt {scenario.attempts}/{scenario.max_attempts}: "
                    f"score {score}"
                )
            finally:
                db.close()

    async def inject_and_brute_force(self, raw_objection: str, base_persona_id: Optional[int] = None) -> Dict[str, Any]:
        scenario_id = await self.create_scenario(raw_objection, base_persona_id)
        return await self.brute_force(scenario_id)

    def get_scenario(self, db: Session, scenario_id: int) -> Dict[str, Any]:
        return scenario_to_dict(self._load(db, scenario_id))
