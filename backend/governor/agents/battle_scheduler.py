# backend/governor/agents/battle_scheduler.py
"""
Battle Scheduler
================

Runs a batch of self-play battles under the concurrency limit and the daily
budget.

Before every unit of work, in this order:
1. Kill switch active            -> halt (KillSwitchActive)
2. Budget exceeded               -> activate kill switch, halt (BudgetExceeded)
3. Reservation refused           -> wait for an in-flight battle, else halt
4. Budget throttled              -> run with the degraded config
                                    (cheaper judge, auditor off)

If the very first check of a batch halts, run_batch raises. Once battles
have started a halt only stops new launches: in-flight battles finish and
the summary comes back with `halted_reason` set.

A single battle's failure is logged and counted, never raised.

State machine:
    idle -> running -> {throttled | halted_budget | halted_kill_switch} -> idle
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from governor.agents.breakthrough_detector import BreakthroughDetector
from governor.config import GovernorConfig
from governor.database import SessionLocal, safe_commit
from governor.errors import (
    BudgetExceeded,
    EmptyTranscriptError,
    KillSwitchActive,
    PersistenceError,
    ProviderError,
)
from governor.models.governor_config import GovernorConfigEntry
from governor.models.persona import Persona
from governor.pipelines.battle_pipeline import BattleConfig, BattlePipeline
from governor.services.budget_monitor import BudgetMonitor, BudgetStatus
from governor.services.kill_switch import KillSwitch
from governor.services.notifier import Notifier
from governor.services.openai_service import BattleCollaborator
from governor.utils.helpers import iso, new_batch_id, utcnow
from governor.utils.logger import logger

LAST_BATCH_KEY = "scheduler.last_batch"

HALT_KILL_SWITCH = "kill_switch"
HALT_BUDGET = "budget_exceeded"
HALT_RESERVED = "budget_reserved"
HALT_NO_PERSONAS = "no_active_personas"


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    THROTTLED = "throttled"
    HALTED_BUDGET = "halted_budget"
    HALTED_KILL_SWITCH = "halted_kill_switch"


@dataclass
class BatchSummary:
    batch_id: str
    requested: int
    started: int = 0
    battles_completed: int = 0
    audited: int = 0
    errors: int = 0
    skipped: int = 0
    throttled: bool = False
    halted_reason: Optional[str] = None
    spend_usd: float = 0.0
    battle_ids: List[int] = field(default_factory=list)
    breakthroughs: List[int] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "requested": self.requested,
            "started": self.started,
            "battlesCompleted": self.battles_completed,
            "audited": self.audited,
            "errors": self.errors,
            "skipped": self.skipped,
            "throttled": self.throttled,
            "haltedReason": self.halted_reason,
            "spendUsd": round(self.spend_usd, 6),
            "battleIds": list(self.battle_ids),
            "breakthroughs": list(self.breakthroughs),
            "startedAt": iso(self.started_at),
            "finishedAt": iso(self.finished_at),
        }


@dataclass
class Admission:
    halted_reason: Optional[str] = None
    status: Optional[BudgetStatus] = None
    battle_config: Optional[BattleConfig] = None
    reservation: Optional[str] = None


class BattleScheduler:
    def __init__(
        self,
        config: GovernorConfig,
        collaborator: Optional[BattleCollaborator] = None,
        pipeline: Optional[BattlePipeline] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        kill_switch: Optional[KillSwitch] = None,
        monitor: Optional[BudgetMonitor] = None,
        detector: Optional[BreakthroughDetector] = None,
        notifier: Optional[Notifier] = None,
    ):
        if pipeline is None and collaborator is None:
            raise ValueError("BattleScheduler needs a collaborator or a pipeline")
        self.config = config
        self.session_factory = session_factory
        self.notifier = notifier or Notifier()
        self.kill_switch = kill_switch or KillSwitch(self.notifier)
        self.monitor = monitor or BudgetMonitor(config)
        self.detector = detector or BreakthroughDetector(config)
        self.pipeline = pipeline or BattlePipeline(config, collaborator, session_factory=session_factory)
        self._state = SchedulerState.IDLE
        self._active_batches = 0
        self.last_summary: Optional[BatchSummary] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SchedulerState:
        return self._state

    def _set_state(self, new_state: SchedulerState) -> None:
        if new_state != self._state:
            logger.info(f"[Scheduler] {self._state.value} -> {new_state.value}")
            self._state = new_state

    def normal_config(self, temperature: Optional[float] = None) -> BattleConfig:
        return BattleConfig(
            judge_model=self.config.judge_model,
            auditor_enabled=True,
            throttled=False,
            temperature=0.7 if temperature is None else temperature,
            max_turns=self.config.max_turns,
        )

    def degraded_config(self, temperature: Optional[float] = None) -> BattleConfig:
        return BattleConfig(
            judge_model=self.config.judge_model_throttled,
            auditor_enabled=False,
            throttled=True,
            temperature=0.7 if temperature is None else temperature,
            max_turns=self.config.max_turns,
        )

    # ------------------------------------------------------------------
    # Loop-head checks
    # ------------------------------------------------------------------

    def _check_budget(self, db: Session) -> Optional[BudgetStatus]:
        """None when the kill switch is active; activates it when the budget is exceeded."""
        if self.kill_switch.is_active(db):
            return None
        status = self.monitor.get_budget_status(db)
        if status.is_exceeded:
            logger.error(
                f"[Scheduler] Budget exceeded: ${status.today_spend:.4f} >= ${status.daily_cap:.2f}; "
                f"activating kill switch"
            )
            self.kill_switch.activate(
                db,
                reason=f"Daily training budget exceeded (${status.today_spend:.2f} of ${status.daily_cap:.2f})",
                activated_by="budget_monitor",
            )
            self.notifier.budget_exceeded(status.to_dict())
        return status

    def preflight(self, db: Session) -> BudgetStatus:
        """
        Kill-switch and budget check for callers that spend outside a batch.

        Raises:
            KillSwitchActive
            BudgetExceeded: the kill switch is now active
        """
        status = self._check_budget(db)
        if status is None:
            raise KillSwitchActive("Kill switch is active")
        if status.is_exceeded:
            raise BudgetExceeded(f"Daily budget exceeded (${status.today_spend:.2f} of ${status.daily_cap:.2f})")
        return status

    def _admit(self, temperature: Optional[float]) -> Admission:
        db = self.session_factory()
        try:
            status = self._check_budget(db)
            if status is None:
                return Admission(halted_reason=HALT_KILL_SWITCH)
            if status.is_exceeded:
                return Admission(halted_reason=HALT_BUDGET, status=status)

            token = self.monitor.try_reserve(db)
            if token is None:
                return Admission(halted_reason=HALT_RESERVED, status=status)

            battle_config = self.degraded_config(temperature) if status.is_throttled else self.normal_config(temperature)
            return Admission(status=status, battle_config=battle_config, reservation=token)
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def _roster(self, persona_ids: Optional[List[int]]) -> List[int]:
        db = self.session_factory()
        try:
            q = db.query(Persona.id)
            if persona_ids:
                q = q.filter(Persona.id.in_(persona_ids))
            else:
                q = q.filter(Persona.is_active.is_(True))
            found = {row[0] for row in q.all()}
        finally:
            db.close()

        if persona_ids:
            return [pid for pid in persona_ids if pid in found]
        return sorted(found)

    async def _run_unit(
        self,
        persona_id: int,
        admission: Admission,
        summary: BatchSummary,
        scenario_id: Optional[int],
        semaphore: asyncio.Semaphore,
    ) -> None:
        try:
            outcome = await self.pipeline.run(
                persona_id,
                admission.battle_config,
                batch_id=summary.batch_id,
                scenario_id=scenario_id,
            )
            summary.battles_completed += 1
            summary.battle_ids.append(outcome.battle_id)
            summary.spend_usd += outcome.cost_usd
            if outcome.audited:
                summary.audited += 1
        except EmptyTranscriptError as e:
            summary.skipped += 1
            logger.warning(f"[Scheduler] Skipped battle for persona {persona_id}: {e}")
        except (ProviderError, PersistenceError) as e:
            summary.errors += 1
            logger.error(f"[Scheduler] Battle for persona {persona_id} failed: {type(e).__name__}: {e}")
        except Exception as e:
            summary.errors += 1
            logger.exception(f"[Scheduler] Unexpected error in battle for persona {persona_id}: {e}")
        finally:
            self.monitor.release(admission.reservation)
            semaphore.release()

    async def run_batch(
        self,
        batch_size: Optional[int] = None,
        persona_ids: Optional[List[int]] = None,
        temperature: Optional[float] = None,
        scenario_id: Optional[int] = None,
    ) -> BatchSummary:
        """
        Run up to `batch_size` battles (capped at max_battles), cycling over
        the active personas or the given persona ids.

        Raises:
            ValueError: batch_size < 1
            KillSwitchActive: halted before any battle started
            BudgetExceeded: halted before any battle started; kill switch now active
        """
        requested = self.config.default_batch_size if batch_size is None else int(batch_size)
        if requested < 1:
            raise ValueError("batch_size must be at least 1")
        units = min(requested, self.config.max_battles)
        if units < requested:
            logger.warning(f"[Scheduler] batch_size {requested} capped at {units}")

        summary = BatchSummary(batch_id=new_batch_id(), requested=requested)
        self._check_before_start(summary)
        roster = self._roster(persona_ids)
        if not roster:
            logger.warning("[Scheduler] No active personas; nothing to run")
            summary.halted_reason = HALT_NO_PERSONAS
            summary.finished_at = utcnow()
            self.last_summary = summary
            return summary

        semaphore = asyncio.Semaphore(self.config.max_concurrent)
        tasks: List[asyncio.Task] = []
        self._active_batches += 1
        self._set_state(SchedulerState.RUNNING)
        logger.info(
            f"[Scheduler] Batch {summary.batch_id}: {units} battles over {len(roster)} personas, "
            f"max {self.config.max_concurrent} concurrent"
        )

        try:
            for i in range(units):
                await semaphore.acquire()
                admission = self._admit(temperature)

                # reservations are held by our own in-flight battles: wait for one to land
                while admission.halted_reason == HALT_RESERVED:
                    pending = [t for t in tasks if not t.done()]
                    if not pending:
                        break
                    await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                    admission = self._admit(temperature)

                if admission.halted_reason:
                    semaphore.release()
                    summary.halted_reason = admission.halted_reason
                    self._on_halt(summary, admission)
                    break

                if admission.battle_config.throttled and not summary.throttled:
                    summary.throttled = True
                    self._set_state(SchedulerState.THROTTLED)
                    logger.warning(
                        f"[Scheduler] Spend ${admission.status.today_spend:.2f} >= throttle "
                        f"${admission.status.throttle_threshold:.2f}: judge={admission.battle_config.judge_model}, "
                        f"auditor off"
                    )

                summary.started += 1
                persona_id = roster[i % len(roster)]
                tasks.append(asyncio.create_task(
                    self._run_unit(persona_id, admission, summary, scenario_id, semaphore)
                ))
        finally:
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            summary.finished_at = utcnow()
            self.last_summary = summary
            self._active_batches -= 1
            if self._active_batches == 0:
                self._set_state(SchedulerState.IDLE)

        self._after_batch(summary)
        logger.info(
            f"[Scheduler] Batch {summary.batch_id} done: started={summary.started} "
            f"completed={summary.battles_completed} audited={summary.audited} errors={summary.errors} "
            f"skipped={summary.skipped} halted={summary.halted_reason}"
        )

        if summary.started == 0:
            if summary.halted_reason == HALT_KILL_SWITCH:
                raise KillSwitchActive("Kill switch is active; batch not started", summary=summary)
            if summary.halted_reason == HALT_BUDGET:
                raise BudgetExceeded("Daily budget exceeded; batch not started", summary=summary)
        return summary

    def _check_before_start(self, summary: BatchSummary) -> None:
        """Kill switch and budget gate that runs before the roster is read."""
        db = self.session_factory()
        try:
            status = self._check_budget(db)
        finally:
            db.close()

        if status is not None and not status.is_exceeded:
            return
        summary.halted_reason = HALT_KILL_SWITCH if status is None else HALT_BUDGET
        summary.finished_at = utcnow()
        self.last_summary = summary
        logger.warning(f"[Scheduler] Batch {summary.batch_id} refused: {summary.halted_reason}")
        if status is None:
            raise KillSwitchActive("Kill switch is active; batch not started", summary=summary)
        raise BudgetExceeded("Daily budget exceeded; batch not started", summary=summary)

    def _on_halt(self, summary: BatchSummary, admission: Admission) -> None:
        reason = admission.halted_reason
        if reason == HALT_KILL_SWITCH:
            self._set_state(SchedulerState.HALTED_KILL_SWITCH)
            logger.warning(f"[Scheduler] Batch {summary.batch_id} halted: kill switch active")
        elif reason in (HALT_BUDGET, HALT_RESERVED):
            self._set_state(SchedulerState.HALTED_BUDGET)
            logger.error(f"[Scheduler] Batch {summary.batch_id} halted: {reason}")

    def _after_batch(self, summary: BatchSummary) -> None:
        """Flag breakthroughs and store the summary. Best-effort."""
        db = self.session_factory()
        try:
            if summary.battles_completed:
                flagged = self.detector.scan(db)
                summary.breakthroughs = [b.id for b in flagged]
                if flagged:
                    self.notifier.breakthroughs_detected(flagged)

            entry = db.get(GovernorConfigEntry, LAST_BATCH_KEY) or GovernorConfigEntry(key=LAST_BATCH_KEY)
            entry.value = summary.to_dict()
            db.add(entry)
            ok, err = safe_commit(db, "store batch summary")
            if not ok:
                logger.error(f"[Scheduler] Could not store batch summary: {err}")
        except Exception as e:
            logger.error(f"[Scheduler] Post-batch processing failed: {e}")
        finally:
            db.close()

    def get_status(self, db: Session) -> Dict[str, Any]:
        last = self.last_summary.to_dict() if self.last_summary else None
        if last is None:
            entry = db.get(GovernorConfigEntry, LAST_BATCH_KEY)
            last = entry.value if entry else None
        return {
            "state": self.state.value,
            "activeBatches": self._active_batches,
            "lastBatch": last,
        }
