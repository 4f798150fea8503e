# backend/governor/runtime.py
"""
Process-wide wiring of the governor's collaborators.

Built once from the validated GovernorConfig. Routers receive it through the
get_runtime dependency so tests can swap in fakes.
"""

from dataclasses import dataclass
from typing import Optional

from governor.agents.battle_scheduler import BattleScheduler
from governor.agents.breakthrough_detector import BreakthroughDetector
from governor.agents.gate_checker import GateChecker
from governor.agents.scenario_injector import ScenarioInjector
from governor.agents.vocal_soul_auditor import VocalSoulAuditor
from governor.config import GovernorConfig, load_governor_config, settings
from governor.pipelines.battle_pipeline import BattlePipeline
from governor.services.budget_ledger import BudgetLedger
from governor.services.budget_monitor import BudgetMonitor
from governor.services.kill_switch import KillSwitch
from governor.services.notifier import Notifier
from governor.services.openai_service import (
    BattleCollaborator,
    Embedder,
    OpenAIBattleCollaborator,
    OpenAIEmbedder,
)


@dataclass
class GovernorRuntime:
    config: GovernorConfig
    collaborator: BattleCollaborator
    embedder: Optional[Embedder]
    notifier: Notifier
    ledger: BudgetLedger
    monitor: BudgetMonitor
    kill_switch: KillSwitch
    auditor: VocalSoulAuditor
    detector: BreakthroughDetector
    gate_checker: GateChecker
    scheduler: BattleScheduler
    injector: ScenarioInjector


def build_runtime(
    config: Optional[GovernorConfig] = None,
    collaborator: Optional[BattleCollaborator] = None,
    embedder: Optional[Embedder] = None,
    notifier: Optional[Notifier] = None,
) -> GovernorRuntime:
    config = config or load_governor_config()
    collaborator = collaborator or OpenAIBattleCollaborator()
    if embedder is None and settings.OPENAI_API_KEY:
        embedder = OpenAIEmbedder()
    notifier = notifier or Notifier()

    ledger = BudgetLedger(env=config.env)
    monitor = BudgetMonitor(config)
    kill_switch = KillSwitch(notifier)
    auditor = VocalSoulAuditor(config)
    detector = BreakthroughDetector(config)
    pipeline = BattlePipeline(config, collaborator, ledger=ledger, auditor=auditor)
    scheduler = BattleScheduler(
        config,
        pipeline=pipeline,
        kill_switch=kill_switch,
        monitor=monitor,
        detector=detector,
        notifier=notifier,
    )
    injector = ScenarioInjector(config, collaborator, scheduler, ledger=ledger)

    return GovernorRuntime(
        config=config,
        collaborator=collaborator,
        embedder=embedder,
        notifier=notifier,
        ledger=ledger,
        monitor=monitor,
        kill_switch=kill_switch,
        auditor=auditor,
        detector=detector,
        gate_checker=GateChecker(embedder, advance_threshold=config.gate_advance_threshold, ledger=ledger),
        scheduler=scheduler,
        injector=injector,
    )


_runtime: Optional[GovernorRuntime] = None


def get_runtime() -> GovernorRuntime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def set_runtime(runtime: Optional[GovernorRuntime]) -> None:
    global _runtime
    _runtime = runtime
