# backend/governor/models/__init__.py
from governor.models.persona import Persona
from governor.models.battle import Battle
from governor.models.budget_ledger import BudgetLedgerEntry
from governor.models.kill_switch import KillSwitchState
from governor.models.scenario import Scenario
from governor.models.governor_config import GovernorConfigEntry
from governor.models.script_gate import ScriptGate
from governor.models.tactic import Tactic

__all__ = [
    'Persona',
    'Battle',
    'BudgetLedgerEntry',
    'KillSwitchState',
    'Scenario',
    'GovernorConfigEntry',
    'ScriptGate',
    'Tactic',
]
