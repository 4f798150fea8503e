from governor.services.budget_ledger import BudgetLedger
from governor.services.budget_monitor import BudgetMonitor
from governor.services.kill_switch import KillSwitch
from governor.services.notifier import Notifier
from governor.services.openai_service import OpenAIService, OpenAIBattleCollaborator, OpenAIEmbedder

__all__ = [
    'BudgetLedger',
    'BudgetMonitor',
    'KillSwitch',
    'Notifier',
    'OpenAIService',
    'OpenAIBattleCollaborator',
    'OpenAIEmbedder',
]
