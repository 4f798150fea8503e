from governor.agents.vocal_soul_auditor import VocalSoulAuditor
from governor.agents.gate_checker import GateChecker
from governor.agents.breakthrough_detector import BreakthroughDetector

__all__ = [
    'VocalSoulAuditor',
    'GateChecker',
    'BreakthroughDetector',
]
