"""
Agents package for the dispatch core.
"""

from .base_agent import BaseAgent
from .escalation_monitor import EscalationMonitorAgent

__all__ = [
    "BaseAgent",
    "EscalationMonitorAgent"
]
