"""
Escalation Monitor Agent package.
"""

from .agent import EscalationMonitorAgent

__all__ = ["EscalationMonitorAgent"]
