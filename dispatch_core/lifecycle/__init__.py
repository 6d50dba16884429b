"""
Case lifecycle: state machine, override coordinator, handover protocol and audit log.
"""

from .audit import AuditLog
from .state_machine import CaseStateMachine, TransitionContext, ALLOWED_TRANSITIONS
from .override import OverrideCoordinator
from .handover import HandoverProtocol, build_handover_summary

__all__ = [
    "AuditLog",
    "CaseStateMachine",
    "TransitionContext",
    "ALLOWED_TRANSITIONS",
    "OverrideCoordinator",
    "HandoverProtocol",
    "build_handover_summary"
]
