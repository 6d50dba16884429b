"""
Core package for the dispatch core.
"""

from .config import Config, EscalationThreshold, RankerWeights
from .clock import utcnow, ensure_aware
from .exceptions import (
    DispatchError,
    IllegalTransition,
    InvalidState,
    StateConflict,
    Unauthorized,
    ValidationFailure,
    CaseNotFound,
    TransientStoreError
)

__all__ = [
    "Config",
    "EscalationThreshold",
    "RankerWeights",
    "utcnow",
    "ensure_aware",
    "DispatchError",
    "IllegalTransition",
    "InvalidState",
    "StateConflict",
    "Unauthorized",
    "ValidationFailure",
    "CaseNotFound",
    "TransientStoreError"
]
