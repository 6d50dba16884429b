"""
Error taxonomy for the dispatch coordination core.

Logical errors (IllegalTransition, StateConflict, Unauthorized,
ValidationFailure) are never retried by the core. TransientStoreError is
retried a bounded number of times before it surfaces.
"""

from typing import Any, Dict, Optional


class DispatchError(RuntimeError):
    """Base exception for dispatch core operations."""

    code = "dispatch_error"
    retryable = False

    def __init__(
        self,
        message: str,
        case_id: Optional[str] = None,
        current_status: Optional[str] = None,
        requested: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.case_id = case_id
        self.current_status = current_status
        self.requested = requested
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "case_id": self.case_id,
            "current_status": self.current_status,
            "requested": self.requested,
            "details": self.details,
        }


class IllegalTransition(DispatchError):
    """Requested move is not permitted from the current status."""
    code = "illegal_transition"


# Handover protocol name for the same failure.
InvalidState = IllegalTransition


class StateConflict(DispatchError):
    """A concurrent change invalidated the transition's precondition."""
    code = "state_conflict"


class Unauthorized(DispatchError):
    """Actor, role or hospital identity lacks authority for the transition."""
    code = "unauthorized"


class ValidationFailure(DispatchError):
    """Malformed or missing payload fields."""
    code = "validation_failure"


class CaseNotFound(DispatchError):
    """No case exists with the requested id."""
    code = "case_not_found"


class TransientStoreError(DispatchError):
    """The store is unavailable, timed out or too contended; safe to retry."""
    code = "transient_store_error"
    retryable = True


__all__ = [
    "DispatchError",
    "IllegalTransition",
    "InvalidState",
    "StateConflict",
    "Unauthorized",
    "ValidationFailure",
    "CaseNotFound",
    "TransientStoreError",
]
