"""
Request dependencies shared by the API routes.

Core collaborators live on ``app.state`` (wired in the lifespan handler), so
every dependency resolves them from the incoming request.
"""

import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from dispatch_core.core.exceptions import Unauthorized
from dispatch_core.core.rate_limit import RateLimiter
from dispatch_core.core.store import CaseStore
from dispatch_core.lifecycle.handover import HandoverProtocol
from dispatch_core.lifecycle.override import OverrideCoordinator
from dispatch_core.lifecycle.state_machine import CaseStateMachine
from dispatch_core.models.events import Actor, ActorRole

logger = logging.getLogger(__name__)


def get_store(request: Request) -> CaseStore:
    return request.app.state.store


def get_state_machine(request: Request) -> CaseStateMachine:
    return request.app.state.state_machine


def get_override_coordinator(request: Request) -> OverrideCoordinator:
    return request.app.state.override_coordinator


def get_handover_protocol(request: Request) -> HandoverProtocol:
    return request.app.state.handover_protocol


def get_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
    x_hospital_id: Optional[str] = Header(None)
) -> Actor:
    """
    Build the acting identity from request headers.

    Authentication happens upstream; this only checks the headers are
    present and name a known role.
    """
    if not x_actor_id or not x_actor_role:
        raise Unauthorized("X-Actor-Id and X-Actor-Role headers are required")
    try:
        role = ActorRole(x_actor_role.strip().lower())
    except ValueError:
        raise Unauthorized(f"Unknown actor role: {x_actor_role}")
    return Actor(id=x_actor_id, role=role, hospital_id=x_hospital_id or None)


def rate_limit(request: Request, actor: Actor = Depends(get_actor)) -> None:
    """Reject the request with 429 once the caller's window is exhausted."""
    limiter: RateLimiter = request.app.state.rate_limiter
    client = request.client.host if request.client else "unknown"
    key = f"{client}:{actor.id}"
    if not limiter.allow(key):
        raise HTTPException(
            status_code=429,
            detail={
                "error": "rate_limited",
                "message": "Too many requests. Please wait a minute.",
                "retry_after_seconds": limiter.window_seconds,
            },
        )
