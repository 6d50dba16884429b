"""
Audit routes for the dispatch API.

Read-only access to the audit log, recent change notifications and the
golden-hour compliance report.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request

from dispatch_core.api.dependencies import get_state_machine
from dispatch_core.core.exceptions import ValidationFailure
from dispatch_core.lifecycle.state_machine import CaseStateMachine
from dispatch_core.models.events import AUDIT_EVENT_TYPES, EventType

router = APIRouter()


def _parse_event_types(values: Optional[List[str]]) -> Optional[List[EventType]]:
    if not values:
        return None
    parsed = []
    for value in values:
        try:
            event_type = EventType(value)
        except ValueError:
            event_type = None
        if event_type not in AUDIT_EVENT_TYPES:
            raise ValidationFailure(
                f"Unknown audit event type: {value}",
                details={"allowed": sorted(t.value for t in AUDIT_EVENT_TYPES)},
            )
        parsed.append(event_type)
    return parsed


@router.get("")
async def list_audit_events(
    case_id: Optional[str] = None,
    event_type: Optional[List[str]] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    state_machine: CaseStateMachine = Depends(get_state_machine)
):
    """Audit events, newest first, optionally filtered by case and type."""
    event_types = _parse_event_types(event_type)
    if case_id:
        await state_machine.get_case(case_id)
        events = await state_machine.audit.for_case(case_id, limit=limit, event_types=event_types)
    else:
        events = await state_machine.audit.recent(limit=limit, event_types=event_types)
    return [e.to_dict() for e in events]


@router.get("/changes")
async def recent_changes(
    request: Request,
    case_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000)
):
    """Recent case change notifications held by the event bus."""
    history = request.app.state.event_bus.get_history(case_id=case_id, limit=limit)
    return [e.to_dict() for e in history]


@router.get("/golden-hour")
async def golden_hour_compliance(state_machine: CaseStateMachine = Depends(get_state_machine)):
    """Golden-hour compliance over every handed-over case."""
    cases = await state_machine.list_cases()
    return state_machine.policy.golden_hour_compliance(cases)
