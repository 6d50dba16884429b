"""
Case routes for the dispatch API.

Thin adapter over the case state machine: each endpoint reads the acting
identity from headers and calls exactly one lifecycle operation. Errors
raised by the core are mapped to HTTP statuses by the app's handlers.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from dispatch_core.api.dependencies import (
    get_actor,
    get_handover_protocol,
    get_override_coordinator,
    get_state_machine,
    rate_limit,
)
from dispatch_core.core.exceptions import ValidationFailure
from dispatch_core.lifecycle.handover import HandoverProtocol
from dispatch_core.lifecycle.override import OverrideCoordinator
from dispatch_core.lifecycle.state_machine import CaseStateMachine
from dispatch_core.models.case import (
    CaseStatus,
    EmergencyCase,
    EmergencyType,
    EscalationReason,
    GeoPoint,
    PatientInfo,
    SupportRequired,
    Vitals,
)
from dispatch_core.models.events import Actor

router = APIRouter()


# ========================
# Request Models
# ========================

class CreateCaseRequest(BaseModel):
    id: Optional[str] = None
    acuity_level: Optional[int] = Field(None, ge=1, le=5)
    vitals: Optional[Vitals] = None
    emergency_type: EmergencyType = EmergencyType.OTHER
    location: Optional[GeoPoint] = None
    patient: Optional[PatientInfo] = None
    clinical_flags: List[str] = Field(default_factory=list)
    trauma_flags: List[str] = Field(default_factory=list)
    support_required: Optional[SupportRequired] = None
    isolation_required: bool = False
    attachments: List[str] = Field(default_factory=list)


class TransitionRequest(BaseModel):
    expected_status: Optional[CaseStatus] = None


class TriageRequest(TransitionRequest):
    acuity_level: int
    flags: List[str] = Field(default_factory=list)
    vitals: Optional[Vitals] = None


class RankingRequest(TransitionRequest):
    hospitals: Optional[List[Dict[str, Any]]] = Field(
        None, description="Hospital snapshots; stored profiles are used when omitted"
    )
    travel: Optional[Dict[str, Dict[str, Any]]] = Field(
        None, description="hospital_id -> {distance_km, eta_minutes} from a routing provider"
    )
    as_of: Optional[datetime] = None


class HospitalResponseRequest(TransitionRequest):
    hospital_id: str


class RejectRequest(HospitalResponseRequest):
    reason_code: str
    reason_text: str = ""


class EscalateRequest(TransitionRequest):
    reason: EscalationReason = EscalationReason.MANUAL


class OverrideRequest(TransitionRequest):
    hospital_id: str
    reason_code: str
    reason_text: str = ""
    hospital_name: Optional[str] = None
    new_score: Optional[float] = Field(None, ge=0, le=100)


def _case_response(case: EmergencyCase) -> Dict[str, Any]:
    data = case.model_dump(mode="json")
    data["authoritative_hospital_id"] = case.authoritative_hospital_id
    return data


def _expected(body: Optional[TransitionRequest]) -> Optional[CaseStatus]:
    return body.expected_status if body is not None else None


# ========================
# Intake and reads
# ========================

@router.post("", status_code=201, dependencies=[Depends(rate_limit)])
async def create_case(
    body: CreateCaseRequest,
    actor: Actor = Depends(get_actor),
    state_machine: CaseStateMachine = Depends(get_state_machine)
):
    """Register a new emergency case."""
    case = EmergencyCase(**body.model_dump(exclude_none=True))
    created = await state_machine.create_case(case, actor)
    return _case_response(created)


@router.get("")
async def list_cases(
    status: Optional[List[str]] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    state_machine: CaseStateMachine = Depends(get_state_machine)
):
    """List case summaries, newest first."""
    statuses = None
    if status:
        try:
            statuses = [CaseStatus(s) for s in status]
        except ValueError as e:
            raise ValidationFailure(f"Unknown status filter: {e}")
    cases = await state_machine.list_cases(statuses)
    cases.sort(key=lambda c: c.created_at, reverse=True)
    return [c.to_summary() for c in cases[:limit]]


@router.get("/{case_id}")
async def get_case(case_id: str, state_machine: CaseStateMachine = Depends(get_state_machine)):
    case = await state_machine.get_case(case_id)
    return _case_response(case)


@router.get("/{case_id}/escalation")
async def get_escalation_status(case_id: str, state_machine: CaseStateMachine = Depends(get_state_machine)):
    """Timeout, rejection and golden-hour position of the case."""
    return await state_machine.escalation_status(case_id)


@router.get("/{case_id}/notification-targets")
async def get_notification_targets(case_id: str, state_machine: CaseStateMachine = Depends(get_state_machine)):
    """Hospitals that should currently be alerted about the case."""
    return {
        "case_id": case_id,
        "authoritative_hospital_id": await state_machine.authoritative_hospital(case_id),
        "targets": await state_machine.notification_targets(case_id),
    }


@router.get("/{case_id}/ranking")
async def preview_ranking(case_id: str, state_machine: CaseStateMachine = Depends(get_state_machine)):
    """Rank the stored hospitals for this case without recording anything."""
    ranking = await state_machine.rank_case(case_id)
    return ranking.model_dump(mode="json")


# ========================
# Lifecycle transitions
# ========================

@router.post("/{case_id}/triage", dependencies=[Depends(rate_limit)])
async def triage_case(
    case_id: str,
    body: TriageRequest,
    actor: Actor = Depends(get_actor),
    state_machine: CaseStateMachine = Depends(get_state_machine)
):
    case = await state_machine.triage(
        case_id, body.acuity_level, actor,
        flags=body.flags, vitals=body.vitals, expected_status=body.expected_status,
    )
    return _case_response(case)


@router.post("/{case_id}/dispatch", dependencies=[Depends(rate_limit)])
async def dispatch_case(
    case_id: str,
    body: Optional[RankingRequest] = None,
    actor: Actor = Depends(get_actor),
    state_machine: CaseStateMachine = Depends(get_state_machine)
):
    """Rank hospitals and record the snapshot on the case."""
    body = body or RankingRequest()
    case = await state_machine.dispatch(
        case_id, body.hospitals, actor,
        travel=body.travel, as_of=body.as_of, expected_status=body.expected_status,
    )
    return _case_response(case)


@router.post("/{case_id}/refresh-ranking", dependencies=[Depends(rate_limit)])
async def refresh_ranking(
    case_id: str,
    body: Optional[RankingRequest] = None,
    actor: Actor = Depends(get_actor),
    state_machine: CaseStateMachine = Depends(get_state_machine)
):
    body = body or RankingRequest()
    case = await state_machine.refresh_ranking(
        case_id, body.hospitals, actor, travel=body.travel, as_of=body.as_of,
    )
    return _case_response(case)


@router.post("/{case_id}/notify", dependencies=[Depends(rate_limit)])
async def notify_hospitals(
    case_id: str,
    body: Optional[TransitionRequest] = None,
    actor: Actor = Depends(get_actor),
    state_machine: CaseStateMachine = Depends(get_state_machine)
):
    """Start the next hospital notification cycle."""
    case = await state_machine.notify_hospitals(case_id, actor, expected_status=_expected(body))
    return _case_response(case)


@router.post("/{case_id}/accept", dependencies=[Depends(rate_limit)])
async def accept_case(
    case_id: str,
    body: HospitalResponseRequest,
    actor: Actor = Depends(get_actor),
    state_machine: CaseStateMachine = Depends(get_state_machine)
):
    case = await state_machine.accept(
        case_id, body.hospital_id, actor, expected_status=body.expected_status
    )
    return _case_response(case)


@router.post("/{case_id}/reject", dependencies=[Depends(rate_limit)])
async def reject_case(
    case_id: str,
    body: RejectRequest,
    actor: Actor = Depends(get_actor),
    state_machine: CaseStateMachine = Depends(get_state_machine)
):
    case = await state_machine.reject(
        case_id, body.hospital_id, body.reason_code, actor,
        reason_text=body.reason_text, expected_status=body.expected_status,
    )
    return _case_response(case)


@router.post("/{case_id}/escalate", dependencies=[Depends(rate_limit)])
async def escalate_case(
    case_id: str,
    body: Optional[EscalateRequest] = None,
    actor: Actor = Depends(get_actor),
    state_machine: CaseStateMachine = Depends(get_state_machine)
):
    """Escalate to the dispatcher. Repeating the call is harmless."""
    body = body or EscalateRequest()
    case = await state_machine.trigger_escalation(
        case_id, body.reason, actor, expected_status=body.expected_status
    )
    return _case_response(case)


@router.post("/{case_id}/enroute", dependencies=[Depends(rate_limit)])
async def mark_enroute(
    case_id: str,
    body: Optional[TransitionRequest] = None,
    actor: Actor = Depends(get_actor),
    state_machine: CaseStateMachine = Depends(get_state_machine)
):
    case = await state_machine.mark_enroute(case_id, actor, expected_status=_expected(body))
    return _case_response(case)


@router.post("/{case_id}/complete", dependencies=[Depends(rate_limit)])
async def complete_case(
    case_id: str,
    body: Optional[TransitionRequest] = None,
    actor: Actor = Depends(get_actor),
    state_machine: CaseStateMachine = Depends(get_state_machine)
):
    case = await state_machine.complete(case_id, actor, expected_status=_expected(body))
    return _case_response(case)


# ========================
# Dispatcher override
# ========================

@router.post("/{case_id}/override", dependencies=[Depends(rate_limit)])
async def override_destination(
    case_id: str,
    body: OverrideRequest,
    actor: Actor = Depends(get_actor),
    coordinator: OverrideCoordinator = Depends(get_override_coordinator)
):
    """Redirect the case to a hospital chosen by the dispatcher."""
    record = await coordinator.override(
        case_id, body.hospital_id, body.reason_code, actor,
        reason_text=body.reason_text,
        hospital_name=body.hospital_name,
        new_score=body.new_score,
        expected_status=body.expected_status,
    )
    case = await coordinator.state_machine.get_case(case_id)
    return {"override": record.to_dict(), "case": _case_response(case)}


@router.get("/{case_id}/overrides")
async def override_history(
    case_id: str,
    limit: int = Query(50, ge=1, le=500),
    coordinator: OverrideCoordinator = Depends(get_override_coordinator)
):
    records = await coordinator.history(case_id, limit=limit)
    return [r.to_dict() for r in records]


@router.get("/{case_id}/override-candidates")
async def override_candidates(
    case_id: str,
    coordinator: OverrideCoordinator = Depends(get_override_coordinator)
):
    """Alternative destinations, with previously rejecting hospitals penalised."""
    candidates = await coordinator.candidates(case_id)
    return [c.model_dump(mode="json") for c in candidates]


# ========================
# Handover
# ========================

@router.post("/{case_id}/handover/initiate", dependencies=[Depends(rate_limit)])
async def initiate_handover(
    case_id: str,
    body: Optional[TransitionRequest] = None,
    actor: Actor = Depends(get_actor),
    protocol: HandoverProtocol = Depends(get_handover_protocol)
):
    case = await protocol.initiate(case_id, actor, expected_status=_expected(body))
    return _case_response(case)


@router.post("/{case_id}/handover/acknowledge", dependencies=[Depends(rate_limit)])
async def acknowledge_handover(
    case_id: str,
    body: HospitalResponseRequest,
    actor: Actor = Depends(get_actor),
    protocol: HandoverProtocol = Depends(get_handover_protocol)
):
    case = await protocol.acknowledge(
        case_id, body.hospital_id, actor, expected_status=body.expected_status
    )
    return _case_response(case)
