"""
Two-phase handover protocol: the crew initiates, the receiving hospital
acknowledges. Both phases run through the state machine's guard.
"""

import logging
from datetime import datetime
from typing import Optional, Union

from dispatch_core.core.exceptions import IllegalTransition, Unauthorized
from dispatch_core.lifecycle.state_machine import CaseStateMachine, TransitionContext, require_role
from dispatch_core.models.case import CaseStatus, EmergencyCase, HandoverStatus
from dispatch_core.models.events import Actor, ActorRole, EventType
from dispatch_core.models.handover import (
    HandoverClinical,
    HandoverOperational,
    HandoverPatient,
    HandoverSummary,
    HandoverTimeline,
)
from dispatch_core.reasoning.escalation_policy import EscalationPolicy

logger = logging.getLogger(__name__)


def build_handover_summary(
    case: EmergencyCase,
    policy: EscalationPolicy,
    at: datetime
) -> HandoverSummary:
    """Snapshot everything the receiving team needs at the moment of handover."""
    golden = policy.golden_hour(case.created_at, at)
    vitals = case.vitals.model_dump(mode="json", exclude_none=True)
    consciousness = vitals.pop("consciousness_level", None)

    return HandoverSummary(
        case_id=case.id,
        generated_at=at,
        patient=HandoverPatient(
            name=case.patient.name or "Unknown",
            age=case.patient.age,
            gender=case.patient.gender,
        ),
        clinical=HandoverClinical(
            acuity_level=case.acuity_level,
            vitals=vitals,
            triage_flags=list(case.clinical_flags),
            trauma_flags=list(case.trauma_flags),
            consciousness_level=consciousness,
            is_critical=case.vitals.is_critical(),
        ),
        timeline=HandoverTimeline(
            created_at=case.created_at,
            dispatched_at=case.dispatched_at,
            accepted_at=case.accepted_at,
            enroute_at=case.enroute_at,
            escalation_triggered_at=case.escalation_triggered_at,
            override_used=case.override_used,
        ),
        operational=HandoverOperational(
            golden_hour_minutes_remaining=golden.minutes_remaining,
            golden_hour_breached=golden.breached,
            rejection_count=case.rejection_count,
            emergency_type=case.emergency_type.value,
            hospital_id=case.authoritative_hospital_id,
        ),
        attachments=list(case.attachments),
    )


class HandoverProtocol:
    """Initiate and acknowledge patient handover."""

    def __init__(self, state_machine: CaseStateMachine):
        self.state_machine = state_machine

    async def initiate(
        self,
        case_id: str,
        actor: Actor,
        expected_status: Union[CaseStatus, str, None] = None,
        now: Optional[datetime] = None
    ) -> EmergencyCase:
        """enroute -> handover_initiated; freezes the handover summary."""
        require_role(actor, {ActorRole.PARAMEDIC}, case_id, CaseStatus.HANDOVER_INITIATED.value)
        policy = self.state_machine.policy

        def mutate(ctx: TransitionContext) -> None:
            case = ctx.case
            if case.handover_status != HandoverStatus.NONE:
                raise IllegalTransition(
                    f"Handover for case {case.id} is already {case.handover_status.value}",
                    case_id=case.id,
                    current_status=case.status.value,
                    requested=CaseStatus.HANDOVER_INITIATED.value,
                )
            at = case.stamp("handover_initiated_at", ctx.at)
            case.handover_summary = build_handover_summary(case, policy, at)
            case.handover_status = HandoverStatus.INITIATED
            case.handover_initiated_by = actor.id
            ctx.audit(
                EventType.HANDOVER_INITIATED,
                hospital_id=case.authoritative_hospital_id,
                golden_hour_minutes_remaining=case.handover_summary.operational.golden_hour_minutes_remaining,
            )

        case = await self.state_machine.apply(
            case_id, CaseStatus.HANDOVER_INITIATED, actor, mutate,
            expected_status=expected_status, now=now,
        )
        logger.info(f"Handover initiated for case {case_id} to {case.authoritative_hospital_id}")
        return case

    async def acknowledge(
        self,
        case_id: str,
        hospital_id: str,
        actor: Actor,
        expected_status: Union[CaseStatus, str, None] = None,
        now: Optional[datetime] = None
    ) -> EmergencyCase:
        """
        handover_initiated -> handover_acknowledged.

        Status is checked before identity, so a repeated acknowledgement is an
        IllegalTransition whoever sends it.
        """

        def mutate(ctx: TransitionContext) -> None:
            case = ctx.case
            if (
                hospital_id != case.authoritative_hospital_id
                or actor.role != ActorRole.HOSPITAL
                or actor.hospital_id != hospital_id
            ):
                raise Unauthorized(
                    f"Hospital {hospital_id} is not the destination of case {case.id}",
                    case_id=case.id,
                    current_status=case.status.value,
                    requested=CaseStatus.HANDOVER_ACKNOWLEDGED.value,
                    details={"destination": case.authoritative_hospital_id},
                )
            case.stamp("handover_acknowledged_at", ctx.at)
            case.handover_status = HandoverStatus.ACKNOWLEDGED
            case.handover_acknowledged_by = actor.id
            ctx.audit(EventType.HANDOVER_ACKNOWLEDGED, hospital_id=hospital_id)

        case = await self.state_machine.apply(
            case_id, CaseStatus.HANDOVER_ACKNOWLEDGED, actor, mutate,
            expected_status=expected_status, now=now,
        )
        logger.info(f"Handover acknowledged for case {case_id} by {hospital_id}")
        return case
