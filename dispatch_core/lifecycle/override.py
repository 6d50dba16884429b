"""
Dispatcher override coordinator.

A dispatcher (or admin) may replace the automated destination with a hospital
of their choosing. The override, its audit record and the cancellation of
outstanding notifications are committed in one guarded write, and a later
re-ranking never reverts it.
"""

import logging
from datetime import datetime
from typing import List, Optional, Union

from dispatch_core.core.exceptions import ValidationFailure
from dispatch_core.lifecycle.state_machine import CaseStateMachine, TransitionContext, require_role
from dispatch_core.models.case import CandidateSnapshot, CaseStatus
from dispatch_core.models.events import Actor, ActorRole, EventType
from dispatch_core.models.override import OverrideReason, OverrideRecord
from dispatch_core.reasoning.suitability import apply_rejection_penalty

logger = logging.getLogger(__name__)

OVERRIDE_ROLES = frozenset({ActorRole.DISPATCHER, ActorRole.ADMIN})


class OverrideCoordinator:
    """Applies manual hospital substitutions through the state machine's guard."""

    def __init__(self, state_machine: CaseStateMachine):
        self.state_machine = state_machine
        self.store = state_machine.store

    async def override(
        self,
        case_id: str,
        hospital_id: str,
        reason_code: Union[OverrideReason, str],
        actor: Actor,
        reason_text: str = "",
        hospital_name: Optional[str] = None,
        new_score: Optional[float] = None,
        expected_status: Union[CaseStatus, str, None] = None,
        now: Optional[datetime] = None
    ) -> OverrideRecord:
        """
        Redirect a case to ``hospital_id``.

        Args:
            case_id: Case to override
            hospital_id: New destination hospital
            reason_code: One of OverrideReason
            actor: Dispatcher or admin
            reason_text: Free text, required for 'other'
            hospital_name: Display name (looked up when omitted)
            new_score: Suitability score of the new hospital (taken from the
                ranking snapshot when omitted)
            expected_status: Fail with StateConflict unless the case is in this status

        Returns:
            The committed OverrideRecord
        """
        require_role(actor, OVERRIDE_ROLES, case_id, CaseStatus.DISPATCHER_OVERRIDE.value)
        if not hospital_id:
            raise ValidationFailure("A destination hospital is required", case_id=case_id)
        try:
            reason = OverrideReason(reason_code)
        except ValueError:
            raise ValidationFailure(
                f"Unknown override reason: {reason_code!r}",
                case_id=case_id,
                details={"allowed": [r.value for r in OverrideReason]},
            )
        reason_text = (reason_text or "").strip()
        if reason == OverrideReason.OTHER and not reason_text:
            raise ValidationFailure("Reason text is required for 'other'", case_id=case_id)

        if hospital_name is None:
            profile = await self.store.get_hospital(hospital_id)
            if profile is not None:
                hospital_name = profile.name

        committed: List[OverrideRecord] = []

        def mutate(ctx: TransitionContext) -> None:
            case = ctx.case
            if hospital_id == case.authoritative_hospital_id:
                raise ValidationFailure(
                    f"Hospital {hospital_id} is already the destination of case {case.id}",
                    case_id=case.id,
                    current_status=case.status.value,
                    requested=CaseStatus.DISPATCHER_OVERRIDE.value,
                )

            previous_id = case.authoritative_hospital_id
            previous = case.candidate(previous_id) if previous_id else case.top_candidate()
            if previous_id is None and previous is not None:
                previous_id = previous.hospital_id

            chosen = case.candidate(hospital_id)
            score = new_score if new_score is not None else (chosen.suitability_score if chosen else None)
            previous_score = previous.suitability_score if previous else None
            difference = None
            if previous_score is not None and score is not None:
                difference = round(previous_score - score, 1)

            record = OverrideRecord(
                case_id=case.id,
                previous_hospital_id=previous_id,
                previous_hospital_name=previous.hospital_name if previous else None,
                previous_score=previous_score,
                new_hospital_id=hospital_id,
                new_hospital_name=hospital_name or (chosen.hospital_name if chosen else "Unknown"),
                new_score=score,
                score_difference=difference,
                reason_code=reason,
                reason_text=reason_text,
                actor_id=actor.id,
                actor_role=actor.role.value,
                timestamp=ctx.at,
            )
            ctx.append_override(record)

            cancelled = case.cancel_pending(ctx.at)
            case.override_used = True
            case.override_hospital_id = hospital_id
            case.accepted_hospital_id = None
            case.awaiting_response_since = None

            ctx.audit(
                EventType.DISPATCHER_OVERRIDE,
                hospital_id=hospital_id,
                previous_hospital_id=previous_id,
                reason_code=reason.value,
                score_difference=difference,
                cancelled=cancelled,
            )
            committed[:] = [record]

        await self.state_machine.apply(
            case_id, CaseStatus.DISPATCHER_OVERRIDE, actor, mutate,
            expected_status=expected_status, now=now,
        )
        record = committed[0]
        logger.info(
            f"Override on case {case_id}: {record.previous_hospital_id} -> {hospital_id} "
            f"({reason.value}) by {actor.id}"
        )
        return record

    async def history(self, case_id: str, limit: Optional[int] = 50) -> List[OverrideRecord]:
        """All override records for a case, newest first."""
        await self.state_machine.get_case(case_id)
        return await self.store.list_overrides(case_id=case_id, limit=limit)

    async def candidates(self, case_id: str) -> List[CandidateSnapshot]:
        """
        Hospitals a dispatcher may override to, best first.

        Hospitals that already rejected the case stay listed with a penalised
        score; the current destination is excluded.
        """
        case = await self.state_machine.get_case(case_id)
        ranked = apply_rejection_penalty(case.ranking, case.notifications)
        return [
            c for c in ranked
            if c.hospital_id != case.authoritative_hospital_id and not c.disqualified
        ]
