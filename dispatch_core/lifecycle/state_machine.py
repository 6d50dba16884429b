"""
Case state machine: the single authority for case lifecycle transitions.

Every operation is one guarded read-modify-write through the store. The
guard re-reads the case inside the atomic unit, validates the edge, the
actor and any expected status, applies the mutation and appends history.
After commit the change is published on the event bus and audit events are
written best-effort.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from dispatch_core.core.clock import ensure_aware, utcnow
from dispatch_core.core.config import Config
from dispatch_core.core.event_bus import EventBus
from dispatch_core.core.exceptions import (
    IllegalTransition,
    StateConflict,
    Unauthorized,
    ValidationFailure,
)
from dispatch_core.core.guard import with_store_retry
from dispatch_core.core.store import CaseStore, CaseTransaction, TransactionResult
from dispatch_core.lifecycle.audit import AuditLog
from dispatch_core.models.case import (
    STATUS_RANK,
    CaseStatus,
    EmergencyCase,
    EscalationReason,
    HospitalNotification,
    NotificationResponse,
    RejectionReason,
    StatusChange,
    Vitals,
)
from dispatch_core.models.events import Actor, ActorRole, AuditEvent, CaseChangedEvent, EventType
from dispatch_core.models.hospital import HospitalProfile
from dispatch_core.models.override import OverrideRecord
from dispatch_core.models.ranking import HospitalRanking
from dispatch_core.reasoning.escalation_policy import EscalationPolicy
from dispatch_core.reasoning.suitability import HospitalSuitabilityRanker

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[CaseStatus, frozenset] = {
    CaseStatus.CREATED: frozenset({CaseStatus.TRIAGED}),
    CaseStatus.TRIAGED: frozenset({CaseStatus.DISPATCHED}),
    CaseStatus.DISPATCHED: frozenset({
        CaseStatus.AWAITING_RESPONSE,
        CaseStatus.ESCALATION_REQUIRED,
    }),
    CaseStatus.AWAITING_RESPONSE: frozenset({
        CaseStatus.ACCEPTED,
        CaseStatus.REJECTED,
        CaseStatus.ESCALATION_REQUIRED,
        CaseStatus.DISPATCHER_OVERRIDE,
    }),
    CaseStatus.REJECTED: frozenset({
        CaseStatus.AWAITING_RESPONSE,
        CaseStatus.ESCALATION_REQUIRED,
        CaseStatus.DISPATCHER_OVERRIDE,
    }),
    CaseStatus.ACCEPTED: frozenset({CaseStatus.ENROUTE, CaseStatus.DISPATCHER_OVERRIDE}),
    CaseStatus.ESCALATION_REQUIRED: frozenset({CaseStatus.DISPATCHER_OVERRIDE}),
    CaseStatus.DISPATCHER_OVERRIDE: frozenset({
        CaseStatus.DISPATCHER_OVERRIDE,
        CaseStatus.ENROUTE,
    }),
    CaseStatus.ENROUTE: frozenset({CaseStatus.HANDOVER_INITIATED}),
    CaseStatus.HANDOVER_INITIATED: frozenset({CaseStatus.HANDOVER_ACKNOWLEDGED}),
    CaseStatus.HANDOVER_ACKNOWLEDGED: frozenset({CaseStatus.COMPLETED}),
    CaseStatus.COMPLETED: frozenset(),
}

TRIAGE_ROLES = frozenset({ActorRole.PARAMEDIC, ActorRole.DISPATCHER, ActorRole.SYSTEM, ActorRole.ADMIN})
DISPATCH_ROLES = frozenset({ActorRole.DISPATCHER, ActorRole.SYSTEM, ActorRole.ADMIN})
ESCALATION_ROLES = frozenset({ActorRole.SYSTEM, ActorRole.DISPATCHER, ActorRole.ADMIN})


def is_allowed(current: CaseStatus, target: CaseStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def require_role(
    actor: Actor,
    roles: Iterable[ActorRole],
    case_id: Optional[str] = None,
    requested: Optional[str] = None
) -> None:
    """Raise Unauthorized unless the actor holds one of the roles."""
    if actor.role not in roles:
        raise Unauthorized(
            f"Role {actor.role.value} may not {requested or 'perform this action'}",
            case_id=case_id,
            requested=requested,
        )


def require_hospital_identity(actor: Actor, hospital_id: str, case_id: str, requested: str) -> None:
    """Raise Unauthorized unless the actor is staff of ``hospital_id``."""
    if actor.role != ActorRole.HOSPITAL or not actor.hospital_id or actor.hospital_id != hospital_id:
        raise Unauthorized(
            f"Actor {actor.id} cannot act for hospital {hospital_id}",
            case_id=case_id,
            requested=requested,
            details={"hospital_id": hospital_id, "actor_hospital_id": actor.hospital_id},
        )


def _coerce_status(value: Union[CaseStatus, str, None]) -> Optional[CaseStatus]:
    if value is None:
        return None
    try:
        return CaseStatus(value)
    except ValueError:
        raise ValidationFailure(f"Unknown status: {value}")


class TransitionContext:
    """
    Mutable view handed to mutation callbacks inside the guard.

    Collects audit events that are written once the transaction commits.
    """

    def __init__(self, txn: CaseTransaction, actor: Actor, at: datetime):
        self.txn = txn
        self.actor = actor
        self.at = at
        self.audit_events: List[AuditEvent] = []

    @property
    def case(self) -> EmergencyCase:
        return self.txn.case

    def append_override(self, record: OverrideRecord) -> None:
        self.txn.append_override(record)

    def audit(self, event_type: EventType, hospital_id: Optional[str] = None, **metadata) -> None:
        self.audit_events.append(AuditEvent(
            event_type=event_type,
            case_id=self.case.id,
            hospital_id=hospital_id,
            actor_id=self.actor.id,
            timestamp=self.at,
            metadata=metadata,
        ))

    def transition(self, target: CaseStatus) -> None:
        """Validate and record a status change on the case."""
        case = self.case
        if case.is_terminal:
            raise IllegalTransition(
                f"Case {case.id} is completed and immutable",
                case_id=case.id,
                current_status=case.status.value,
                requested=target.value,
            )
        if not is_allowed(case.status, target):
            raise IllegalTransition(
                f"Cannot move case {case.id} from {case.status.value} to {target.value}",
                case_id=case.id,
                current_status=case.status.value,
                requested=target.value,
            )
        case.status_history.append(StatusChange(
            from_status=case.status,
            to_status=target,
            at=max(self.at, case.latest_timestamp()),
            actor_id=self.actor.id,
        ))
        case.status = target


class CaseStateMachine:
    """
    Central authority for case transitions.

    Holds no in-process lock: the store's transact is the only
    serialization point, so several instances may share one store.
    """

    def __init__(
        self,
        store: CaseStore,
        event_bus: Optional[EventBus] = None,
        ranker: Optional[HospitalSuitabilityRanker] = None,
        policy: Optional[EscalationPolicy] = None,
        audit: Optional[AuditLog] = None,
        retry_attempts: Optional[int] = None,
        retry_backoff_seconds: Optional[float] = None
    ):
        self.store = store
        self.event_bus = event_bus or EventBus()
        self.ranker = ranker or HospitalSuitabilityRanker()
        self.policy = policy or EscalationPolicy()
        self.audit = audit or AuditLog(store)
        self.retry_attempts = retry_attempts or Config.STORE_RETRY_ATTEMPTS
        self.retry_backoff_seconds = (
            Config.STORE_RETRY_BACKOFF_SECONDS if retry_backoff_seconds is None else retry_backoff_seconds
        )

        logger.info("CaseStateMachine initialized")

    # ========================
    # Guard primitive
    # ========================

    async def _commit(
        self,
        case_id: str,
        actor: Actor,
        body: Callable[[TransitionContext], Any],
        now: Optional[datetime] = None,
        expected_status: Union[CaseStatus, str, None] = None,
        description: str = "transition"
    ) -> TransactionResult:
        """Run ``body`` inside one guarded store transaction, then publish and audit."""
        at = ensure_aware(now) or utcnow()
        expected = _coerce_status(expected_status)

        def guard(txn: CaseTransaction) -> List[AuditEvent]:
            ctx = TransitionContext(txn, actor, at)
            if expected is not None and txn.case.status != expected:
                raise StateConflict(
                    f"Case {case_id} is {txn.case.status.value}, expected {expected.value}",
                    case_id=case_id,
                    current_status=txn.case.status.value,
                    requested=description,
                )
            body(ctx)
            return ctx.audit_events

        result = await with_store_retry(
            lambda: self.store.transact(case_id, guard),
            attempts=self.retry_attempts,
            backoff_seconds=self.retry_backoff_seconds,
            description=f"{description} on {case_id}",
        )

        if result.written:
            before, after = result.before.status, result.case.status
            if before != after:
                logger.info(f"Case {case_id}: {before.value} -> {after.value} by {actor.id} ({description})")
            else:
                logger.info(f"Case {case_id}: {description} by {actor.id}")
            await self._publish(result, actor, at)
            await self.audit.record_all(result.value or [])
        else:
            logger.debug(f"Case {case_id}: {description} was a no-op")
        return result

    async def _publish(self, result: TransactionResult, actor: Actor, at: datetime) -> None:
        event = CaseChangedEvent(
            case_id=result.case.id,
            from_status=result.before.status.value,
            to_status=result.case.status.value,
            actor_id=actor.id,
            timestamp=at,
            snapshot=result.case.to_summary(),
        )
        await self.event_bus.publish(event)

    async def apply(
        self,
        case_id: str,
        target: CaseStatus,
        actor: Actor,
        mutate: Optional[Callable[[TransitionContext], None]] = None,
        expected_status: Union[CaseStatus, str, None] = None,
        now: Optional[datetime] = None
    ) -> EmergencyCase:
        """
        Guarded transition to ``target``.

        The edge is validated against the freshly read case before ``mutate``
        runs, so callers only add their own preconditions and field changes.

        Args:
            case_id: Case to transition
            target: Requested status
            actor: Acting identity
            mutate: Optional callback receiving the TransitionContext
            expected_status: Fail with StateConflict unless the case is in this status
            now: Transition time (defaults to now)

        Returns:
            The committed case
        """
        target = CaseStatus(target)

        def body(ctx: TransitionContext) -> None:
            case = ctx.case
            if case.is_terminal or not is_allowed(case.status, target):
                raise IllegalTransition(
                    f"Cannot move case {case.id} from {case.status.value} to {target.value}",
                    case_id=case.id,
                    current_status=case.status.value,
                    requested=target.value,
                )
            if mutate is not None:
                mutate(ctx)
            ctx.transition(target)

        result = await self._commit(
            case_id, actor, body, now=now, expected_status=expected_status,
            description=target.value,
        )
        return result.case

    # ========================
    # Intake, triage and dispatch
    # ========================

    async def create_case(self, case: EmergencyCase, actor: Optional[Actor] = None) -> EmergencyCase:
        """Store a new case in status created."""
        if case.status != CaseStatus.CREATED:
            raise ValidationFailure(
                f"New cases must start as created, got {case.status.value}",
                case_id=case.id,
            )
        actor = actor or Actor.system()
        case = case.model_copy(deep=True)
        case.version = 0
        if not case.status_history:
            case.status_history.append(StatusChange(
                to_status=CaseStatus.CREATED, at=case.created_at, actor_id=actor.id
            ))

        stored = await with_store_retry(
            lambda: self.store.create(case),
            attempts=self.retry_attempts,
            backoff_seconds=self.retry_backoff_seconds,
            description=f"create {case.id}",
        )
        logger.info(f"Created case {stored.id} (type {stored.emergency_type.value})")
        await self.event_bus.publish(CaseChangedEvent(
            case_id=stored.id,
            to_status=stored.status.value,
            actor_id=actor.id,
            timestamp=stored.created_at,
            snapshot=stored.to_summary(),
        ))
        return stored

    async def triage(
        self,
        case_id: str,
        acuity_level: int,
        actor: Actor,
        flags: Optional[Sequence[str]] = None,
        vitals: Optional[Vitals] = None,
        expected_status: Union[CaseStatus, str, None] = None,
        now: Optional[datetime] = None
    ) -> EmergencyCase:
        """created -> triaged, recording acuity and triage flags."""
        require_role(actor, TRIAGE_ROLES, case_id, CaseStatus.TRIAGED.value)
        if not isinstance(acuity_level, int) or isinstance(acuity_level, bool) or not 1 <= acuity_level <= 5:
            raise ValidationFailure(f"Acuity level must be 1-5, got {acuity_level!r}", case_id=case_id)

        def mutate(ctx: TransitionContext) -> None:
            case = ctx.case
            case.acuity_level = acuity_level
            for flag in flags or []:
                if flag not in case.clinical_flags:
                    case.clinical_flags.append(flag)
            if vitals is not None:
                case.vitals = vitals
            case.stamp("triaged_at", ctx.at)

        return await self.apply(case_id, CaseStatus.TRIAGED, actor, mutate, expected_status, now)

    async def rank_case(
        self,
        case_id: str,
        hospitals: Optional[Sequence[Union[HospitalProfile, Mapping[str, Any]]]] = None,
        travel: Optional[Mapping[str, Any]] = None,
        as_of: Optional[datetime] = None
    ) -> HospitalRanking:
        """Rank hospitals for a case without writing anything."""
        case = await self.get_case(case_id)
        if hospitals is None:
            hospitals = await self.store.list_hospitals()
        return self.ranker.rank(case.requirements(), hospitals, travel=travel, as_of=as_of)

    async def dispatch(
        self,
        case_id: str,
        hospitals: Optional[Sequence[Union[HospitalProfile, Mapping[str, Any]]]],
        actor: Actor,
        travel: Optional[Mapping[str, Any]] = None,
        as_of: Optional[datetime] = None,
        expected_status: Union[CaseStatus, str, None] = None,
        now: Optional[datetime] = None
    ) -> EmergencyCase:
        """triaged -> dispatched, storing the ranking snapshot."""
        require_role(actor, DISPATCH_ROLES, case_id, CaseStatus.DISPATCHED.value)
        ranking = await self.rank_case(case_id, hospitals, travel, as_of)
        snapshot = ranking.to_snapshot()

        def mutate(ctx: TransitionContext) -> None:
            ctx.case.ranking = [c.model_copy() for c in snapshot]
            ctx.case.stamp("dispatched_at", ctx.at)

        return await self.apply(case_id, CaseStatus.DISPATCHED, actor, mutate, expected_status, now)

    async def refresh_ranking(
        self,
        case_id: str,
        hospitals: Optional[Sequence[Union[HospitalProfile, Mapping[str, Any]]]],
        actor: Actor,
        travel: Optional[Mapping[str, Any]] = None,
        as_of: Optional[datetime] = None,
        now: Optional[datetime] = None
    ) -> EmergencyCase:
        """
        Replace the ranking snapshot before the crew is en route.

        Never touches the override target, the accepted hospital or the status.
        """
        require_role(actor, DISPATCH_ROLES, case_id, "refresh_ranking")
        ranking = await self.rank_case(case_id, hospitals, travel, as_of)
        snapshot = ranking.to_snapshot()

        def body(ctx: TransitionContext) -> None:
            case = ctx.case
            rank = STATUS_RANK[case.status]
            if rank < STATUS_RANK[CaseStatus.DISPATCHED] or rank >= STATUS_RANK[CaseStatus.ENROUTE]:
                raise IllegalTransition(
                    f"Ranking cannot be refreshed in status {case.status.value}",
                    case_id=case.id,
                    current_status=case.status.value,
                    requested="refresh_ranking",
                )
            case.ranking = [c.model_copy() for c in snapshot]
            top = case.top_candidate()
            ctx.audit(
                EventType.RANKING_REFRESHED,
                hospital_id=top.hospital_id if top else None,
                candidates=len(snapshot),
                override_active=case.override_used,
            )

        result = await self._commit(case_id, actor, body, now=now, description="refresh_ranking")
        return result.case

    # ========================
    # Hospital response cycle
    # ========================

    async def notify_hospitals(
        self,
        case_id: str,
        actor: Actor,
        expected_status: Union[CaseStatus, str, None] = None,
        now: Optional[datetime] = None
    ) -> EmergencyCase:
        """
        Start a notification cycle: dispatched|rejected -> awaiting_response.

        Notifies the next best candidates not yet contacted (two in parallel
        for acuity 1). With no eligible candidate left the same write
        escalates the case instead.
        """
        require_role(actor, DISPATCH_ROLES, case_id, CaseStatus.AWAITING_RESPONSE.value)

        def body(ctx: TransitionContext) -> None:
            case = ctx.case
            if case.status not in (CaseStatus.DISPATCHED, CaseStatus.REJECTED):
                raise IllegalTransition(
                    f"Cannot notify hospitals for case in {case.status.value}",
                    case_id=case.id,
                    current_status=case.status.value,
                    requested=CaseStatus.AWAITING_RESPONSE.value,
                )

            already = set(case.notified_hospital_ids())
            eligible = [
                c for c in case.ranking
                if not c.disqualified and c.hospital_id not in already
            ]
            targets = eligible[:self.policy.notification_fanout(case.acuity_level)]

            if not targets:
                case.escalation_reason = EscalationReason.NO_ELIGIBLE_HOSPITALS
                case.awaiting_response_since = None
                case.stamp("escalation_triggered_at", ctx.at)
                ctx.transition(CaseStatus.ESCALATION_REQUIRED)
                ctx.audit(
                    EventType.ESCALATION_TRIGGERED,
                    reason=EscalationReason.NO_ELIGIBLE_HOSPITALS.value,
                    rejection_count=case.rejection_count,
                )
                return

            for candidate in targets:
                case.notifications.append(HospitalNotification(
                    hospital_id=candidate.hospital_id,
                    hospital_name=candidate.hospital_name,
                    notified_at=ctx.at,
                    score=candidate.suitability_score,
                    rank=candidate.rank,
                ))
                ctx.audit(
                    EventType.HOSPITAL_NOTIFIED,
                    hospital_id=candidate.hospital_id,
                    score=candidate.suitability_score,
                    rank=candidate.rank,
                    parallel=len(targets) > 1,
                )
            case.awaiting_response_since = ctx.at
            ctx.transition(CaseStatus.AWAITING_RESPONSE)

        result = await self._commit(
            case_id, actor, body, now=now, expected_status=expected_status,
            description="notify_hospitals",
        )
        return result.case

    @staticmethod
    def _check_response_window(case: EmergencyCase, hospital_id: str, requested: str) -> HospitalNotification:
        """Preconditions shared by accept and reject."""
        if case.status != CaseStatus.AWAITING_RESPONSE:
            error = StateConflict if STATUS_RANK[case.status] >= STATUS_RANK[CaseStatus.AWAITING_RESPONSE] else IllegalTransition
            raise error(
                f"Case {case.id} is no longer awaiting a response ({case.status.value})",
                case_id=case.id,
                current_status=case.status.value,
                requested=requested,
            )
        notification = case.notification_for(hospital_id)
        if notification is None:
            raise Unauthorized(
                f"Hospital {hospital_id} was not notified for case {case.id}",
                case_id=case.id,
                current_status=case.status.value,
                requested=requested,
            )
        if not notification.is_pending:
            raise StateConflict(
                f"Notification to {hospital_id} is already {notification.response.value}",
                case_id=case.id,
                current_status=case.status.value,
                requested=requested,
            )
        return notification

    async def accept(
        self,
        case_id: str,
        hospital_id: str,
        actor: Actor,
        expected_status: Union[CaseStatus, str, None] = None,
        now: Optional[datetime] = None
    ) -> EmergencyCase:
        """awaiting_response -> accepted. First acceptance wins; the rest conflict."""
        require_hospital_identity(actor, hospital_id, case_id, CaseStatus.ACCEPTED.value)

        def body(ctx: TransitionContext) -> None:
            case = ctx.case
            if case.accepted_hospital_id is not None:
                raise StateConflict(
                    f"Case {case.id} already accepted by {case.accepted_hospital_id}",
                    case_id=case.id,
                    current_status=case.status.value,
                    requested=CaseStatus.ACCEPTED.value,
                    details={"accepted_hospital_id": case.accepted_hospital_id},
                )
            notification = self._check_response_window(case, hospital_id, CaseStatus.ACCEPTED.value)
            notification.response = NotificationResponse.ACCEPTED
            notification.responded_at = ctx.at
            cancelled = case.cancel_pending(ctx.at)

            case.accepted_hospital_id = hospital_id
            case.awaiting_response_since = None
            case.stamp("accepted_at", ctx.at)
            ctx.transition(CaseStatus.ACCEPTED)

            ctx.audit(EventType.HOSPITAL_ACCEPTED, hospital_id=hospital_id, score=notification.score)
            for other in cancelled:
                ctx.audit(EventType.PARALLEL_CANCELLED, hospital_id=other, accepted_by=hospital_id)

        result = await self._commit(
            case_id, actor, body, now=now, expected_status=expected_status, description="accept",
        )
        return result.case

    async def reject(
        self,
        case_id: str,
        hospital_id: str,
        reason_code: Union[RejectionReason, str],
        actor: Actor,
        reason_text: str = "",
        expected_status: Union[CaseStatus, str, None] = None,
        now: Optional[datetime] = None
    ) -> EmergencyCase:
        """
        Record a rejection with a mandatory reason.

        Reaching the acuity's rejection ceiling escalates in the same write.
        A rejection arriving after the case has already escalated only
        records its reason on the cancelled notification.
        """
        try:
            reason = RejectionReason(reason_code)
        except ValueError:
            raise ValidationFailure(
                f"Unknown rejection reason: {reason_code!r}",
                case_id=case_id,
                details={"allowed": [r.value for r in RejectionReason]},
            )
        reason_text = (reason_text or "").strip()
        if reason == RejectionReason.OTHER and not reason_text:
            raise ValidationFailure("Reason text is required for 'other'", case_id=case_id)
        require_hospital_identity(actor, hospital_id, case_id, CaseStatus.REJECTED.value)
        reason_label = f"{reason.value}: {reason_text}" if reason_text else reason.value

        def body(ctx: TransitionContext) -> None:
            case = ctx.case
            if case.status == CaseStatus.ESCALATION_REQUIRED:
                late = case.notification_for(hospital_id)
                if late is not None and late.response == NotificationResponse.CANCELLED:
                    # Escalation already cancelled this request; keep the reason only
                    if late.reason is None:
                        late.reason = reason_label
                        ctx.audit(
                            EventType.HOSPITAL_REJECTED,
                            hospital_id=hospital_id,
                            reason_code=reason.value,
                            reason_text=reason_text,
                            rejection_count=case.rejection_count,
                            after_escalation=True,
                        )
                    return

            notification = self._check_response_window(case, hospital_id, CaseStatus.REJECTED.value)
            notification.response = NotificationResponse.REJECTED
            notification.responded_at = ctx.at
            notification.reason = reason_label
            case.rejection_count += 1
            ctx.audit(
                EventType.HOSPITAL_REJECTED,
                hospital_id=hospital_id,
                reason_code=reason.value,
                reason_text=reason_text,
                rejection_count=case.rejection_count,
            )

            elapsed = None
            if case.awaiting_response_since is not None:
                elapsed = (ctx.at - case.awaiting_response_since).total_seconds()
            assessment = self.policy.evaluate(case.acuity_level, elapsed, case.rejection_count)

            if case.rejection_count >= assessment.rejection_ceiling:
                cancelled = case.cancel_pending(ctx.at)
                case.escalation_reason = assessment.reason
                case.awaiting_response_since = None
                case.stamp("escalation_triggered_at", ctx.at)
                ctx.transition(CaseStatus.ESCALATION_REQUIRED)
                ctx.audit(
                    EventType.ESCALATION_TRIGGERED,
                    reason=assessment.reason.value,
                    rejection_count=case.rejection_count,
                    rejection_ceiling=assessment.rejection_ceiling,
                )
                for other in cancelled:
                    ctx.audit(EventType.PARALLEL_CANCELLED, hospital_id=other, escalated=True)
            elif case.pending_notifications():
                # Another notified hospital may still accept
                pass
            else:
                # The response timer keeps running until someone is re-notified
                ctx.transition(CaseStatus.REJECTED)

        result = await self._commit(
            case_id, actor, body, now=now, expected_status=expected_status, description="reject",
        )
        return result.case

    async def trigger_escalation(
        self,
        case_id: str,
        reason: Union[EscalationReason, str],
        actor: Actor,
        now: Optional[datetime] = None,
        expected_status: Union[CaseStatus, str, None] = None
    ) -> EmergencyCase:
        """
        Escalate to the dispatcher. Idempotent.

        A case already escalated, accepted or further along is returned
        unchanged. For timeouts the policy is re-evaluated inside the guard,
        so a stale timer never escalates a case that has since moved on.
        """
        require_role(actor, ESCALATION_ROLES, case_id, CaseStatus.ESCALATION_REQUIRED.value)
        try:
            reason = EscalationReason(reason)
        except ValueError:
            raise ValidationFailure(f"Unknown escalation reason: {reason!r}", case_id=case_id)

        def body(ctx: TransitionContext) -> None:
            case = ctx.case
            if STATUS_RANK[case.status] >= STATUS_RANK[CaseStatus.ESCALATION_REQUIRED]:
                return
            if case.status not in (
                CaseStatus.DISPATCHED, CaseStatus.AWAITING_RESPONSE, CaseStatus.REJECTED
            ):
                raise IllegalTransition(
                    f"Cannot escalate case in {case.status.value}",
                    case_id=case.id,
                    current_status=case.status.value,
                    requested=CaseStatus.ESCALATION_REQUIRED.value,
                )

            effective_reason = reason
            if reason == EscalationReason.TIMEOUT:
                assessment = self.policy.evaluate_case(case, ctx.at)
                if not assessment.escalation_due:
                    return
                effective_reason = assessment.reason

            cancelled = case.cancel_pending(ctx.at)
            case.escalation_reason = effective_reason
            case.awaiting_response_since = None
            case.stamp("escalation_triggered_at", ctx.at)
            ctx.transition(CaseStatus.ESCALATION_REQUIRED)
            ctx.audit(
                EventType.ESCALATION_TRIGGERED,
                reason=effective_reason.value,
                rejection_count=case.rejection_count,
            )
            for other in cancelled:
                ctx.audit(EventType.PARALLEL_CANCELLED, hospital_id=other, escalated=True)

        result = await self._commit(
            case_id, actor, body, now=now, expected_status=expected_status,
            description="trigger_escalation",
        )
        return result.case

    # ========================
    # Transport and completion
    # ========================

    async def mark_enroute(
        self,
        case_id: str,
        actor: Actor,
        expected_status: Union[CaseStatus, str, None] = None,
        now: Optional[datetime] = None
    ) -> EmergencyCase:
        """accepted|dispatcher_override -> enroute (paramedic only)."""
        require_role(actor, {ActorRole.PARAMEDIC}, case_id, CaseStatus.ENROUTE.value)

        def mutate(ctx: TransitionContext) -> None:
            case = ctx.case
            if case.authoritative_hospital_id is None:
                raise IllegalTransition(
                    f"Case {case.id} has no destination hospital",
                    case_id=case.id,
                    current_status=case.status.value,
                    requested=CaseStatus.ENROUTE.value,
                )
            case.stamp("enroute_at", ctx.at)

        return await self.apply(case_id, CaseStatus.ENROUTE, actor, mutate, expected_status, now)

    async def complete(
        self,
        case_id: str,
        actor: Actor,
        expected_status: Union[CaseStatus, str, None] = None,
        now: Optional[datetime] = None
    ) -> EmergencyCase:
        """handover_acknowledged -> completed."""
        if actor.role not in (ActorRole.HOSPITAL, ActorRole.DISPATCHER, ActorRole.ADMIN):
            raise Unauthorized(
                f"Role {actor.role.value} may not complete cases",
                case_id=case_id,
                requested=CaseStatus.COMPLETED.value,
            )

        def mutate(ctx: TransitionContext) -> None:
            case = ctx.case
            if actor.role == ActorRole.HOSPITAL and actor.hospital_id != case.authoritative_hospital_id:
                raise Unauthorized(
                    f"Only the receiving hospital may complete case {case.id}",
                    case_id=case.id,
                    current_status=case.status.value,
                    requested=CaseStatus.COMPLETED.value,
                )
            case.stamp("completed_at", ctx.at)
            ctx.audit(EventType.CASE_COMPLETED, hospital_id=case.authoritative_hospital_id)

        return await self.apply(case_id, CaseStatus.COMPLETED, actor, mutate, expected_status, now)

    # ========================
    # Reads
    # ========================

    async def get_case(self, case_id: str) -> EmergencyCase:
        return await with_store_retry(
            lambda: self.store.get(case_id),
            attempts=self.retry_attempts,
            backoff_seconds=self.retry_backoff_seconds,
            description=f"get {case_id}",
        )

    async def list_cases(self, statuses: Optional[Iterable[CaseStatus]] = None) -> List[EmergencyCase]:
        return await self.store.list_cases(statuses)

    async def authoritative_hospital(self, case_id: str) -> Optional[str]:
        """The hospital currently responsible for the case, if any."""
        case = await self.get_case(case_id)
        return case.authoritative_hospital_id

    async def notification_targets(self, case_id: str) -> List[str]:
        """
        Hospitals that should be alerted about the case right now.

        The authoritative hospital once one is resolved, otherwise every
        hospital with a pending notification.
        """
        case = await self.get_case(case_id)
        if case.authoritative_hospital_id:
            return [case.authoritative_hospital_id]
        return [n.hospital_id for n in case.pending_notifications()]

    async def escalation_status(self, case_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Timeout, rejection and golden-hour position of a case. No side effects."""
        now = ensure_aware(now) or utcnow()
        case = await self.get_case(case_id)
        assessment = self.policy.evaluate_case(case, now)
        golden = self.policy.golden_hour(case.created_at, now, case.handover_acknowledged_at)
        return {
            "case_id": case.id,
            "status": case.status.value,
            "acuity_level": case.effective_acuity,
            "awaiting_response_since": (
                case.awaiting_response_since.isoformat() if case.awaiting_response_since else None
            ),
            "escalation_reason": case.escalation_reason.value if case.escalation_reason else None,
            **assessment.to_dict(),
            "golden_hour": golden.model_dump(mode="json"),
        }
