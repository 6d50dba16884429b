"""
Tests for the case state machine: transitions, guards, concurrency and escalation.
"""

import asyncio
from datetime import timedelta

import pytest

from dispatch_core.core.exceptions import (
    CaseNotFound,
    IllegalTransition,
    StateConflict,
    Unauthorized,
    ValidationFailure,
)
from dispatch_core.lifecycle.state_machine import ALLOWED_TRANSITIONS
from dispatch_core.models.case import (
    STATUS_RANK,
    CaseStatus,
    EscalationReason,
    NotificationResponse,
    RejectionReason,
)
from dispatch_core.models.events import Actor, ActorRole, EventType

from .conftest import NOW, minutes


class TestIntakeAndDispatch:

    def test_create_triage_dispatch(self, machine, new_case, paramedic, dispatcher, hospitals):
        async def scenario():
            case = await machine.create_case(new_case(), paramedic)
            assert case.status == CaseStatus.CREATED
            assert case.status_history[0].to_status == CaseStatus.CREATED

            case = await machine.triage(case.id, 2, paramedic, flags=["chest_pain"], now=NOW + minutes(1))
            assert case.status == CaseStatus.TRIAGED
            assert case.acuity_level == 2
            assert case.clinical_flags == ["chest_pain"]

            case = await machine.dispatch(case.id, hospitals, dispatcher, as_of=NOW, now=NOW + minutes(2))
            assert case.status == CaseStatus.DISPATCHED
            assert case.dispatched_at == NOW + minutes(2)
            assert [c.hospital_id for c in case.ranking][0] == "hosp_city"
            assert case.ranking[-1].disqualified
            return case

        case = asyncio.run(scenario())
        assert case.version == 2

    def test_duplicate_case_id_is_rejected(self, machine, new_case, paramedic):
        async def scenario():
            await machine.create_case(new_case(id="case_dup"), paramedic)
            await machine.create_case(new_case(id="case_dup"), paramedic)

        with pytest.raises(ValidationFailure):
            asyncio.run(scenario())

    def test_unknown_case(self, machine):
        with pytest.raises(CaseNotFound):
            asyncio.run(machine.get_case("case_missing"))

    @pytest.mark.parametrize("acuity", [0, 6, "2", True])
    def test_triage_validates_acuity(self, machine, new_case, paramedic, acuity):
        async def scenario():
            case = await machine.create_case(new_case(), paramedic)
            await machine.triage(case.id, acuity, paramedic)

        with pytest.raises(ValidationFailure):
            asyncio.run(scenario())

    def test_paramedic_cannot_dispatch(self, machine, new_case, paramedic, hospitals):
        async def scenario():
            case = await machine.create_case(new_case(), paramedic)
            await machine.triage(case.id, 3, paramedic)
            await machine.dispatch(case.id, hospitals, paramedic)

        with pytest.raises(Unauthorized):
            asyncio.run(scenario())

    def test_skipping_states_fails_closed(self, machine, new_case, paramedic, dispatcher, hospitals):
        async def scenario():
            case = await machine.create_case(new_case(), paramedic)
            await machine.dispatch(case.id, hospitals, dispatcher)

        with pytest.raises(IllegalTransition) as exc_info:
            asyncio.run(scenario())
        assert exc_info.value.current_status == CaseStatus.CREATED.value

    def test_expected_status_mismatch_is_a_conflict(self, machine, new_case, paramedic):
        async def scenario():
            case = await machine.create_case(new_case(), paramedic)
            await machine.triage(case.id, 3, paramedic)
            await machine.triage(case.id, 3, paramedic, expected_status=CaseStatus.CREATED)

        with pytest.raises(StateConflict):
            asyncio.run(scenario())

    def test_every_status_has_a_transition_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(CaseStatus)
        assert ALLOWED_TRANSITIONS[CaseStatus.COMPLETED] == frozenset()


class TestNotification:

    def test_acuity_one_notifies_two_hospitals_in_parallel(self, prepare_case, store):
        async def scenario():
            case = await prepare_case(acuity=1)
            audit = await store.list_audit(case.id, event_types=[EventType.HOSPITAL_NOTIFIED])
            return case, audit

        case, audit = asyncio.run(scenario())
        assert case.status == CaseStatus.AWAITING_RESPONSE
        assert [n.hospital_id for n in case.pending_notifications()] == ["hosp_city", "hosp_north"]
        assert case.awaiting_response_since == NOW + minutes(3)
        assert {e.hospital_id for e in audit} == {"hosp_city", "hosp_north"}

    def test_lower_acuity_notifies_one(self, prepare_case):
        case = asyncio.run(prepare_case(acuity=3))
        assert [n.hospital_id for n in case.notifications] == ["hosp_city"]

    def test_no_eligible_hospital_escalates(self, prepare_case, hospitals):
        case = asyncio.run(prepare_case(acuity=2, hospital_list=[hospitals[3]]))
        assert case.status == CaseStatus.ESCALATION_REQUIRED
        assert case.escalation_reason == EscalationReason.NO_ELIGIBLE_HOSPITALS
        assert case.escalation_triggered_at is not None
        assert case.awaiting_response_since is None


class TestHospitalResponses:

    def test_scenario_a_rejection_ceiling_escalates(self, machine, prepare_case, hospital_staff, dispatcher):
        """Acuity 2 tolerates two rejections; the second escalates in the same write."""
        async def scenario():
            case = await prepare_case(acuity=2)
            case = await machine.reject(
                case.id, "hosp_city", RejectionReason.NO_ICU, hospital_staff("hosp_city"),
                now=NOW + minutes(4),
            )
            assert case.status == CaseStatus.REJECTED
            assert case.rejection_count == 1
            assert case.awaiting_response_since == NOW + minutes(3)

            case = await machine.notify_hospitals(case.id, dispatcher, now=NOW + minutes(5))
            assert case.status == CaseStatus.AWAITING_RESPONSE
            assert case.awaiting_response_since == NOW + minutes(5)
            assert case.pending_notifications()[0].hospital_id == "hosp_north"

            return await machine.reject(
                case.id, "hosp_north", "over_capacity", hospital_staff("hosp_north"),
                now=NOW + minutes(6),
            )

        case = asyncio.run(scenario())
        assert case.status == CaseStatus.ESCALATION_REQUIRED
        assert case.rejection_count == 2
        assert case.escalation_reason == EscalationReason.REJECTIONS
        assert case.escalation_triggered_at == NOW + minutes(6)

    def test_scenario_b_second_acceptance_conflicts(self, machine, prepare_case, hospital_staff):
        async def scenario():
            case = await prepare_case(acuity=1)
            accepted = await machine.accept(case.id, "hosp_city", hospital_staff("hosp_city"), now=NOW + minutes(4))
            with pytest.raises(StateConflict):
                await machine.accept(
                    case.id, "hosp_north", hospital_staff("hosp_north"),
                    now=NOW + minutes(4) + timedelta(seconds=1),
                )
            return accepted, await machine.get_case(case.id)

        accepted, case = asyncio.run(scenario())
        assert accepted.status == CaseStatus.ACCEPTED
        assert case.authoritative_hospital_id == "hosp_city"
        assert case.notification_for("hosp_north").response == NotificationResponse.CANCELLED
        assert case.version == accepted.version

    def test_concurrent_acceptances_have_one_winner(self, machine, prepare_case, hospital_staff):
        async def scenario():
            case = await prepare_case(acuity=1)
            return await asyncio.gather(
                machine.accept(case.id, "hosp_city", hospital_staff("hosp_city")),
                machine.accept(case.id, "hosp_north", hospital_staff("hosp_north")),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], StateConflict)
        assert winners[0].accepted_hospital_id in ("hosp_city", "hosp_north")

    def test_parallel_rejection_at_ceiling_cancels_the_other(self, machine, prepare_case, hospital_staff):
        async def scenario():
            case = await prepare_case(acuity=1)
            return await machine.reject(
                case.id, "hosp_north", RejectionReason.NO_SPECIALIST, hospital_staff("hosp_north")
            )

        case = asyncio.run(scenario())
        # Acuity 1 allows a single rejection before escalation
        assert case.status == CaseStatus.ESCALATION_REQUIRED
        assert case.notification_for("hosp_city").response == NotificationResponse.CANCELLED

    def test_rejection_below_ceiling_with_pending_notification(self, machine, prepare_case, hospital_staff, store):
        async def scenario():
            case = await prepare_case(acuity=3)
            await store.transact(case.id, lambda txn: txn.case.notifications.append(
                txn.case.notifications[0].model_copy(update={"hospital_id": "hosp_north"})
            ))
            return await machine.reject(
                case.id, "hosp_city", RejectionReason.OVER_CAPACITY, hospital_staff("hosp_city")
            )

        case = asyncio.run(scenario())
        assert case.status == CaseStatus.AWAITING_RESPONSE
        assert case.rejection_count == 1
        assert case.awaiting_response_since is not None

    def test_hospital_identity_is_enforced(self, machine, prepare_case, hospital_staff, dispatcher):
        async def scenario():
            case = await prepare_case(acuity=1)
            with pytest.raises(Unauthorized):
                await machine.accept(case.id, "hosp_city", hospital_staff("hosp_north"))
            with pytest.raises(Unauthorized):
                await machine.accept(case.id, "hosp_city", dispatcher)
            with pytest.raises(Unauthorized):
                await machine.accept(case.id, "hosp_east", hospital_staff("hosp_east"))

        asyncio.run(scenario())

    def test_rejection_reason_is_mandatory(self, machine, prepare_case, hospital_staff):
        async def scenario():
            case = await prepare_case(acuity=3)
            staff = hospital_staff("hosp_city")
            with pytest.raises(ValidationFailure):
                await machine.reject(case.id, "hosp_city", "too_busy", staff)
            with pytest.raises(ValidationFailure):
                await machine.reject(case.id, "hosp_city", RejectionReason.OTHER, staff, reason_text="  ")
            case = await machine.reject(case.id, "hosp_city", "other", staff, reason_text="CT down")
            return case

        case = asyncio.run(scenario())
        assert case.notification_for("hosp_city").reason == "other: CT down"

    def test_accepting_after_escalation_conflicts(self, machine, prepare_case, hospital_staff, dispatcher):
        async def scenario():
            case = await prepare_case(acuity=3)
            await machine.trigger_escalation(case.id, EscalationReason.MANUAL, dispatcher)
            await machine.accept(case.id, "hosp_city", hospital_staff("hosp_city"))

        with pytest.raises(StateConflict):
            asyncio.run(scenario())


class TestEscalation:

    def test_timeout_before_deadline_is_a_noop(self, machine, prepare_case):
        async def scenario():
            case = await prepare_case(acuity=3)
            after = await machine.trigger_escalation(
                case.id, EscalationReason.TIMEOUT, Actor.system(), now=NOW + minutes(4)
            )
            return case, after

        case, after = asyncio.run(scenario())
        assert after.status == CaseStatus.AWAITING_RESPONSE
        assert after.version == case.version

    def test_timeout_after_deadline_escalates(self, machine, prepare_case):
        async def scenario():
            case = await prepare_case(acuity=3)
            return await machine.trigger_escalation(
                case.id, EscalationReason.TIMEOUT, Actor.system(), now=NOW + minutes(6)
            )

        case = asyncio.run(scenario())
        assert case.status == CaseStatus.ESCALATION_REQUIRED
        assert case.escalation_reason == EscalationReason.TIMEOUT
        assert all(n.response == NotificationResponse.CANCELLED for n in case.notifications)

    def test_escalation_is_idempotent(self, machine, prepare_case, dispatcher):
        async def scenario():
            case = await prepare_case(acuity=3)
            first = await machine.trigger_escalation(case.id, "manual", dispatcher, now=NOW + minutes(4))
            second = await machine.trigger_escalation(
                case.id, EscalationReason.TIMEOUT, Actor.system(), now=NOW + minutes(10)
            )
            return first, second

        first, second = asyncio.run(scenario())
        assert first.status == second.status == CaseStatus.ESCALATION_REQUIRED
        assert second.version == first.version
        assert second.escalation_reason == EscalationReason.MANUAL

    def test_rejection_after_timer_escalation_is_absorbed(self, machine, prepare_case, hospital_staff, store):
        """The timer wins the race; the late rejection keeps its reason and raises nothing."""
        async def scenario():
            case = await prepare_case(acuity=2)
            escalated = await machine.trigger_escalation(
                case.id, EscalationReason.TIMEOUT, Actor.system(),
                now=NOW + minutes(3) + timedelta(seconds=91),
            )
            staff = hospital_staff("hosp_city")
            late = await machine.reject(case.id, "hosp_city", "no_icu", staff, now=NOW + minutes(5))
            repeated = await machine.reject(case.id, "hosp_city", "no_icu", staff, now=NOW + minutes(6))
            audit = await store.list_audit(case.id, event_types=[EventType.HOSPITAL_REJECTED])
            return escalated, late, repeated, audit

        escalated, late, repeated, audit = asyncio.run(scenario())
        assert escalated.status == CaseStatus.ESCALATION_REQUIRED
        assert late.status == CaseStatus.ESCALATION_REQUIRED
        assert late.escalation_reason == EscalationReason.TIMEOUT
        assert late.rejection_count == 0
        assert late.notification_for("hosp_city").response == NotificationResponse.CANCELLED
        assert late.notification_for("hosp_city").reason == "no_icu"
        assert repeated.version == late.version
        assert len(audit) == 1
        assert audit[0].metadata["after_escalation"] is True

    def test_escalating_an_accepted_case_is_a_noop(self, machine, prepare_case, hospital_staff):
        async def scenario():
            case = await prepare_case(acuity=1)
            accepted = await machine.accept(case.id, "hosp_city", hospital_staff("hosp_city"))
            after = await machine.trigger_escalation(
                case.id, EscalationReason.TIMEOUT, Actor.system(), now=NOW + minutes(30)
            )
            return accepted, after

        accepted, after = asyncio.run(scenario())
        assert after.status == CaseStatus.ACCEPTED
        assert after.version == accepted.version

    def test_escalation_requires_authority(self, machine, prepare_case, paramedic):
        async def scenario():
            case = await prepare_case(acuity=3)
            await machine.trigger_escalation(case.id, "manual", paramedic)

        with pytest.raises(Unauthorized):
            asyncio.run(scenario())

    def test_cannot_escalate_before_dispatch(self, machine, new_case, paramedic, dispatcher):
        async def scenario():
            case = await machine.create_case(new_case(), paramedic)
            await machine.trigger_escalation(case.id, "manual", dispatcher)

        with pytest.raises(IllegalTransition):
            asyncio.run(scenario())

    def test_escalation_status_report(self, machine, prepare_case):
        async def scenario():
            case = await prepare_case(acuity=2)
            return await machine.escalation_status(case.id, now=NOW + minutes(3) + timedelta(seconds=30))

        status = asyncio.run(scenario())
        assert status["status"] == CaseStatus.AWAITING_RESPONSE.value
        assert status["timeout_remaining"] == pytest.approx(60)
        assert status["rejection_ceiling"] == 2
        assert status["escalation_due"] is False
        assert status["golden_hour"]["breached"] is False


class TestLifecycleProperties:

    def test_full_path_is_monotonic(self, machine, prepare_case, hospital_staff, paramedic, protocol):
        async def scenario():
            case = await prepare_case(acuity=1)
            staff = hospital_staff("hosp_city")
            await machine.accept(case.id, "hosp_city", staff, now=NOW + minutes(4))
            # A stale clock must not move timestamps backwards
            await machine.mark_enroute(case.id, paramedic, now=NOW)
            await protocol.initiate(case.id, paramedic, now=NOW + minutes(20))
            await protocol.acknowledge(case.id, "hosp_city", staff, now=NOW + minutes(25))
            return await machine.complete(case.id, staff, now=NOW + minutes(26))

        case = asyncio.run(scenario())
        assert case.status == CaseStatus.COMPLETED

        ranks = [STATUS_RANK[change.to_status] for change in case.status_history]
        assert ranks == sorted(ranks)
        times = [change.at for change in case.status_history]
        assert times == sorted(times)
        assert case.enroute_at >= case.accepted_at
        assert case.completed_at == NOW + minutes(26)

    def test_completed_case_is_immutable(self, machine, prepare_case, hospital_staff, paramedic, protocol, dispatcher):
        async def scenario():
            case = await prepare_case(acuity=1)
            staff = hospital_staff("hosp_city")
            await machine.accept(case.id, "hosp_city", staff)
            await machine.mark_enroute(case.id, paramedic)
            await protocol.initiate(case.id, paramedic)
            await protocol.acknowledge(case.id, "hosp_city", staff)
            await machine.complete(case.id, dispatcher)
            await machine.refresh_ranking(case.id, None, dispatcher)

        with pytest.raises(IllegalTransition):
            asyncio.run(scenario())

    def test_only_paramedic_marks_enroute(self, machine, prepare_case, hospital_staff, dispatcher):
        async def scenario():
            case = await prepare_case(acuity=1)
            await machine.accept(case.id, "hosp_city", hospital_staff("hosp_city"))
            await machine.mark_enroute(case.id, dispatcher)

        with pytest.raises(Unauthorized):
            asyncio.run(scenario())

    def test_notification_targets(self, machine, prepare_case, hospital_staff):
        async def scenario():
            case = await prepare_case(acuity=1)
            before = await machine.notification_targets(case.id)
            await machine.accept(case.id, "hosp_north", hospital_staff("hosp_north"))
            after = await machine.notification_targets(case.id)
            return before, after

        before, after = asyncio.run(scenario())
        assert before == ["hosp_city", "hosp_north"]
        assert after == ["hosp_north"]

    def test_change_events_are_published(self, machine, event_bus, prepare_case):
        received = []

        def record(event):
            received.append(event)

        event_bus.subscribe(EventType.CASE_CHANGED, record)

        case = asyncio.run(prepare_case(acuity=3))

        assert [e.to_status for e in received] == [
            CaseStatus.CREATED.value,
            CaseStatus.TRIAGED.value,
            CaseStatus.DISPATCHED.value,
            CaseStatus.AWAITING_RESPONSE.value,
        ]
        assert received[-1].case_id == case.id
        assert received[-1].snapshot["status"] == CaseStatus.AWAITING_RESPONSE.value

    def test_failing_subscriber_does_not_affect_transition(self, machine, event_bus, new_case, paramedic):
        def broken(event):
            raise RuntimeError("subscriber down")

        event_bus.subscribe(EventType.CASE_CHANGED, broken)

        async def scenario():
            case = await machine.create_case(new_case(), paramedic)
            return await machine.triage(case.id, 4, paramedic)

        assert asyncio.run(scenario()).status == CaseStatus.TRIAGED

    def test_failed_audit_write_does_not_undo_transition(self, machine, store, prepare_case, hospital_staff):
        async def failing_append(event):
            raise RuntimeError("audit store offline")

        async def scenario():
            case = await prepare_case(acuity=1)
            store.append_audit = failing_append
            return await machine.accept(case.id, "hosp_city", hospital_staff("hosp_city"))

        case = asyncio.run(scenario())
        assert case.status == CaseStatus.ACCEPTED
        assert case.accepted_hospital_id == "hosp_city"

    def test_hospital_cannot_complete_for_another(self, machine, prepare_case, hospital_staff, paramedic, protocol):
        async def scenario():
            case = await prepare_case(acuity=1)
            staff = hospital_staff("hosp_city")
            await machine.accept(case.id, "hosp_city", staff)
            await machine.mark_enroute(case.id, paramedic)
            await protocol.initiate(case.id, paramedic)
            await protocol.acknowledge(case.id, "hosp_city", staff)
            await machine.complete(case.id, Actor(id="x", role=ActorRole.HOSPITAL, hospital_id="hosp_north"))

        with pytest.raises(Unauthorized):
            asyncio.run(scenario())
