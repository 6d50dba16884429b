"""
Tests for the two-phase handover protocol.
"""

import asyncio

import pytest

from dispatch_core.core.exceptions import IllegalTransition, InvalidState, Unauthorized
from dispatch_core.lifecycle.handover import build_handover_summary
from dispatch_core.models.case import CaseStatus, HandoverStatus
from dispatch_core.models.events import EventType
from dispatch_core.reasoning.escalation_policy import EscalationPolicy

from .conftest import NOW, minutes


@pytest.fixture
def enroute_case(machine, prepare_case, hospital_staff, paramedic):
    """Coroutine factory returning a case en route to hosp_city."""
    async def _enroute():
        case = await prepare_case(acuity=1)
        await machine.accept(case.id, "hosp_city", hospital_staff("hosp_city"), now=NOW + minutes(4))
        return await machine.mark_enroute(case.id, paramedic, now=NOW + minutes(6))
    return _enroute


class TestHandover:

    def test_scenario_d(self, protocol, enroute_case, paramedic, hospital_staff, store):
        async def scenario():
            case = await enroute_case()
            initiated = await protocol.initiate(case.id, paramedic, now=NOW + minutes(30))
            with pytest.raises(Unauthorized):
                await protocol.acknowledge(case.id, "hosp_north", hospital_staff("hosp_north"))
            acknowledged = await protocol.acknowledge(
                case.id, "hosp_city", hospital_staff("hosp_city"), now=NOW + minutes(35)
            )
            audit = await store.list_audit(
                case.id,
                event_types=[EventType.HANDOVER_INITIATED, EventType.HANDOVER_ACKNOWLEDGED],
            )
            return initiated, acknowledged, audit

        initiated, acknowledged, audit = asyncio.run(scenario())

        assert initiated.status == CaseStatus.HANDOVER_INITIATED
        assert initiated.handover_status == HandoverStatus.INITIATED
        assert initiated.handover_initiated_by == paramedic.id
        summary = initiated.handover_summary
        assert summary.generated_at == NOW + minutes(30)
        assert summary.operational.golden_hour_minutes_remaining == 30.0
        assert summary.operational.hospital_id == "hosp_city"
        assert summary.clinical.acuity_level == 1
        assert summary.clinical.consciousness_level == "V"
        assert summary.patient.name == "Ravi Kumar"

        assert acknowledged.status == CaseStatus.HANDOVER_ACKNOWLEDGED
        assert acknowledged.handover_status == HandoverStatus.ACKNOWLEDGED
        assert acknowledged.handover_acknowledged_at == NOW + minutes(35)
        # The summary frozen at initiation is kept as-is
        assert acknowledged.handover_summary == summary
        assert [e.event_type for e in audit] == [
            EventType.HANDOVER_ACKNOWLEDGED, EventType.HANDOVER_INITIATED
        ]

    def test_second_acknowledgement_is_illegal(self, protocol, enroute_case, paramedic, hospital_staff):
        async def scenario():
            case = await enroute_case()
            await protocol.initiate(case.id, paramedic)
            await protocol.acknowledge(case.id, "hosp_city", hospital_staff("hosp_city"))
            await protocol.acknowledge(case.id, "hosp_city", hospital_staff("hosp_city"))

        with pytest.raises(IllegalTransition):
            asyncio.run(scenario())

    def test_second_initiation_is_illegal(self, protocol, enroute_case, paramedic):
        async def scenario():
            case = await enroute_case()
            await protocol.initiate(case.id, paramedic)
            await protocol.initiate(case.id, paramedic)

        with pytest.raises(InvalidState):
            asyncio.run(scenario())

    def test_initiate_requires_enroute(self, protocol, prepare_case, paramedic):
        async def scenario():
            case = await prepare_case(acuity=1)
            await protocol.initiate(case.id, paramedic)

        with pytest.raises(InvalidState):
            asyncio.run(scenario())

    def test_only_the_crew_initiates(self, protocol, enroute_case, dispatcher):
        async def scenario():
            case = await enroute_case()
            await protocol.initiate(case.id, dispatcher)

        with pytest.raises(Unauthorized):
            asyncio.run(scenario())

    def test_acknowledge_before_initiation_is_illegal(self, protocol, enroute_case, hospital_staff):
        async def scenario():
            case = await enroute_case()
            await protocol.acknowledge(case.id, "hosp_city", hospital_staff("hosp_city"))

        with pytest.raises(IllegalTransition):
            asyncio.run(scenario())

    def test_actor_must_belong_to_the_hospital(self, protocol, enroute_case, paramedic, hospital_staff):
        async def scenario():
            case = await enroute_case()
            await protocol.initiate(case.id, paramedic)
            await protocol.acknowledge(case.id, "hosp_city", hospital_staff("hosp_north"))

        with pytest.raises(Unauthorized):
            asyncio.run(scenario())

    def test_override_destination_receives_handover(
        self, machine, coordinator, protocol, prepare_case, paramedic, dispatcher, hospital_staff
    ):
        async def scenario():
            case = await prepare_case(acuity=3)
            await machine.trigger_escalation(case.id, "manual", dispatcher)
            await coordinator.override(case.id, "hosp_east", "capacity_confirmed", dispatcher)
            await machine.mark_enroute(case.id, paramedic)
            await protocol.initiate(case.id, paramedic)
            with pytest.raises(Unauthorized):
                await protocol.acknowledge(case.id, "hosp_city", hospital_staff("hosp_city"))
            return await protocol.acknowledge(case.id, "hosp_east", hospital_staff("hosp_east"))

        case = asyncio.run(scenario())
        assert case.status == CaseStatus.HANDOVER_ACKNOWLEDGED
        assert case.handover_summary.timeline.override_used
        assert case.handover_summary.operational.hospital_id == "hosp_east"


class TestHandoverSummary:

    def test_summary_reflects_golden_hour_breach(self, new_case):
        case = new_case(acuity_level=2, trauma_flags=["open_fracture"], attachments=["https://img/1.jpg"])
        summary = build_handover_summary(case, EscalationPolicy(), NOW + minutes(75))

        assert summary.operational.golden_hour_breached
        assert summary.operational.golden_hour_minutes_remaining == -15.0
        assert summary.clinical.trauma_flags == ["open_fracture"]
        assert summary.clinical.vitals["heart_rate"] == 128
        assert "consciousness_level" not in summary.clinical.vitals
        assert summary.attachments == ["https://img/1.jpg"]

    def test_summary_is_frozen(self, new_case):
        summary = build_handover_summary(new_case(), EscalationPolicy(), NOW)
        with pytest.raises(Exception):
            summary.case_id = "other"
