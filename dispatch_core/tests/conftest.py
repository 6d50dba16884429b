"""
Shared fixtures for the dispatch core tests.

Async code is driven with asyncio.run; every collaborator is in-process.
"""

from datetime import datetime, timedelta, timezone

import pytest

from dispatch_core.core.event_bus import EventBus
from dispatch_core.core.store import InMemoryCaseStore
from dispatch_core.lifecycle.handover import HandoverProtocol
from dispatch_core.lifecycle.override import OverrideCoordinator
from dispatch_core.lifecycle.state_machine import CaseStateMachine
from dispatch_core.models.case import EmergencyCase, EmergencyType, GeoPoint, PatientInfo, Vitals
from dispatch_core.models.events import Actor, ActorRole
from dispatch_core.models.hospital import (
    BedAvailability,
    Capabilities,
    Equipment,
    HospitalProfile,
    ReadinessStatus,
)

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
INCIDENT = GeoPoint(latitude=12.9716, longitude=77.5946)


def minutes(n: float) -> timedelta:
    return timedelta(minutes=n)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def hospitals():
    """Three cardiac-capable hospitals of decreasing quality plus one that is full."""
    return [
        HospitalProfile(
            id="hosp_city",
            name="City General",
            location=INCIDENT,
            beds=BedAvailability(icu=5, emergency=10, trauma=2, isolation=1),
            equipment=Equipment(ventilators=3, defibrillators=4, portable_xray=True),
            specialists={"cardiologist": 3, "trauma_surgeon": 2},
            capabilities=Capabilities(stroke_center=True, emergency_surgery=True, ct_scan=True),
            trauma_level=1,
            readiness=ReadinessStatus.ACCEPTING,
            emergency_24x7=True,
            surgery_24x7=True,
            capacity_last_updated=NOW - timedelta(hours=1),
        ),
        HospitalProfile(
            id="hosp_north",
            name="North Clinic",
            location=GeoPoint(latitude=13.0616, longitude=77.5946),
            beds=BedAvailability(icu=2, emergency=4),
            equipment=Equipment(ventilators=1, defibrillators=1),
            specialists={"cardiologist": 1},
            readiness=ReadinessStatus.ACCEPTING,
            emergency_24x7=True,
            capacity_last_updated=NOW - timedelta(hours=2),
        ),
        HospitalProfile(
            id="hosp_east",
            name="East Community",
            location=GeoPoint(latitude=12.9716, longitude=77.7800),
            beds=BedAvailability(icu=1, emergency=2),
            readiness=ReadinessStatus.DIVERTING,
            capacity_last_updated=NOW - timedelta(hours=3),
        ),
        HospitalProfile(
            id="hosp_full",
            name="Full Memorial",
            location=GeoPoint(latitude=12.9800, longitude=77.6000),
            beds=BedAvailability(icu=4, emergency=6),
            readiness=ReadinessStatus.FULL,
            emergency_24x7=True,
            capacity_last_updated=NOW,
        ),
    ]


@pytest.fixture
def store():
    return InMemoryCaseStore()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def machine(store, event_bus):
    return CaseStateMachine(store, event_bus, retry_backoff_seconds=0)


@pytest.fixture
def coordinator(machine):
    return OverrideCoordinator(machine)


@pytest.fixture
def protocol(machine):
    return HandoverProtocol(machine)


@pytest.fixture
def paramedic():
    return Actor(id="crew-7", role=ActorRole.PARAMEDIC)


@pytest.fixture
def dispatcher():
    return Actor(id="disp-1", role=ActorRole.DISPATCHER)


@pytest.fixture
def hospital_staff():
    """Factory for hospital actors."""
    def _staff(hospital_id: str) -> Actor:
        return Actor(id=f"staff-{hospital_id}", role=ActorRole.HOSPITAL, hospital_id=hospital_id)
    return _staff


@pytest.fixture
def new_case():
    """Factory for intake cases created at NOW."""
    def _new_case(**fields) -> EmergencyCase:
        data = {
            "emergency_type": EmergencyType.CARDIAC,
            "location": INCIDENT,
            "patient": PatientInfo(name="Ravi Kumar", age=58, gender="M"),
            "vitals": Vitals(heart_rate=128, systolic_bp=92, spo2=93, consciousness_level="V"),
            "created_at": NOW,
        }
        data.update(fields)
        return EmergencyCase(**data)
    return _new_case


@pytest.fixture
def prepare_case(machine, hospitals, paramedic, dispatcher, new_case):
    """
    Coroutine factory walking a case through intake, triage and dispatch.

    With notify=True the first notification cycle is started at NOW + 3 min.
    """
    async def _prepare(acuity=1, notify=True, hospital_list=None, **fields):
        case = await machine.create_case(new_case(**fields), paramedic)
        await machine.triage(case.id, acuity, paramedic, now=NOW + minutes(1))
        await machine.dispatch(
            case.id,
            hospitals if hospital_list is None else hospital_list,
            dispatcher,
            as_of=NOW,
            now=NOW + minutes(2),
        )
        if notify:
            return await machine.notify_hospitals(case.id, dispatcher, now=NOW + minutes(3))
        return await machine.get_case(case.id)
    return _prepare
