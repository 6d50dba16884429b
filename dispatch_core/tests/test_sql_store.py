"""
Tests for the SQLAlchemy case store on a file-backed SQLite database.
"""

import asyncio

import pytest

from dispatch_core.core.exceptions import CaseNotFound, TransientStoreError, ValidationFailure
from dispatch_core.db.sql_store import SqlCaseStore
from dispatch_core.lifecycle.handover import HandoverProtocol
from dispatch_core.lifecycle.override import OverrideCoordinator
from dispatch_core.lifecycle.state_machine import CaseStateMachine
from dispatch_core.models.case import CaseStatus
from dispatch_core.models.events import EventType

from .conftest import NOW, minutes


@pytest.fixture
def sql_store(tmp_path):
    store = SqlCaseStore(f"sqlite:///{tmp_path}/dispatch.db")
    yield store
    asyncio.run(store.close())


class TestSqlCaseStore:

    def test_create_get_and_list(self, sql_store, new_case):
        async def scenario():
            first = await sql_store.create(new_case())
            second = await sql_store.create(new_case(created_at=NOW + minutes(1)))
            fetched = await sql_store.get(first.id)
            everything = await sql_store.list_cases()
            created_only = await sql_store.list_cases([CaseStatus.CREATED])
            triaged_only = await sql_store.list_cases(["triaged"])
            return first, second, fetched, everything, created_only, triaged_only

        first, second, fetched, everything, created_only, triaged_only = asyncio.run(scenario())
        assert fetched == first
        assert fetched.created_at == NOW
        assert [c.id for c in everything] == [first.id, second.id]
        assert len(created_only) == 2
        assert triaged_only == []

    def test_duplicate_and_missing(self, sql_store, new_case):
        case = new_case()

        async def scenario():
            await sql_store.create(case)
            with pytest.raises(ValidationFailure):
                await sql_store.create(case)
            with pytest.raises(CaseNotFound):
                await sql_store.get("missing")
            with pytest.raises(CaseNotFound):
                await sql_store.transact("missing", lambda txn: None)

        asyncio.run(scenario())

    def test_noop_transaction_does_not_bump_version(self, sql_store, new_case):
        async def scenario():
            case = await sql_store.create(new_case())
            result = await sql_store.transact(case.id, lambda txn: "untouched")
            return result, await sql_store.get(case.id)

        result, stored = asyncio.run(scenario())
        assert not result.written
        assert result.value == "untouched"
        assert stored.version == 0

    def test_version_conflict_reruns_the_callback(self, sql_store, new_case):
        case = asyncio.run(sql_store.create(new_case()))
        calls = []

        def interfering(txn):
            txn.case.attachments.append("https://img/other.jpg")

        def mutate(txn):
            calls.append(txn.case.version)
            if len(calls) == 1:
                # A competing writer commits between our read and our write
                sql_store._transact_sync(case.id, interfering)
            txn.case.trauma_flags.append("head_injury")

        result = sql_store._transact_sync(case.id, mutate)
        stored = asyncio.run(sql_store.get(case.id))

        assert calls == [0, 1]
        assert result.case.version == 2
        assert stored.version == 2
        assert stored.attachments == ["https://img/other.jpg"]
        assert stored.trauma_flags == ["head_injury"]

    def test_contention_exhaustion_is_transient(self, tmp_path, new_case):
        store = SqlCaseStore(f"sqlite:///{tmp_path}/contended.db", contention_retries=2)
        case = asyncio.run(store.create(new_case()))

        def interfering(txn):
            txn.case.attachments.append(f"https://img/{len(txn.case.attachments)}.jpg")

        def always_loses(txn):
            store._transact_sync(case.id, interfering)
            txn.case.trauma_flags.append("burns")

        with pytest.raises(TransientStoreError):
            store._transact_sync(case.id, always_loses)

        stored = asyncio.run(store.get(case.id))
        assert stored.trauma_flags == []
        assert len(stored.attachments) == 2
        asyncio.run(store.close())

    def test_hospitals_round_trip(self, sql_store, hospitals):
        async def scenario():
            for profile in hospitals:
                await sql_store.put_hospital(profile)
            updated = hospitals[1].model_copy(update={"name": "North Clinic Annex"})
            await sql_store.put_hospital(updated)
            return await sql_store.get_hospital("hosp_north"), await sql_store.list_hospitals()

        north, listed = asyncio.run(scenario())
        assert north.name == "North Clinic Annex"
        assert [h.id for h in listed] == ["hosp_city", "hosp_east", "hosp_full", "hosp_north"]
        assert asyncio.run(sql_store.get_hospital("nowhere")) is None


class TestSqlBackedLifecycle:

    def test_full_flow(self, sql_store, hospitals, new_case, paramedic, dispatcher, hospital_staff):
        machine = CaseStateMachine(sql_store, retry_backoff_seconds=0)
        coordinator = OverrideCoordinator(machine)
        protocol = HandoverProtocol(machine)

        async def scenario():
            case = await machine.create_case(new_case(), paramedic)
            await machine.triage(case.id, 3, paramedic, now=NOW + minutes(1))
            await machine.dispatch(case.id, hospitals, dispatcher, as_of=NOW, now=NOW + minutes(2))
            await machine.notify_hospitals(case.id, dispatcher, now=NOW + minutes(3))
            await machine.reject(
                case.id, "hosp_city", "no_specialist", hospital_staff("hosp_city"), now=NOW + minutes(4)
            )
            await coordinator.override(
                case.id, "hosp_north", "hospital_contacted", dispatcher, now=NOW + minutes(5)
            )
            await machine.mark_enroute(case.id, paramedic, now=NOW + minutes(6))
            await protocol.initiate(case.id, paramedic, now=NOW + minutes(20))
            await protocol.acknowledge(
                case.id, "hosp_north", hospital_staff("hosp_north"), now=NOW + minutes(25)
            )
            done = await machine.complete(case.id, hospital_staff("hosp_north"), now=NOW + minutes(40))
            audit = await sql_store.list_audit(case.id, limit=None)
            overrides = await sql_store.list_overrides(case.id)
            stats = await sql_store.get_stats()
            return done, audit, overrides, stats

        case, audit, overrides, stats = asyncio.run(scenario())

        assert case.status == CaseStatus.COMPLETED
        assert case.authoritative_hospital_id == "hosp_north"
        assert case.rejection_count == 1
        assert [r.new_hospital_id for r in overrides] == ["hosp_north"]
        assert overrides[0].previous_hospital_id == "hosp_city"
        assert audit[0].event_type == EventType.CASE_COMPLETED
        assert audit[-1].event_type == EventType.HOSPITAL_NOTIFIED
        assert stats["cases"] == 1
        assert stats["by_status"] == {"completed": 1}
        assert stats["overrides"] == 1
