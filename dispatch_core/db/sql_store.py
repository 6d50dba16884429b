"""
SQLAlchemy-backed case store.

Each case is one JSON document with an integer version. A transaction reads
the document, runs the guard callback and commits with a compare-and-set
``UPDATE ... WHERE version = :read_version``. Losing the race re-runs the
callback against the fresh document.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import sessionmaker

from dispatch_core.core.clock import utcnow
from dispatch_core.core.config import Config
from dispatch_core.core.exceptions import CaseNotFound, TransientStoreError, ValidationFailure
from dispatch_core.core.store import CaseStore, CaseTransaction, TransactionResult, run_guarded
from dispatch_core.db.connection import init_db
from dispatch_core.db.tables import AuditRow, CaseRow, HospitalRow, OverrideRow
from dispatch_core.models.case import CaseStatus, EmergencyCase
from dispatch_core.models.events import AuditEvent, EventType
from dispatch_core.models.hospital import HospitalProfile
from dispatch_core.models.override import OverrideRecord

logger = logging.getLogger(__name__)


class SqlCaseStore(CaseStore):
    """
    Case store on a relational database.

    Blocking SQLAlchemy calls run in a worker thread so the event loop is
    never blocked.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        session_factory: Optional[sessionmaker] = None,
        contention_retries: Optional[int] = None
    ):
        if session_factory is None:
            self._engine, session_factory = init_db(database_url)
        else:
            self._engine = session_factory.kw.get("bind")
        self._session_factory = session_factory
        self.contention_retries = contention_retries or Config.STORE_CONTENTION_RETRIES

        logger.info("SqlCaseStore initialized")

    async def _run(self, fn: Callable, *args) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except IntegrityError:
            raise
        except DBAPIError as e:
            logger.warning(f"Database error: {e}")
            raise TransientStoreError(f"Store unavailable: {e.__class__.__name__}") from e

    # ========================
    # Cases
    # ========================

    def _create_sync(self, case: EmergencyCase) -> EmergencyCase:
        now = utcnow()
        with self._session_factory() as session:
            if session.get(CaseRow, case.id) is not None:
                raise ValidationFailure(f"Case {case.id} already exists", case_id=case.id)
            session.add(CaseRow(
                id=case.id,
                status=case.status.value,
                version=case.version,
                document=case.model_dump(mode="json"),
                created_at=case.created_at,
                updated_at=now,
            ))
            session.commit()
        logger.info(f"Stored case: {case.id}")
        return case.model_copy(deep=True)

    async def create(self, case: EmergencyCase) -> EmergencyCase:
        try:
            return await self._run(self._create_sync, case)
        except IntegrityError as e:
            raise ValidationFailure(f"Case {case.id} already exists", case_id=case.id) from e

    @staticmethod
    def _to_case(row: CaseRow) -> EmergencyCase:
        case = EmergencyCase.model_validate(row.document)
        case.version = row.version
        return case

    def _get_sync(self, case_id: str) -> EmergencyCase:
        with self._session_factory() as session:
            row = session.get(CaseRow, case_id)
            if row is None:
                raise CaseNotFound(f"Case {case_id} not found", case_id=case_id)
            return self._to_case(row)

    async def get(self, case_id: str) -> EmergencyCase:
        return await self._run(self._get_sync, case_id)

    def _list_cases_sync(self, statuses: Optional[List[str]]) -> List[EmergencyCase]:
        with self._session_factory() as session:
            query = select(CaseRow).order_by(CaseRow.created_at)
            if statuses:
                query = query.where(CaseRow.status.in_(statuses))
            return [self._to_case(row) for row in session.scalars(query)]

    async def list_cases(self, statuses: Optional[Iterable[CaseStatus]] = None) -> List[EmergencyCase]:
        values = [CaseStatus(s).value for s in statuses] if statuses else None
        return await self._run(self._list_cases_sync, values)

    def _transact_sync(
        self,
        case_id: str,
        fn: Callable[[CaseTransaction], Any]
    ) -> TransactionResult:
        for attempt in range(1, self.contention_retries + 1):
            with self._session_factory() as session:
                row = session.get(CaseRow, case_id)
                if row is None:
                    raise CaseNotFound(f"Case {case_id} not found", case_id=case_id)
                current = self._to_case(row)
                read_version = row.version

                txn, value, changed = run_guarded(current, fn)
                if not changed:
                    return TransactionResult(current, current.model_copy(deep=True), value, written=False)

                new_case = txn.case
                new_case.version = read_version + 1
                result = session.execute(
                    update(CaseRow)
                    .where(CaseRow.id == case_id, CaseRow.version == read_version)
                    .values(
                        status=new_case.status.value,
                        version=new_case.version,
                        document=new_case.model_dump(mode="json"),
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    session.rollback()
                    logger.info(f"Version conflict on case {case_id} (attempt {attempt}), re-reading")
                    continue

                for record in txn.overrides:
                    session.add(OverrideRow(
                        id=record.id,
                        case_id=record.case_id,
                        timestamp=record.timestamp,
                        document=record.model_dump(mode="json"),
                    ))
                session.commit()
                logger.debug(f"Committed case {case_id} at version {new_case.version}")
                return TransactionResult(current, new_case, value, overrides=list(txn.overrides))

        raise TransientStoreError(
            f"Case {case_id} too contended after {self.contention_retries} attempts",
            case_id=case_id,
        )

    async def transact(
        self,
        case_id: str,
        fn: Callable[[CaseTransaction], Any]
    ) -> TransactionResult:
        return await self._run(self._transact_sync, case_id, fn)

    # ========================
    # Audit
    # ========================

    def _append_audit_sync(self, event: AuditEvent) -> None:
        with self._session_factory() as session:
            session.add(AuditRow(
                id=event.id,
                case_id=event.case_id,
                event_type=event.event_type.value,
                timestamp=event.timestamp,
                document=event.model_dump(mode="json"),
            ))
            session.commit()

    async def append_audit(self, event: AuditEvent) -> None:
        await self._run(self._append_audit_sync, event)

    def _list_audit_sync(
        self,
        case_id: Optional[str],
        limit: Optional[int],
        event_types: Optional[List[str]]
    ) -> List[AuditEvent]:
        with self._session_factory() as session:
            query = select(AuditRow).order_by(AuditRow.timestamp.desc())
            if case_id:
                query = query.where(AuditRow.case_id == case_id)
            if event_types:
                query = query.where(AuditRow.event_type.in_(event_types))
            if limit:
                query = query.limit(limit)
            return [AuditEvent.model_validate(row.document) for row in session.scalars(query)]

    async def list_audit(
        self,
        case_id: Optional[str] = None,
        limit: Optional[int] = 50,
        event_types: Optional[Iterable[EventType]] = None
    ) -> List[AuditEvent]:
        types = [EventType(t).value for t in event_types] if event_types else None
        return await self._run(self._list_audit_sync, case_id, limit, types)

    def _list_overrides_sync(self, case_id: Optional[str], limit: Optional[int]) -> List[OverrideRecord]:
        with self._session_factory() as session:
            query = select(OverrideRow).order_by(OverrideRow.timestamp.desc())
            if case_id:
                query = query.where(OverrideRow.case_id == case_id)
            if limit:
                query = query.limit(limit)
            return [OverrideRecord.model_validate(row.document) for row in session.scalars(query)]

    async def list_overrides(
        self,
        case_id: Optional[str] = None,
        limit: Optional[int] = 50
    ) -> List[OverrideRecord]:
        return await self._run(self._list_overrides_sync, case_id, limit)

    # ========================
    # Hospitals
    # ========================

    def _put_hospital_sync(self, profile: HospitalProfile) -> HospitalProfile:
        with self._session_factory() as session:
            document = profile.model_dump(mode="json")
            row = session.get(HospitalRow, profile.id)
            if row is None:
                session.add(HospitalRow(id=profile.id, document=document, updated_at=utcnow()))
            else:
                row.document = document
                row.updated_at = utcnow()
            session.commit()
        return profile

    async def put_hospital(self, profile: HospitalProfile) -> HospitalProfile:
        return await self._run(self._put_hospital_sync, profile)

    def _get_hospital_sync(self, hospital_id: str) -> Optional[HospitalProfile]:
        with self._session_factory() as session:
            row = session.get(HospitalRow, hospital_id)
            return HospitalProfile.model_validate(row.document) if row else None

    async def get_hospital(self, hospital_id: str) -> Optional[HospitalProfile]:
        return await self._run(self._get_hospital_sync, hospital_id)

    def _list_hospitals_sync(self) -> List[HospitalProfile]:
        with self._session_factory() as session:
            rows = session.scalars(select(HospitalRow).order_by(HospitalRow.id))
            return [HospitalProfile.model_validate(row.document) for row in rows]

    async def list_hospitals(self) -> List[HospitalProfile]:
        return await self._run(self._list_hospitals_sync)

    def _stats_sync(self) -> Dict[str, Any]:
        with self._session_factory() as session:
            by_status = dict(
                session.execute(select(CaseRow.status, func.count()).group_by(CaseRow.status)).all()
            )
            return {
                "cases": sum(by_status.values()),
                "by_status": by_status,
                "hospitals": session.scalar(select(func.count()).select_from(HospitalRow)),
                "audit_events": session.scalar(select(func.count()).select_from(AuditRow)),
                "overrides": session.scalar(select(func.count()).select_from(OverrideRow)),
                "generated_at": utcnow().isoformat(),
            }

    async def get_stats(self) -> Dict[str, Any]:
        return await self._run(self._stats_sync)

    async def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            logger.info("SqlCaseStore closed")
