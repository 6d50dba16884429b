"""
Case store: the persistence collaborator for cases, hospitals and audit records.

Every case mutation goes through ``transact``, a guarded read-modify-write
that either commits the case together with any queued override records or
commits nothing.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional

from dispatch_core.core.clock import utcnow
from dispatch_core.core.exceptions import CaseNotFound, ValidationFailure
from dispatch_core.models.case import CaseStatus, EmergencyCase
from dispatch_core.models.events import AuditEvent, EventType
from dispatch_core.models.hospital import HospitalProfile
from dispatch_core.models.override import OverrideRecord

logger = logging.getLogger(__name__)


class CaseTransaction:
    """
    Handle passed to a transact callback.

    ``case`` is a private copy of the stored document; mutate it freely.
    Raising from the callback discards every change.
    """

    def __init__(self, case: EmergencyCase):
        self.case = case
        self.overrides: List[OverrideRecord] = []

    def append_override(self, record: OverrideRecord) -> None:
        """Queue an override record to be committed with the case."""
        self.overrides.append(record)


class TransactionResult:
    """Outcome of a committed (or no-op) transaction."""

    def __init__(
        self,
        before: EmergencyCase,
        case: EmergencyCase,
        value: Any = None,
        written: bool = True,
        overrides: Optional[List[OverrideRecord]] = None
    ):
        self.before = before
        self.case = case
        self.value = value
        self.written = written
        self.overrides = overrides or []


def run_guarded(
    current: EmergencyCase,
    fn: Callable[[CaseTransaction], Any]
):
    """
    Run a transact callback against a private copy of ``current``.

    Returns (txn, value, changed). ``changed`` is False when the callback left
    the case untouched and queued nothing, so the store can skip the write.
    """
    txn = CaseTransaction(current.model_copy(deep=True))
    value = fn(txn)
    changed = bool(txn.overrides) or txn.case.model_dump() != current.model_dump()
    return txn, value, changed


def _sort_desc(items: Iterable, limit: Optional[int]) -> List:
    ordered = sorted(items, key=lambda item: item.timestamp, reverse=True)
    return ordered[:limit] if limit else ordered


class CaseStore(ABC):
    """Persistence contract used by the state machine and its collaborators."""

    # ========================
    # Cases
    # ========================

    @abstractmethod
    async def create(self, case: EmergencyCase) -> EmergencyCase:
        """Insert a new case. Raises ValidationFailure if the id already exists."""

    @abstractmethod
    async def get(self, case_id: str) -> EmergencyCase:
        """Return a copy of the case. Raises CaseNotFound."""

    @abstractmethod
    async def list_cases(self, statuses: Optional[Iterable[CaseStatus]] = None) -> List[EmergencyCase]:
        """List cases, optionally restricted to some statuses."""

    @abstractmethod
    async def transact(
        self,
        case_id: str,
        fn: Callable[[CaseTransaction], Any]
    ) -> TransactionResult:
        """Atomically read, mutate via ``fn`` and commit one case."""

    # ========================
    # Audit
    # ========================

    @abstractmethod
    async def append_audit(self, event: AuditEvent) -> None:
        """Append an audit event."""

    @abstractmethod
    async def list_audit(
        self,
        case_id: Optional[str] = None,
        limit: Optional[int] = 50,
        event_types: Optional[Iterable[EventType]] = None
    ) -> List[AuditEvent]:
        """Audit events, newest first."""

    @abstractmethod
    async def list_overrides(
        self,
        case_id: Optional[str] = None,
        limit: Optional[int] = 50
    ) -> List[OverrideRecord]:
        """Override records, newest first."""

    # ========================
    # Hospitals
    # ========================

    @abstractmethod
    async def put_hospital(self, profile: HospitalProfile) -> HospitalProfile:
        """Insert or replace a hospital profile."""

    @abstractmethod
    async def get_hospital(self, hospital_id: str) -> Optional[HospitalProfile]:
        """Return a hospital profile or None."""

    @abstractmethod
    async def list_hospitals(self) -> List[HospitalProfile]:
        """All hospital profiles."""

    async def get_stats(self) -> Dict[str, Any]:
        """Counts for the health endpoint."""
        return {}

    async def close(self) -> None:
        """Release store resources."""


class InMemoryCaseStore(CaseStore):
    """
    In-process store for development and tests.

    Maintains:
    - Case documents keyed by id
    - Append-only audit and override logs
    - Hospital profiles

    A single lock makes each transaction one atomic unit. The critical
    section never awaits, so the store is safe across event loops and threads.
    """

    def __init__(self):
        self._cases: Dict[str, EmergencyCase] = {}
        self._audit: List[AuditEvent] = []
        self._overrides: List[OverrideRecord] = []
        self._hospitals: Dict[str, HospitalProfile] = {}
        self._lock = threading.Lock()

        logger.info("InMemoryCaseStore initialized")

    async def create(self, case: EmergencyCase) -> EmergencyCase:
        with self._lock:
            if case.id in self._cases:
                raise ValidationFailure(f"Case {case.id} already exists", case_id=case.id)
            stored = case.model_copy(deep=True)
            self._cases[case.id] = stored
            logger.info(f"Stored case: {case.id}")
            return stored.model_copy(deep=True)

    async def get(self, case_id: str) -> EmergencyCase:
        with self._lock:
            case = self._cases.get(case_id)
            if case is None:
                raise CaseNotFound(f"Case {case_id} not found", case_id=case_id)
            return case.model_copy(deep=True)

    async def list_cases(self, statuses: Optional[Iterable[CaseStatus]] = None) -> List[EmergencyCase]:
        wanted = set(statuses) if statuses else None
        with self._lock:
            return [
                c.model_copy(deep=True) for c in self._cases.values()
                if wanted is None or c.status in wanted
            ]

    async def transact(
        self,
        case_id: str,
        fn: Callable[[CaseTransaction], Any]
    ) -> TransactionResult:
        with self._lock:
            current = self._cases.get(case_id)
            if current is None:
                raise CaseNotFound(f"Case {case_id} not found", case_id=case_id)

            txn, value, changed = run_guarded(current, fn)
            if not changed:
                return TransactionResult(current.model_copy(deep=True), current.model_copy(deep=True), value, written=False)

            txn.case.version = current.version + 1
            self._cases[case_id] = txn.case
            self._overrides.extend(txn.overrides)
            logger.debug(f"Committed case {case_id} at version {txn.case.version}")
            return TransactionResult(
                current, txn.case.model_copy(deep=True), value, overrides=list(txn.overrides)
            )

    async def append_audit(self, event: AuditEvent) -> None:
        with self._lock:
            self._audit.append(event)

    async def list_audit(
        self,
        case_id: Optional[str] = None,
        limit: Optional[int] = 50,
        event_types: Optional[Iterable[EventType]] = None
    ) -> List[AuditEvent]:
        types = set(event_types) if event_types else None
        with self._lock:
            events = [
                e for e in self._audit
                if (case_id is None or e.case_id == case_id)
                and (types is None or e.event_type in types)
            ]
        return _sort_desc(events, limit)

    async def list_overrides(
        self,
        case_id: Optional[str] = None,
        limit: Optional[int] = 50
    ) -> List[OverrideRecord]:
        with self._lock:
            records = [r for r in self._overrides if case_id is None or r.case_id == case_id]
        return _sort_desc(records, limit)

    async def put_hospital(self, profile: HospitalProfile) -> HospitalProfile:
        with self._lock:
            self._hospitals[profile.id] = profile.model_copy(deep=True)
            logger.debug(f"Stored hospital: {profile.id}")
        return profile

    async def get_hospital(self, hospital_id: str) -> Optional[HospitalProfile]:
        with self._lock:
            profile = self._hospitals.get(hospital_id)
            return profile.model_copy(deep=True) if profile else None

    async def list_hospitals(self) -> List[HospitalProfile]:
        with self._lock:
            return [h.model_copy(deep=True) for h in self._hospitals.values()]

    async def get_stats(self) -> Dict[str, Any]:
        """Counts for the health endpoint."""
        with self._lock:
            by_status: Dict[str, int] = {}
            for case in self._cases.values():
                by_status[case.status.value] = by_status.get(case.status.value, 0) + 1
            return {
                "cases": len(self._cases),
                "by_status": by_status,
                "hospitals": len(self._hospitals),
                "audit_events": len(self._audit),
                "overrides": len(self._overrides),
                "generated_at": utcnow().isoformat(),
            }
