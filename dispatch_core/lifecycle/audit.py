"""
Best-effort audit log on top of the case store.

Audit writes happen after a transition has committed; a failed write is
logged and never undoes or fails the transition.
"""

import logging
from typing import Iterable, List, Optional

from dispatch_core.core.store import CaseStore
from dispatch_core.models.events import AuditEvent, EventType

logger = logging.getLogger(__name__)


class AuditLog:
    """Append-only log of hospital, dispatcher and handover activity."""

    def __init__(self, store: CaseStore):
        self.store = store

    async def record(self, event: AuditEvent) -> bool:
        """Write one event. Returns False (and logs) on failure."""
        try:
            await self.store.append_audit(event)
            logger.debug(f"Audit {event.event_type.value} for case {event.case_id}")
            return True
        except Exception as e:
            logger.warning(
                f"Audit write failed for {event.event_type.value} on case {event.case_id}: {e}"
            )
            return False

    async def record_all(self, events: Iterable[AuditEvent]) -> int:
        """Write events in order; returns how many were stored."""
        written = 0
        for event in events:
            if await self.record(event):
                written += 1
        return written

    async def for_case(
        self,
        case_id: str,
        limit: Optional[int] = 50,
        event_types: Optional[Iterable[EventType]] = None
    ) -> List[AuditEvent]:
        """Events for one case, newest first."""
        return await self.store.list_audit(case_id=case_id, limit=limit, event_types=event_types)

    async def recent(
        self,
        limit: Optional[int] = 50,
        event_types: Optional[Iterable[EventType]] = None
    ) -> List[AuditEvent]:
        """Latest events across all cases."""
        return await self.store.list_audit(limit=limit, event_types=event_types)
