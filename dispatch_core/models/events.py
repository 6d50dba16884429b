"""
Event models: audit log entries, change notifications and the acting identity.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any

from pydantic import BaseModel, Field

from dispatch_core.core.clock import utcnow


class EventType(str, Enum):
    """Types of events in the system."""
    # Hospital response cycle
    HOSPITAL_NOTIFIED = "hospital_notified"
    HOSPITAL_ACCEPTED = "hospital_accepted"
    PARALLEL_CANCELLED = "parallel_cancelled"
    HOSPITAL_REJECTED = "hospital_rejected"
    ESCALATION_TRIGGERED = "escalation_triggered"

    # Dispatcher
    DISPATCHER_OVERRIDE = "dispatcher_override"
    RANKING_REFRESHED = "ranking_refreshed"

    # Handover
    HANDOVER_INITIATED = "handover_initiated"
    HANDOVER_ACKNOWLEDGED = "handover_acknowledged"
    CASE_COMPLETED = "case_completed"

    # Change notification (event bus only, never written to the audit log)
    CASE_CHANGED = "case_changed"


AUDIT_EVENT_TYPES = frozenset(t for t in EventType if t != EventType.CASE_CHANGED)


class ActorRole(str, Enum):
    """Who is acting on a case."""
    PARAMEDIC = "paramedic"
    DISPATCHER = "dispatcher"
    HOSPITAL = "hospital"
    ADMIN = "admin"
    SYSTEM = "system"


class Actor(BaseModel):
    """Identity attached to every transition request."""
    id: str = Field(..., min_length=1)
    role: ActorRole
    hospital_id: Optional[str] = Field(None, description="Set for hospital staff")

    @classmethod
    def system(cls, name: str = "system") -> "Actor":
        return cls(id=name, role=ActorRole.SYSTEM)


def create_event_id() -> str:
    """Generate a unique event ID."""
    return f"evt_{uuid.uuid4().hex[:12]}"


class AuditEvent(BaseModel):
    """Append-only audit log entry."""
    id: str = Field(default_factory=create_event_id, description="Unique event ID")
    event_type: EventType
    case_id: str
    hospital_id: Optional[str] = None
    actor_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "event_type": self.event_type.value,
            "case_id": self.case_id,
            "hospital_id": self.hospital_id,
            "actor_id": self.actor_id,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }


class CaseChangedEvent(BaseModel):
    """Published on the event bus after every committed transition."""
    id: str = Field(default_factory=create_event_id)
    event_type: EventType = EventType.CASE_CHANGED
    case_id: str
    from_status: Optional[str] = None
    to_status: str
    actor_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    snapshot: Dict[str, Any] = Field(default_factory=dict)

    @property
    def status_changed(self) -> bool:
        return self.from_status != self.to_status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_type": self.event_type.value,
            "case_id": self.case_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_id": self.actor_id,
            "timestamp": self.timestamp.isoformat(),
        }
