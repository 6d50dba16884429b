"""
Emergency case models for the dispatch coordination core.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, field_validator

from dispatch_core.core.clock import utcnow, ensure_aware
from dispatch_core.models.handover import HandoverSummary


class CaseStatus(str, Enum):
    """Lifecycle status of an emergency case."""
    CREATED = "created"
    TRIAGED = "triaged"
    DISPATCHED = "dispatched"
    AWAITING_RESPONSE = "awaiting_response"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    ESCALATION_REQUIRED = "escalation_required"
    DISPATCHER_OVERRIDE = "dispatcher_override"
    ENROUTE = "enroute"
    HANDOVER_INITIATED = "handover_initiated"
    HANDOVER_ACKNOWLEDGED = "handover_acknowledged"
    COMPLETED = "completed"


# Position in the lifecycle. AWAITING_RESPONSE and REJECTED share a rank so the
# sequential re-notification loop never moves a case backwards.
STATUS_RANK: Dict[CaseStatus, int] = {
    CaseStatus.CREATED: 0,
    CaseStatus.TRIAGED: 1,
    CaseStatus.DISPATCHED: 2,
    CaseStatus.AWAITING_RESPONSE: 3,
    CaseStatus.REJECTED: 3,
    CaseStatus.ACCEPTED: 4,
    CaseStatus.ESCALATION_REQUIRED: 4,
    CaseStatus.DISPATCHER_OVERRIDE: 5,
    CaseStatus.ENROUTE: 6,
    CaseStatus.HANDOVER_INITIATED: 7,
    CaseStatus.HANDOVER_ACKNOWLEDGED: 8,
    CaseStatus.COMPLETED: 9,
}


class HandoverStatus(str, Enum):
    """Progress of the two-phase handover."""
    NONE = "none"
    INITIATED = "initiated"
    ACKNOWLEDGED = "acknowledged"


class NotificationResponse(str, Enum):
    """Hospital response to a case notification."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class EmergencyType(str, Enum):
    """Emergency category reported at intake."""
    CARDIAC = "cardiac"
    STROKE = "stroke"
    TRAUMA = "trauma"
    ACCIDENT = "accident"
    BURN = "burn"
    FIRE = "fire"
    MEDICAL = "medical"
    INFECTIOUS = "infectious"
    INDUSTRIAL = "industrial"
    OTHER = "other"


class RejectionReason(str, Enum):
    """Mandatory reason codes for a hospital rejection."""
    NO_ICU = "no_icu"
    NO_SPECIALIST = "no_specialist"
    OVER_CAPACITY = "over_capacity"
    EQUIPMENT_UNAVAILABLE = "equipment_unavailable"
    OTHER = "other"


class EscalationReason(str, Enum):
    """Why a case was escalated to the dispatcher."""
    REJECTIONS = "rejections"
    TIMEOUT = "timeout"
    BOTH = "both"
    NO_ELIGIBLE_HOSPITALS = "no_eligible_hospitals"
    MANUAL = "manual"


class GeoPoint(BaseModel):
    """WGS84 coordinate."""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class Vitals(BaseModel):
    """Vital signs captured by the crew. Every field may be missing."""
    heart_rate: Optional[float] = Field(None, ge=0, le=300, description="BPM")
    systolic_bp: Optional[float] = Field(None, ge=0, le=300, description="mmHg")
    diastolic_bp: Optional[float] = Field(None, ge=0, le=200, description="mmHg")
    spo2: Optional[float] = Field(None, ge=0, le=100, description="Oxygen saturation %")
    respiratory_rate: Optional[float] = Field(None, ge=0, le=80, description="Breaths/min")
    temperature: Optional[float] = Field(None, ge=25, le=45, description="Celsius")
    consciousness_level: Optional[str] = Field(None, description="AVPU or GCS total")
    measured_at: Optional[datetime] = None

    def is_critical(self) -> bool:
        """Check if any recorded vital is in a critical range."""
        checks = [
            self.heart_rate is not None and (self.heart_rate < 40 or self.heart_rate > 150),
            self.systolic_bp is not None and (self.systolic_bp < 80 or self.systolic_bp > 200),
            self.spo2 is not None and self.spo2 < 90,
            self.temperature is not None and (self.temperature < 35 or self.temperature > 40),
        ]
        return any(checks)


class PatientInfo(BaseModel):
    """Patient identity as known at intake."""
    name: Optional[str] = None
    age: Optional[int] = Field(None, ge=0, le=150)
    gender: Optional[str] = None


class SupportRequired(BaseModel):
    """Life support the patient needs on arrival."""
    ventilator: bool = False
    defibrillator: bool = False
    oxygen: bool = False


class HospitalNotification(BaseModel):
    """One entry of the case's notification log."""
    hospital_id: str
    hospital_name: str = "Unknown"
    notified_at: datetime
    responded_at: Optional[datetime] = None
    response: NotificationResponse = NotificationResponse.PENDING
    reason: Optional[str] = None
    score: Optional[float] = None
    rank: Optional[int] = None

    @property
    def is_pending(self) -> bool:
        return self.response == NotificationResponse.PENDING


class CandidateSnapshot(BaseModel):
    """Ranker output for one hospital, as recorded on the case."""
    hospital_id: str
    hospital_name: str = "Unknown"
    suitability_score: float = 0.0
    rank: Optional[int] = None
    disqualified: bool = False
    distance_km: Optional[float] = None
    eta_minutes: Optional[int] = None


class StatusChange(BaseModel):
    """A committed status transition."""
    from_status: Optional[CaseStatus] = None
    to_status: CaseStatus
    at: datetime
    actor_id: Optional[str] = None


class CaseRequirements(BaseModel):
    """Clinical and location requirements the ranker scores hospitals against."""
    acuity_level: Optional[int] = Field(None, ge=1, le=5)
    emergency_type: EmergencyType = EmergencyType.OTHER
    location: Optional[GeoPoint] = None
    support_required: SupportRequired = Field(default_factory=SupportRequired)
    isolation_required: bool = False


TIMESTAMP_FIELDS = (
    "created_at",
    "triaged_at",
    "dispatched_at",
    "accepted_at",
    "escalation_triggered_at",
    "enroute_at",
    "handover_initiated_at",
    "handover_acknowledged_at",
    "completed_at",
)


def create_case_id() -> str:
    """Generate a unique case ID."""
    return f"case_{uuid.uuid4().hex[:12]}"


class EmergencyCase(BaseModel):
    """The central aggregate: one emergency from intake to handover."""
    id: str = Field(default_factory=create_case_id, description="Opaque case identifier")

    # Clinical snapshot
    acuity_level: Optional[int] = Field(None, ge=1, le=5, description="1 = most severe")
    vitals: Vitals = Field(default_factory=Vitals)
    emergency_type: EmergencyType = EmergencyType.OTHER
    location: Optional[GeoPoint] = None
    patient: PatientInfo = Field(default_factory=PatientInfo)
    clinical_flags: List[str] = Field(default_factory=list)
    trauma_flags: List[str] = Field(default_factory=list)
    support_required: SupportRequired = Field(default_factory=SupportRequired)
    isolation_required: bool = False
    attachments: List[str] = Field(default_factory=list, description="Incident photo URLs")

    # Lifecycle
    status: CaseStatus = CaseStatus.CREATED
    rejection_count: int = Field(0, ge=0)
    awaiting_response_since: Optional[datetime] = None
    override_used: bool = False
    handover_status: HandoverStatus = HandoverStatus.NONE
    escalation_reason: Optional[EscalationReason] = None

    # Assignment
    accepted_hospital_id: Optional[str] = None
    override_hospital_id: Optional[str] = None
    ranking: List[CandidateSnapshot] = Field(default_factory=list)
    notifications: List[HospitalNotification] = Field(default_factory=list)

    # Handover
    handover_summary: Optional[HandoverSummary] = None
    handover_initiated_by: Optional[str] = None
    handover_acknowledged_by: Optional[str] = None

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow)
    triaged_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    escalation_triggered_at: Optional[datetime] = None
    enroute_at: Optional[datetime] = None
    handover_initiated_at: Optional[datetime] = None
    handover_acknowledged_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    status_history: List[StatusChange] = Field(default_factory=list)
    version: int = Field(0, ge=0)

    @field_validator(*TIMESTAMP_FIELDS, "awaiting_response_since")
    @classmethod
    def _aware_timestamps(cls, value):
        return ensure_aware(value)

    @property
    def effective_acuity(self) -> int:
        """Acuity used for policy decisions; level 3 until triaged."""
        return self.acuity_level or 3

    @property
    def authoritative_hospital_id(self) -> Optional[str]:
        """The single hospital currently responsible for the case."""
        if self.override_used and self.override_hospital_id:
            return self.override_hospital_id
        return self.accepted_hospital_id

    @property
    def is_terminal(self) -> bool:
        return self.status == CaseStatus.COMPLETED

    def pending_notifications(self) -> List[HospitalNotification]:
        return [n for n in self.notifications if n.is_pending]

    def notification_for(self, hospital_id: str) -> Optional[HospitalNotification]:
        """Most recent notification sent to a hospital."""
        for notification in reversed(self.notifications):
            if notification.hospital_id == hospital_id:
                return notification
        return None

    def notified_hospital_ids(self) -> List[str]:
        return [n.hospital_id for n in self.notifications]

    def top_candidate(self) -> Optional[CandidateSnapshot]:
        """The ranker's top non-disqualified pick."""
        for candidate in self.ranking:
            if not candidate.disqualified:
                return candidate
        return None

    def candidate(self, hospital_id: str) -> Optional[CandidateSnapshot]:
        for candidate in self.ranking:
            if candidate.hospital_id == hospital_id:
                return candidate
        return None

    def latest_timestamp(self) -> datetime:
        """Latest lifecycle stamp recorded so far."""
        stamps = [getattr(self, name) for name in TIMESTAMP_FIELDS]
        return max(s for s in stamps if s is not None)

    def stamp(self, field: str, now: datetime) -> datetime:
        """
        Set a lifecycle timestamp once.

        The stamp is clamped so timestamps never decrease; an already-set
        field is left untouched.
        """
        if field not in TIMESTAMP_FIELDS:
            raise ValueError(f"Unknown timestamp field: {field}")
        existing = getattr(self, field)
        if existing is not None:
            return existing
        value = max(ensure_aware(now), self.latest_timestamp())
        setattr(self, field, value)
        return value

    def cancel_pending(self, now: datetime) -> List[str]:
        """Cancel all pending notifications; return the affected hospital ids."""
        cancelled = []
        for notification in self.notifications:
            if notification.is_pending:
                notification.response = NotificationResponse.CANCELLED
                notification.responded_at = now
                cancelled.append(notification.hospital_id)
        return cancelled

    def requirements(self) -> CaseRequirements:
        """Requirements handed to the hospital ranker."""
        return CaseRequirements(
            acuity_level=self.acuity_level,
            emergency_type=self.emergency_type,
            location=self.location,
            support_required=self.support_required,
            isolation_required=self.isolation_required,
        )

    def to_summary(self) -> Dict[str, Any]:
        """Return a summary dict for list views."""
        return {
            "id": self.id,
            "status": self.status.value,
            "acuity_level": self.acuity_level,
            "emergency_type": self.emergency_type.value,
            "rejection_count": self.rejection_count,
            "authoritative_hospital_id": self.authoritative_hospital_id,
            "override_used": self.override_used,
            "handover_status": self.handover_status.value,
            "created_at": self.created_at.isoformat(),
            "is_critical": self.vitals.is_critical(),
        }
