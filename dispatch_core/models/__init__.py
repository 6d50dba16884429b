"""
Models package for the dispatch core.
"""

from .handover import (
    HandoverSummary,
    HandoverPatient,
    HandoverClinical,
    HandoverTimeline,
    HandoverOperational
)

from .case import (
    EmergencyCase,
    CaseStatus,
    STATUS_RANK,
    HandoverStatus,
    NotificationResponse,
    EmergencyType,
    RejectionReason,
    EscalationReason,
    GeoPoint,
    Vitals,
    PatientInfo,
    SupportRequired,
    HospitalNotification,
    CandidateSnapshot,
    StatusChange,
    CaseRequirements
)

from .hospital import (
    HospitalProfile,
    BedAvailability,
    Equipment,
    Capabilities,
    LiveOps,
    ReadinessStatus,
    EffectiveCapacity
)

from .ranking import (
    DisqualificationCode,
    TravelEstimate,
    ScoreBreakdown,
    HospitalScore,
    HospitalRanking
)

from .override import (
    OverrideRecord,
    OverrideReason
)

from .events import (
    EventType,
    AUDIT_EVENT_TYPES,
    AuditEvent,
    CaseChangedEvent,
    Actor,
    ActorRole,
    create_event_id
)

__all__ = [
    # Handover
    "HandoverSummary",
    "HandoverPatient",
    "HandoverClinical",
    "HandoverTimeline",
    "HandoverOperational",

    # Case
    "EmergencyCase",
    "CaseStatus",
    "STATUS_RANK",
    "HandoverStatus",
    "NotificationResponse",
    "EmergencyType",
    "RejectionReason",
    "EscalationReason",
    "GeoPoint",
    "Vitals",
    "PatientInfo",
    "SupportRequired",
    "HospitalNotification",
    "CandidateSnapshot",
    "StatusChange",
    "CaseRequirements",

    # Hospital
    "HospitalProfile",
    "BedAvailability",
    "Equipment",
    "Capabilities",
    "LiveOps",
    "ReadinessStatus",
    "EffectiveCapacity",

    # Ranking
    "DisqualificationCode",
    "TravelEstimate",
    "ScoreBreakdown",
    "HospitalScore",
    "HospitalRanking",

    # Override
    "OverrideRecord",
    "OverrideReason",

    # Events
    "EventType",
    "AUDIT_EVENT_TYPES",
    "AuditEvent",
    "CaseChangedEvent",
    "Actor",
    "ActorRole",
    "create_event_id"
]
