"""
Handover summary models.

A summary is built once when the crew initiates handover and is stored frozen
on the case; acknowledgement never rebuilds it.
"""

from datetime import datetime
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field


class HandoverPatient(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = "Unknown"
    age: Optional[int] = None
    gender: Optional[str] = None


class HandoverClinical(BaseModel):
    model_config = ConfigDict(frozen=True)

    acuity_level: Optional[int] = None
    vitals: Dict[str, Any] = Field(default_factory=dict)
    triage_flags: List[str] = Field(default_factory=list)
    trauma_flags: List[str] = Field(default_factory=list)
    consciousness_level: Optional[str] = None
    is_critical: bool = False


class HandoverTimeline(BaseModel):
    model_config = ConfigDict(frozen=True)

    created_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    enroute_at: Optional[datetime] = None
    escalation_triggered_at: Optional[datetime] = None
    override_used: bool = False


class HandoverOperational(BaseModel):
    model_config = ConfigDict(frozen=True)

    golden_hour_minutes_remaining: float = Field(..., description="Negative once breached")
    golden_hour_breached: bool = False
    rejection_count: int = 0
    emergency_type: str = "other"
    hospital_id: Optional[str] = None


class HandoverSummary(BaseModel):
    """Clinical and operational snapshot handed to the receiving hospital."""
    model_config = ConfigDict(frozen=True)

    case_id: str
    generated_at: datetime
    patient: HandoverPatient
    clinical: HandoverClinical
    timeline: HandoverTimeline
    operational: HandoverOperational
    attachments: List[str] = Field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
