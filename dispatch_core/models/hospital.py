"""
Hospital profile and capacity models for the dispatch core.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dispatch_core.core.clock import ensure_aware
from dispatch_core.models.case import GeoPoint


class ReadinessStatus(str, Enum):
    """Whether a hospital is currently taking ambulance patients."""
    ACCEPTING = "accepting"
    DIVERTING = "diverting"
    FULL = "full"


class BedAvailability(BaseModel):
    """Available beds by type. None means the hospital did not report it."""
    icu: Optional[int] = Field(None, ge=0)
    emergency: Optional[int] = Field(None, ge=0)
    trauma: Optional[int] = Field(None, ge=0)
    isolation: Optional[int] = Field(None, ge=0)
    pediatric: Optional[int] = Field(None, ge=0)
    general: Optional[int] = Field(None, ge=0)

    @property
    def total_available(self) -> int:
        """Total reported beds; unreported types count as zero."""
        return sum(
            v or 0 for v in (
                self.icu, self.emergency, self.trauma,
                self.isolation, self.pediatric, self.general
            )
        )


class Equipment(BaseModel):
    """Critical equipment currently available."""
    ventilators: Optional[int] = Field(None, ge=0)
    defibrillators: Optional[int] = Field(None, ge=0)
    portable_xray: Optional[bool] = None
    dialysis: Optional[bool] = None


class Capabilities(BaseModel):
    """Fixed clinical capabilities."""
    stroke_center: bool = False
    emergency_surgery: bool = False
    ct_scan: bool = False
    mri: bool = False


class LiveOps(BaseModel):
    """Live operational overlay pushed by the hospital between profile edits."""
    beds: Optional[BedAvailability] = None
    equipment: Optional[Equipment] = None
    readiness: Optional[ReadinessStatus] = None
    ambulance_queue: Optional[int] = Field(None, ge=0)
    updated_at: Optional[datetime] = None

    @field_validator("updated_at")
    @classmethod
    def _aware(cls, value):
        return ensure_aware(value)


class EffectiveCapacity(BaseModel):
    """Capacity after live values are resolved over the canonical profile."""
    model_config = ConfigDict(frozen=True)

    beds: BedAvailability
    equipment: Equipment
    readiness: Optional[ReadinessStatus] = None
    ambulance_queue: Optional[int] = None
    capacity_last_updated: Optional[datetime] = None


def _overlay(canonical: BaseModel, live: Optional[BaseModel]) -> Dict[str, Any]:
    """Field-wise merge: a live value wins whenever it is not None."""
    merged = canonical.model_dump()
    if live is not None:
        for key, value in live.model_dump().items():
            if value is not None:
                merged[key] = value
    return merged


class HospitalProfile(BaseModel):
    """Canonical hospital snapshot with an optional live overlay."""
    id: str = Field(..., description="Unique hospital identifier")
    name: str = "Unknown"
    location: Optional[GeoPoint] = None
    accepted_emergency_types: Optional[List[str]] = Field(
        None, description="Categories the hospital accepts; None accepts all"
    )
    beds: BedAvailability = Field(default_factory=BedAvailability)
    equipment: Equipment = Field(default_factory=Equipment)
    specialists: Dict[str, int] = Field(default_factory=dict, description="Specialty -> on-duty count")
    capabilities: Capabilities = Field(default_factory=Capabilities)
    trauma_level: Optional[int] = Field(None, ge=1, le=4, description="1 = highest trauma level")
    readiness: Optional[ReadinessStatus] = None
    ambulance_queue: Optional[int] = Field(None, ge=0)
    emergency_24x7: bool = False
    surgery_24x7: bool = False
    capacity_last_updated: Optional[datetime] = None
    live: Optional[LiveOps] = None

    @field_validator("capacity_last_updated")
    @classmethod
    def _aware(cls, value):
        return ensure_aware(value)

    def accepts(self, emergency_type: str) -> bool:
        if self.accepted_emergency_types is None:
            return True
        return emergency_type in self.accepted_emergency_types

    def effective(self) -> EffectiveCapacity:
        """Resolve live-over-canonical precedence once."""
        live = self.live
        readiness = self.readiness
        queue = self.ambulance_queue
        last_updated = self.capacity_last_updated
        if live is not None:
            if live.readiness is not None:
                readiness = live.readiness
            if live.ambulance_queue is not None:
                queue = live.ambulance_queue
            if live.updated_at is not None and (
                last_updated is None or live.updated_at > last_updated
            ):
                last_updated = live.updated_at
        return EffectiveCapacity(
            beds=BedAvailability(**_overlay(self.beds, live.beds if live else None)),
            equipment=Equipment(**_overlay(self.equipment, live.equipment if live else None)),
            readiness=readiness,
            ambulance_queue=queue,
            capacity_last_updated=last_updated,
        )

    def to_summary(self) -> Dict[str, Any]:
        """Return summary for list views."""
        capacity = self.effective()
        return {
            "id": self.id,
            "name": self.name,
            "readiness": capacity.readiness.value if capacity.readiness else None,
            "total_beds_available": capacity.beds.total_available,
            "icu_available": capacity.beds.icu,
            "ambulance_queue": capacity.ambulance_queue,
            "trauma_level": self.trauma_level,
            "capacity_last_updated": (
                capacity.capacity_last_updated.isoformat()
                if capacity.capacity_last_updated else None
            ),
        }
