"""
Hospital ranking result models.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field

from dispatch_core.models.case import CandidateSnapshot


class DisqualificationCode(str, Enum):
    """Hard reasons a hospital cannot receive the patient."""
    CATEGORY_NOT_ACCEPTED = "category_not_accepted"
    HOSPITAL_FULL = "hospital_full"
    NO_ISOLATION_BEDS = "no_isolation_beds"
    NO_ICU_FOR_CRITICAL = "no_icu_for_critical"
    NO_BEDS_AVAILABLE = "no_beds_available"


class TravelEstimate(BaseModel):
    """Distance and ETA supplied by a routing collaborator."""
    distance_km: Optional[float] = Field(None, ge=0)
    eta_minutes: Optional[int] = Field(None, ge=0)


class ScoreBreakdown(BaseModel):
    """Sub-scores (0-100) behind a suitability score."""
    capability: float = 0.0
    specialists: float = 0.0
    equipment: float = 0.0
    beds: float = 0.0
    load: float = 0.0
    distance: float = 0.0
    freshness_multiplier: float = 1.0
    icu_count: int = 0
    specialist_count: int = 0


class HospitalScore(BaseModel):
    """Ranker output for a single hospital."""
    hospital_id: str
    hospital_name: str = "Unknown"
    suitability_score: float = Field(0.0, ge=0, le=100)
    rank: Optional[int] = Field(None, ge=1)
    distance_km: Optional[float] = None
    eta_minutes: Optional[int] = None
    disqualified: bool = False
    disqualification_codes: List[DisqualificationCode] = Field(default_factory=list)
    disqualification_details: List[str] = Field(default_factory=list)
    recommendation_reasons: List[str] = Field(default_factory=list)
    breakdown: Optional[ScoreBreakdown] = None

    def to_snapshot(self) -> CandidateSnapshot:
        return CandidateSnapshot(
            hospital_id=self.hospital_id,
            hospital_name=self.hospital_name,
            suitability_score=self.suitability_score,
            rank=self.rank,
            disqualified=self.disqualified,
            distance_km=self.distance_km,
            eta_minutes=self.eta_minutes,
        )


class HospitalRanking(BaseModel):
    """Ordered ranker result: ranked hospitals first, disqualified last."""
    candidates: List[HospitalScore] = Field(default_factory=list)
    weights: Dict[str, float] = Field(default_factory=dict)
    emergency_type: str = "other"
    acuity_level: Optional[int] = None
    as_of: datetime

    def ranked(self) -> List[HospitalScore]:
        return [c for c in self.candidates if not c.disqualified]

    def disqualified(self) -> List[HospitalScore]:
        return [c for c in self.candidates if c.disqualified]

    def top(self, n: int = 1) -> List[HospitalScore]:
        return self.ranked()[:n]

    def get(self, hospital_id: str) -> Optional[HospitalScore]:
        for candidate in self.candidates:
            if candidate.hospital_id == hospital_id:
                return candidate
        return None

    def to_snapshot(self) -> List[CandidateSnapshot]:
        return [c.to_snapshot() for c in self.candidates]

    def to_summary(self) -> Dict[str, Any]:
        best = self.top(1)
        return {
            "emergency_type": self.emergency_type,
            "acuity_level": self.acuity_level,
            "ranked": len(self.ranked()),
            "disqualified": len(self.disqualified()),
            "top_hospital_id": best[0].hospital_id if best else None,
            "as_of": self.as_of.isoformat(),
        }
