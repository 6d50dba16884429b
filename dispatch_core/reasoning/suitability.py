"""
Hospital suitability ranker.

Scores every candidate hospital for one emergency case with a weighted
multi-criteria sum of capability, specialist, equipment, bed, load and
distance sub-scores, after hard disqualification filters.
"""

import logging
import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from dispatch_core.core.clock import utcnow, ensure_aware
from dispatch_core.core.config import Config, RankerWeights
from dispatch_core.core.exceptions import ValidationFailure
from dispatch_core.models.case import (
    CandidateSnapshot,
    CaseRequirements,
    GeoPoint,
    HospitalNotification,
    NotificationResponse,
)
from dispatch_core.models.hospital import HospitalProfile, EffectiveCapacity, ReadinessStatus
from dispatch_core.models.ranking import (
    DisqualificationCode,
    HospitalRanking,
    HospitalScore,
    ScoreBreakdown,
    TravelEstimate,
)

logger = logging.getLogger(__name__)


EARTH_RADIUS_KM = 6371.0


# Emergency-specific scoring profiles
EMERGENCY_PROFILES: Dict[str, Dict[str, Any]] = {
    "cardiac": {
        "specialist_weights": {"cardiologist": 1.5},
        "capability_scores": {"stroke_center": 20, "emergency_surgery": 15},
        "equipment_scores": {"defibrillator": (25, -40)},
        "bed_types": ["icu", "emergency"],
        "critical_beds": ["icu"],
        "trauma_level_scores": None,
    },
    "trauma": {
        "specialist_weights": {"trauma_surgeon": 2.0, "radiologist": 1.0},
        "capability_scores": {"emergency_surgery": 25, "ct_scan": 15},
        "equipment_scores": {"ventilator": (20, -30), "portable_xray": (10, -10)},
        "bed_types": ["trauma", "icu", "emergency"],
        "critical_beds": ["trauma", "icu"],
        "trauma_level_scores": {1: 30, 2: 18, 3: 8},
    },
    "burn": {
        "specialist_weights": {"burn_specialist": 2.5},
        "capability_scores": {"emergency_surgery": 20},
        "equipment_scores": {"ventilator": (20, -35)},
        "bed_types": ["icu", "isolation", "emergency"],
        "critical_beds": ["isolation"],
        "trauma_level_scores": None,
    },
    "medical": {
        "specialist_weights": {"pulmonologist": 1.2, "cardiologist": 1.0},
        "capability_scores": {"ct_scan": 15, "mri": 10},
        "equipment_scores": {"ventilator": (15, -20)},
        "bed_types": ["icu", "emergency"],
        "critical_beds": ["icu"],
        "trauma_level_scores": None,
    },
    "accident": {
        "specialist_weights": {"trauma_surgeon": 1.8, "radiologist": 1.0},
        "capability_scores": {"emergency_surgery": 22, "ct_scan": 12},
        "equipment_scores": {"portable_xray": (12, -15), "ventilator": (15, -25)},
        "bed_types": ["trauma", "emergency"],
        "critical_beds": ["trauma"],
        "trauma_level_scores": {1: 25, 2: 15, 3: 6},
    },
    "fire": {
        "specialist_weights": {"burn_specialist": 2.0, "pulmonologist": 1.5},
        "capability_scores": {"emergency_surgery": 20},
        "equipment_scores": {"ventilator": (25, -40)},
        "bed_types": ["icu", "isolation"],
        "critical_beds": ["icu"],
        "trauma_level_scores": None,
    },
    "infectious": {
        "specialist_weights": {"pulmonologist": 1.5},
        "capability_scores": {},
        "equipment_scores": {"ventilator": (20, -30)},
        "bed_types": ["isolation", "icu"],
        "critical_beds": ["isolation"],
        "requires_isolation": True,
        "trauma_level_scores": None,
    },
    "other": {
        "specialist_weights": {},
        "capability_scores": {},
        "equipment_scores": {},
        "bed_types": ["emergency"],
        "critical_beds": [],
        "trauma_level_scores": None,
    },
}

EMERGENCY_TYPE_ALIAS = {
    "stroke": "cardiac",
    "industrial": "trauma",
}

_LABELS = {
    "stroke_center": "Stroke Center",
    "emergency_surgery": "Emergency Surgery",
    "ct_scan": "CT Scan",
    "mri": "MRI",
    "icu": "ICU beds",
    "emergency": "ER beds",
    "trauma": "trauma beds",
    "isolation": "isolation beds",
    "pediatric": "pediatric beds",
}


def profile_for(emergency_type: str) -> Dict[str, Any]:
    """Scoring profile for an emergency type (unknown types use 'other')."""
    key = EMERGENCY_TYPE_ALIAS.get(emergency_type, emergency_type)
    return EMERGENCY_PROFILES.get(key, EMERGENCY_PROFILES["other"])


def haversine_km(origin: GeoPoint, destination: GeoPoint) -> float:
    """Great-circle distance in kilometres."""
    lat1, lon1 = math.radians(origin.latitude), math.radians(origin.longitude)
    lat2, lon2 = math.radians(destination.latitude), math.radians(destination.longitude)
    a = (
        math.sin((lat2 - lat1) / 2) ** 2 +
        math.cos(lat1) * math.cos(lat2) * math.sin((lon2 - lon1) / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def estimate_eta_minutes(distance_km: float, speed_kmh: Optional[float] = None) -> int:
    speed = speed_kmh or Config.AVERAGE_AMBULANCE_SPEED_KMH
    return int(round(distance_km / speed * 60))


def coerce_hospital(raw: Union[HospitalProfile, Mapping[str, Any]], index: int = 0) -> HospitalProfile:
    """
    Build a HospitalProfile from possibly malformed input.

    Invalid top-level fields are dropped (and so scored worst case) instead of
    failing the whole ranking.
    """
    if isinstance(raw, HospitalProfile):
        return raw
    if not isinstance(raw, Mapping):
        logger.warning(f"Ignoring non-mapping hospital entry at index {index}")
        return HospitalProfile(id=f"unknown-{index}")

    data = dict(raw)
    if not isinstance(data.get("id"), str) or not data.get("id"):
        data["id"] = str(data["id"]) if data.get("id") is not None else f"unknown-{index}"

    for _ in range(len(data) + 1):
        try:
            return HospitalProfile.model_validate(data)
        except ValidationError as e:
            bad_fields = {err["loc"][0] for err in e.errors() if err.get("loc")}
            bad_fields.discard("id")
            if not bad_fields:
                break
            logger.warning(f"Hospital {data['id']}: dropping malformed fields {sorted(map(str, bad_fields))}")
            for field in bad_fields:
                data.pop(field, None)
    return HospitalProfile(id=data["id"])


def _sort_key(candidate: Union[HospitalScore, CandidateSnapshot]) -> Tuple:
    eta = candidate.eta_minutes if candidate.eta_minutes is not None else math.inf
    distance = candidate.distance_km if candidate.distance_km is not None else math.inf
    return (-candidate.suitability_score, eta, distance, candidate.hospital_id)


def order_candidates(candidates: Iterable[Any]) -> List[Any]:
    """
    Sort and rank candidates in place of any previous order.

    Ranked candidates come first (score desc, ETA asc, distance asc, id);
    disqualified ones follow ordered by id with no rank.
    """
    candidates = list(candidates)
    ranked = sorted((c for c in candidates if not c.disqualified), key=_sort_key)
    disqualified = sorted((c for c in candidates if c.disqualified), key=lambda c: c.hospital_id)
    for position, candidate in enumerate(ranked, start=1):
        candidate.rank = position
    for candidate in disqualified:
        candidate.rank = None
    return ranked + disqualified


class HospitalSuitabilityRanker:
    """
    Multi-criteria hospital ranker.

    Combines sub-scores (each 0-100) into a weighted suitability score:
    - Capability (case acceptance, trauma level, clinical capabilities)
    - Specialists on duty for the emergency type
    - Equipment matching the patient's support needs
    - Beds of the relevant types
    - Operational load (diversion, ambulance queue)
    - Distance
    The sum is scaled by a capacity-freshness multiplier.
    """

    def __init__(
        self,
        weights: Optional[RankerWeights] = None,
        speed_kmh: Optional[float] = None
    ):
        """
        Args:
            weights: Fixed weights for every case, or None to pick by acuity
            speed_kmh: Average ambulance speed used when no travel estimate is given

        Raises:
            ValidationFailure: If the fixed weights do not sum to 1.0
        """
        if weights is not None and not weights.validate_sum():
            raise ValidationFailure(
                f"Ranker weights must sum to 1.0, got {weights.total():.3f}",
                details={"weights": weights.to_dict()},
            )
        self.weights = weights
        self.speed_kmh = speed_kmh or Config.AVERAGE_AMBULANCE_SPEED_KMH

    def weights_for(self, acuity_level: Optional[int]) -> RankerWeights:
        return self.weights or Config.get_ranker_weights(acuity_level)

    # ========================
    # Disqualification
    # ========================

    def check_disqualification(
        self,
        hospital: HospitalProfile,
        capacity: EffectiveCapacity,
        requirements: CaseRequirements,
        profile: Dict[str, Any]
    ) -> List[Tuple[DisqualificationCode, str]]:
        """Return the hard reasons the hospital cannot take this case."""
        reasons = []
        emergency_type = requirements.emergency_type.value

        if not hospital.accepts(emergency_type):
            reasons.append((DisqualificationCode.CATEGORY_NOT_ACCEPTED, f"Does not accept {emergency_type} cases"))

        if capacity.readiness == ReadinessStatus.FULL:
            reasons.append((DisqualificationCode.HOSPITAL_FULL, "Hospital is FULL"))

        if requirements.isolation_required or profile.get("requires_isolation"):
            if not capacity.beds.isolation:
                reasons.append((DisqualificationCode.NO_ISOLATION_BEDS, "No isolation beds available (required)"))

        acuity = requirements.acuity_level
        if acuity is not None and acuity <= 2 and "icu" in profile["critical_beds"]:
            if not capacity.beds.icu:
                reasons.append((DisqualificationCode.NO_ICU_FOR_CRITICAL, "No ICU beds for critical case"))

        if capacity.beds.total_available == 0:
            reasons.append((DisqualificationCode.NO_BEDS_AVAILABLE, "No beds available"))

        return reasons

    # ========================
    # Sub-scores
    # ========================

    def calculate_capability_score(
        self,
        hospital: HospitalProfile,
        requirements: CaseRequirements,
        profile: Dict[str, Any]
    ) -> Tuple[float, List[str]]:
        score = 30.0
        reasons = [f"Accepts {requirements.emergency_type.value} cases"]

        trauma_scores = profile.get("trauma_level_scores")
        if trauma_scores and hospital.trauma_level:
            points = trauma_scores.get(hospital.trauma_level, 0)
            if points:
                score += points
                reasons.append(f"Level {hospital.trauma_level} trauma center")

        capabilities = hospital.capabilities.model_dump()
        for capability, points in profile["capability_scores"].items():
            if capabilities.get(capability):
                score += points
                reasons.append(f"Has {_LABELS.get(capability, capability)}")

        if hospital.surgery_24x7:
            score += 10
            reasons.append("24/7 surgery available")

        return min(100.0, score), reasons

    def calculate_specialist_score(
        self,
        hospital: HospitalProfile,
        profile: Dict[str, Any]
    ) -> Tuple[float, List[str], int]:
        weights = profile["specialist_weights"]
        if not weights:
            return 50.0, [], 0

        weighted_count = 0.0
        raw_count = 0
        reasons = []
        for specialty, weight in weights.items():
            count = hospital.specialists.get(specialty) or 0
            weighted_count += count * weight
            raw_count += count
            if count > 0:
                reasons.append(f"{count} {specialty.replace('_', ' ')}{'s' if count > 1 else ''}")

        # 5 weighted specialists on duty saturate the score
        score = min(100.0, round(weighted_count / 5 * 100))
        return score, reasons, raw_count

    def calculate_equipment_score(
        self,
        capacity: EffectiveCapacity,
        requirements: CaseRequirements,
        profile: Dict[str, Any]
    ) -> Tuple[float, List[str]]:
        equipment = capacity.equipment
        available = {
            "ventilator": (equipment.ventilators or 0) > 0,
            "defibrillator": (equipment.defibrillators or 0) > 0,
            "portable_xray": bool(equipment.portable_xray),
            "dialysis": bool(equipment.dialysis),
        }
        support = requirements.support_required
        score = 50.0
        reasons = []

        if support.ventilator:
            if available["ventilator"]:
                score += 20
                reasons.append(f"Ventilator available ({equipment.ventilators})")
            else:
                score -= 40
                reasons.append("Ventilator required but unavailable")

        if support.defibrillator:
            if available["defibrillator"]:
                score += 25
                reasons.append("Defibrillator available")
            else:
                score -= 40
                reasons.append("Defibrillator required but unavailable")

        if support.oxygen:
            score += 5

        for item, (present, absent) in profile["equipment_scores"].items():
            score += present if available.get(item) else absent

        return max(0.0, min(100.0, score)), reasons

    def calculate_bed_score(
        self,
        capacity: EffectiveCapacity,
        profile: Dict[str, Any]
    ) -> Tuple[float, List[str], int]:
        beds = capacity.beds.model_dump()
        available = 0
        reasons = []
        for bed_type in profile["bed_types"]:
            count = beds.get(bed_type) or 0
            if count > 0:
                available += count
                reasons.append(f"{count} {_LABELS.get(bed_type, bed_type)}")

        if available == 0:
            available = capacity.beds.total_available
            if available > 0:
                reasons.append(f"{available} general beds")

        icu_count = capacity.beds.icu or 0
        if available == 0:
            return 0.0, ["No beds available"], icu_count

        if available >= 10:
            score = min(100, 80 + (available - 10) * 2)
        elif available >= 5:
            score = 60 + (available - 5) * 4
        else:
            score = 20 + available * 8
        return float(score), reasons, icu_count

    def calculate_load_score(
        self,
        hospital: HospitalProfile,
        capacity: EffectiveCapacity
    ) -> Tuple[float, List[str]]:
        """Operational load score; unreported readiness counts as the worst case."""
        score = 100.0
        reasons = []

        if capacity.readiness is None or capacity.readiness == ReadinessStatus.DIVERTING:
            score -= 50
            reasons.append(
                "Currently on diversion" if capacity.readiness else "Readiness not reported"
            )

        queue = capacity.ambulance_queue or 0
        if queue > 0:
            score -= min(30, queue * 6)
            reasons.append(f"{queue} ambulance{'s' if queue > 1 else ''} in queue")

        if not hospital.emergency_24x7:
            score -= 15
            reasons.append("Emergency not 24/7")

        return max(0.0, score), reasons

    @staticmethod
    def calculate_distance_score(distance_km: Optional[float]) -> float:
        if distance_km is None:
            return 0.0
        if distance_km <= 0:
            return 100.0
        if distance_km >= 50:
            return 0.0
        return max(0.0, round(100 - distance_km * 2))

    @staticmethod
    def calculate_freshness_multiplier(
        last_updated: Optional[datetime],
        as_of: datetime
    ) -> Tuple[float, Optional[str]]:
        if last_updated is None:
            return 0.80, "Capacity data not updated"
        hours = (as_of - last_updated).total_seconds() / 3600
        if hours > 48:
            return 0.70, "Data very stale (48+ hrs)"
        if hours > 24:
            return 0.85, "Data stale (24+ hrs)"
        if hours > 12:
            return 0.95, "Data aging (12+ hrs)"
        return 1.0, None

    # ========================
    # Ranking
    # ========================

    def _travel(
        self,
        hospital: HospitalProfile,
        requirements: CaseRequirements,
        travel: Optional[Mapping[str, Any]]
    ) -> Tuple[Optional[float], Optional[int]]:
        estimate = (travel or {}).get(hospital.id)
        if estimate is not None:
            try:
                estimate = TravelEstimate.model_validate(estimate)
            except ValidationError:
                logger.warning(f"Ignoring malformed travel estimate for {hospital.id}")
                estimate = None
        if estimate is not None and estimate.distance_km is not None:
            eta = estimate.eta_minutes
            if eta is None:
                eta = estimate_eta_minutes(estimate.distance_km, self.speed_kmh)
            return round(estimate.distance_km, 1), eta

        if requirements.location is None or hospital.location is None:
            return None, None
        distance = haversine_km(requirements.location, hospital.location)
        return round(distance, 1), estimate_eta_minutes(distance, self.speed_kmh)

    def score_hospital(
        self,
        hospital: HospitalProfile,
        requirements: CaseRequirements,
        travel: Optional[Mapping[str, Any]] = None,
        as_of: Optional[datetime] = None
    ) -> HospitalScore:
        """
        Score a single hospital for a case.

        Args:
            hospital: Candidate hospital
            requirements: Case requirements
            travel: Optional hospital id -> TravelEstimate mapping
            as_of: Evaluation time used for capacity freshness

        Returns:
            HospitalScore (unranked)
        """
        as_of = ensure_aware(as_of) or utcnow()
        profile = profile_for(requirements.emergency_type.value)
        capacity = hospital.effective()
        distance_km, eta_minutes = self._travel(hospital, requirements, travel)

        disqualifiers = self.check_disqualification(hospital, capacity, requirements, profile)
        if disqualifiers:
            logger.debug(f"Hospital {hospital.id} disqualified: {[c.value for c, _ in disqualifiers]}")
            return HospitalScore(
                hospital_id=hospital.id,
                hospital_name=hospital.name,
                suitability_score=0.0,
                distance_km=distance_km,
                eta_minutes=eta_minutes,
                disqualified=True,
                disqualification_codes=[code for code, _ in disqualifiers],
                disqualification_details=[detail for _, detail in disqualifiers],
            )

        weights = self.weights_for(requirements.acuity_level)
        capability, capability_reasons = self.calculate_capability_score(hospital, requirements, profile)
        specialists, specialist_reasons, specialist_count = self.calculate_specialist_score(hospital, profile)
        equipment, _ = self.calculate_equipment_score(capacity, requirements, profile)
        beds, bed_reasons, icu_count = self.calculate_bed_score(capacity, profile)
        load, _ = self.calculate_load_score(hospital, capacity)
        distance = self.calculate_distance_score(distance_km)
        freshness, freshness_reason = self.calculate_freshness_multiplier(
            capacity.capacity_last_updated, as_of
        )

        weighted = (
            capability * weights.capability +
            specialists * weights.specialists +
            equipment * weights.equipment +
            beds * weights.beds +
            load * weights.load +
            distance * weights.distance
        )
        final_score = round(max(0.0, min(100.0, weighted * freshness)), 1)

        reasons = capability_reasons[:2] + specialist_reasons[:1] + bed_reasons[:2]
        if distance_km is not None:
            if distance_km <= 5:
                reasons.append(f"Very close ({distance_km} km)")
            elif distance_km <= 15:
                reasons.append(f"Nearby ({round(distance_km)} km)")
        if freshness_reason:
            reasons.append(freshness_reason)

        logger.debug(
            f"Hospital {hospital.id}: {final_score} "
            f"(Cap:{capability:.0f} Sp:{specialists:.0f} Eq:{equipment:.0f} "
            f"B:{beds:.0f} L:{load:.0f} D:{distance:.0f} F:{freshness})"
        )

        return HospitalScore(
            hospital_id=hospital.id,
            hospital_name=hospital.name,
            suitability_score=final_score,
            distance_km=distance_km,
            eta_minutes=eta_minutes,
            recommendation_reasons=reasons,
            breakdown=ScoreBreakdown(
                capability=capability,
                specialists=specialists,
                equipment=equipment,
                beds=beds,
                load=load,
                distance=distance,
                freshness_multiplier=freshness,
                icu_count=icu_count,
                specialist_count=specialist_count,
            ),
        )

    def rank(
        self,
        requirements: CaseRequirements,
        hospitals: Sequence[Union[HospitalProfile, Mapping[str, Any]]],
        travel: Optional[Mapping[str, Any]] = None,
        as_of: Optional[datetime] = None
    ) -> HospitalRanking:
        """
        Rank candidate hospitals for a case.

        Identical inputs (including as_of) always produce the same ranking.
        """
        as_of = ensure_aware(as_of) or utcnow()
        profiles = [coerce_hospital(raw, index) for index, raw in enumerate(hospitals or [])]
        scores = [self.score_hospital(h, requirements, travel, as_of) for h in profiles]
        ordered = order_candidates(scores)

        ranking = HospitalRanking(
            candidates=ordered,
            weights=self.weights_for(requirements.acuity_level).to_dict(),
            emergency_type=requirements.emergency_type.value,
            acuity_level=requirements.acuity_level,
            as_of=as_of,
        )
        best = ranking.top(1)
        logger.info(
            f"Ranked {len(ranking.ranked())} hospitals "
            f"({len(ranking.disqualified())} disqualified), "
            f"top: {best[0].hospital_id if best else 'none'}"
        )
        return ranking


def apply_rejection_penalty(
    candidates: Union[HospitalRanking, List[CandidateSnapshot]],
    notifications: Iterable[HospitalNotification],
    multiplier: Optional[float] = None
):
    """
    Re-rank with previously rejecting hospitals penalised.

    Rejecting hospitals stay in the list with their score multiplied by the
    rejection penalty. Returns a new object of the same type as the input.
    """
    multiplier = multiplier if multiplier is not None else Config.REJECTION_PENALTY_MULTIPLIER
    rejected = {
        n.hospital_id for n in notifications
        if n.response == NotificationResponse.REJECTED
    }

    if isinstance(candidates, HospitalRanking):
        items = [c.model_copy(deep=True) for c in candidates.candidates]
    else:
        items = [c.model_copy(deep=True) for c in candidates]

    for item in items:
        if item.hospital_id in rejected and not item.disqualified:
            item.suitability_score = round(item.suitability_score * multiplier, 1)

    ordered = order_candidates(items)
    if isinstance(candidates, HospitalRanking):
        return candidates.model_copy(update={"candidates": ordered})
    return ordered
