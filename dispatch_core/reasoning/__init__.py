"""
Reasoning package: hospital ranking and escalation policy.
"""

from .suitability import HospitalSuitabilityRanker, apply_rejection_penalty, haversine_km
from .escalation_policy import EscalationPolicy, EscalationAssessment, GoldenHourStatus

__all__ = [
    "HospitalSuitabilityRanker",
    "apply_rejection_penalty",
    "haversine_km",
    "EscalationPolicy",
    "EscalationAssessment",
    "GoldenHourStatus"
]
