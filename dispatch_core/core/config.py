"""
Configuration for the dispatch coordination core.
Values are read from the environment (and a local .env file when present).
"""

import json
import os
from typing import Dict, List

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: List[str]) -> List[str]:
    value = os.getenv(name)
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


class EscalationThreshold(BaseModel):
    """Per-acuity limits for one hospital notification cycle."""
    max_rejections: int = Field(..., ge=1, description="Rejections tolerated before forced escalation")
    timeout_seconds: int = Field(..., gt=0, description="Maximum wait for a hospital response")


class RankerWeights(BaseModel):
    """Weights combining the ranker's sub-scores into one suitability score."""
    capability: float = Field(..., ge=0, le=1)
    distance: float = Field(..., ge=0, le=1)
    beds: float = Field(..., ge=0, le=1)
    specialists: float = Field(..., ge=0, le=1)
    equipment: float = Field(..., ge=0, le=1)
    load: float = Field(..., ge=0, le=1)

    def total(self) -> float:
        return (
            self.capability + self.distance + self.beds +
            self.specialists + self.equipment + self.load
        )

    def validate_sum(self) -> bool:
        """Check weights sum to 1.0 (within float tolerance)."""
        return abs(self.total() - 1.0) < 1e-6

    def to_dict(self) -> Dict[str, float]:
        return self.model_dump()


# Acuity 1 is the most severe level.
DEFAULT_ESCALATION_THRESHOLDS: Dict[int, EscalationThreshold] = {
    1: EscalationThreshold(max_rejections=1, timeout_seconds=60),
    2: EscalationThreshold(max_rejections=2, timeout_seconds=90),
    3: EscalationThreshold(max_rejections=3, timeout_seconds=120),
    4: EscalationThreshold(max_rejections=3, timeout_seconds=180),
    5: EscalationThreshold(max_rejections=3, timeout_seconds=180),
}

WEIGHT_PROFILES: Dict[str, RankerWeights] = {
    "critical": RankerWeights(
        capability=0.60, distance=0.15, beds=0.10,
        specialists=0.10, equipment=0.03, load=0.02
    ),
    "moderate": RankerWeights(
        capability=0.40, distance=0.25, beds=0.15,
        specialists=0.10, equipment=0.05, load=0.05
    ),
    "minor": RankerWeights(
        capability=0.25, distance=0.50, beds=0.10,
        specialists=0.05, equipment=0.05, load=0.05
    ),
}


class Config:
    """Central configuration, read once at import time."""

    # Server
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8000"))
    DEBUG: bool = _env_bool("DEBUG", False)
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    CORS_ORIGINS: List[str] = _env_list(
        "CORS_ORIGINS", ["http://localhost:3000", "http://localhost:5173"]
    )

    # Persistence
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./dispatch.db")
    STORE_BACKEND: str = os.getenv("STORE_BACKEND", "memory")
    STORE_RETRY_ATTEMPTS: int = int(os.getenv("STORE_RETRY_ATTEMPTS", "3"))
    STORE_RETRY_BACKOFF_SECONDS: float = float(os.getenv("STORE_RETRY_BACKOFF_SECONDS", "0.05"))
    STORE_CONTENTION_RETRIES: int = int(os.getenv("STORE_CONTENTION_RETRIES", "5"))

    # Escalation
    ESCALATION_POLL_INTERVAL_SECONDS: float = float(
        os.getenv("ESCALATION_POLL_INTERVAL_SECONDS", "15")
    )
    ESCALATION_THRESHOLDS_JSON: str = os.getenv("ESCALATION_THRESHOLDS_JSON", "")
    GOLDEN_HOUR_MINUTES: int = int(os.getenv("GOLDEN_HOUR_MINUTES", "60"))
    PARALLEL_NOTIFY_COUNT: int = int(os.getenv("PARALLEL_NOTIFY_COUNT", "2"))

    # Ranking
    AVERAGE_AMBULANCE_SPEED_KMH: float = float(os.getenv("AVERAGE_AMBULANCE_SPEED_KMH", "40"))
    REJECTION_PENALTY_MULTIPLIER: float = float(os.getenv("REJECTION_PENALTY_MULTIPLIER", "0.85"))

    # Rate limiting
    RATE_LIMIT_MAX_REQUESTS: int = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "10"))
    RATE_LIMIT_WINDOW_SECONDS: float = float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))

    @classmethod
    def get_escalation_thresholds(cls) -> Dict[int, EscalationThreshold]:
        """
        Return the acuity → threshold table.

        ESCALATION_THRESHOLDS_JSON may replace individual levels, e.g.
        '{"1": {"max_rejections": 1, "timeout_seconds": 45}}'.
        """
        thresholds = dict(DEFAULT_ESCALATION_THRESHOLDS)
        if cls.ESCALATION_THRESHOLDS_JSON:
            overrides = json.loads(cls.ESCALATION_THRESHOLDS_JSON)
            for level, values in overrides.items():
                thresholds[int(level)] = EscalationThreshold(**values)
        return thresholds

    @classmethod
    def get_ranker_weights(cls, acuity_level=None) -> RankerWeights:
        """Weight profile for an acuity level (unknown acuity → moderate)."""
        if acuity_level is None:
            profile = "moderate"
        elif acuity_level <= 2:
            profile = "critical"
        elif acuity_level >= 4:
            profile = "minor"
        else:
            profile = "moderate"
        return WEIGHT_PROFILES[profile].model_copy()
