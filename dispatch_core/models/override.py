"""
Dispatcher override audit records.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, Field

from dispatch_core.core.clock import utcnow


class OverrideReason(str, Enum):
    """Reason codes a dispatcher must choose from when overriding."""
    FAMILY_REQUEST = "family_request"
    LOCAL_KNOWLEDGE = "local_knowledge"
    ROAD_BLOCKED = "road_blocked"
    HOSPITAL_CONTACTED = "hospital_contacted"
    SPECIALIST_AVAILABLE = "specialist_available"
    CAPACITY_CONFIRMED = "capacity_confirmed"
    OTHER = "other"


def create_override_id() -> str:
    return f"ovr_{uuid.uuid4().hex[:12]}"


class OverrideRecord(BaseModel):
    """Immutable record of one manual hospital substitution."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=create_override_id)
    case_id: str

    previous_hospital_id: Optional[str] = None
    previous_hospital_name: Optional[str] = None
    previous_score: Optional[float] = None

    new_hospital_id: str
    new_hospital_name: str = "Unknown"
    new_score: Optional[float] = None

    score_difference: Optional[float] = Field(
        None, description="previous_score - new_score; positive when the AI pick scored higher"
    )
    reason_code: OverrideReason
    reason_text: str = ""
    actor_id: str
    actor_role: str
    timestamp: datetime = Field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return self.model_dump(mode="json")
