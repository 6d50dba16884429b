"""
Escalation and timeout policy for hospital response cycles.

Pure functions of acuity, elapsed wait and rejection count; nothing here
writes state.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional, Any

from pydantic import BaseModel, Field

from dispatch_core.core.clock import ensure_aware
from dispatch_core.core.config import Config, EscalationThreshold
from dispatch_core.models.case import CaseStatus, EmergencyCase, EscalationReason

logger = logging.getLogger(__name__)

DEFAULT_ACUITY = 3

# Only a case waiting on hospitals can time out or hit the rejection ceiling
ESCALATABLE_STATUSES = frozenset({CaseStatus.AWAITING_RESPONSE, CaseStatus.REJECTED})


class EscalationAssessment(BaseModel):
    """Result of evaluating a case against its acuity thresholds."""
    acuity_level: int
    timeout_seconds: int
    timeout_remaining: float = Field(..., ge=0, description="Seconds left in the current cycle")
    rejection_count: int = 0
    rejection_ceiling: int
    escalation_due: bool = False
    reason: Optional[EscalationReason] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class GoldenHourStatus(BaseModel):
    """Golden-hour position of a case. Reporting only."""
    deadline: datetime
    minutes_remaining: float = Field(..., description="Negative once the deadline has passed")
    breached: bool
    met: Optional[bool] = Field(None, description="None until handover is acknowledged")


class EscalationPolicy:
    """
    Acuity-driven escalation thresholds.

    Acuity 1 is the most severe level; unknown acuity is treated as level 3.
    """

    def __init__(
        self,
        thresholds: Optional[Dict[int, EscalationThreshold]] = None,
        golden_hour_minutes: Optional[int] = None,
        parallel_notify_count: Optional[int] = None
    ):
        self.thresholds = thresholds or Config.get_escalation_thresholds()
        self.golden_hour_minutes = golden_hour_minutes or Config.GOLDEN_HOUR_MINUTES
        self.parallel_notify_count = parallel_notify_count or Config.PARALLEL_NOTIFY_COUNT

    def thresholds_for(self, acuity_level: Optional[int]) -> EscalationThreshold:
        if acuity_level not in self.thresholds:
            return self.thresholds[DEFAULT_ACUITY]
        return self.thresholds[acuity_level]

    def notification_fanout(self, acuity_level: Optional[int]) -> int:
        """How many hospitals to notify at once: parallel for acuity 1 only."""
        return self.parallel_notify_count if acuity_level == 1 else 1

    def evaluate(
        self,
        acuity_level: Optional[int],
        elapsed_seconds: Optional[float],
        rejection_count: int
    ) -> EscalationAssessment:
        """
        Evaluate one notification cycle.

        Args:
            acuity_level: Case acuity (None treated as 3)
            elapsed_seconds: Time since the cycle started, None if no cycle is running
            rejection_count: Rejections recorded so far

        Returns:
            EscalationAssessment
        """
        acuity = acuity_level if acuity_level in self.thresholds else DEFAULT_ACUITY
        threshold = self.thresholds_for(acuity)

        if elapsed_seconds is None:
            remaining = float(threshold.timeout_seconds)
            timed_out = False
        else:
            remaining = max(0.0, threshold.timeout_seconds - max(0.0, elapsed_seconds))
            timed_out = elapsed_seconds >= threshold.timeout_seconds

        ceiling_hit = rejection_count >= threshold.max_rejections

        reason = None
        if timed_out and ceiling_hit:
            reason = EscalationReason.BOTH
        elif ceiling_hit:
            reason = EscalationReason.REJECTIONS
        elif timed_out:
            reason = EscalationReason.TIMEOUT

        return EscalationAssessment(
            acuity_level=acuity,
            timeout_seconds=threshold.timeout_seconds,
            timeout_remaining=remaining,
            rejection_count=rejection_count,
            rejection_ceiling=threshold.max_rejections,
            escalation_due=reason is not None,
            reason=reason,
        )

    def timeout_remaining(
        self,
        acuity_level: Optional[int],
        awaiting_since: Optional[datetime],
        now: datetime
    ) -> float:
        """Seconds left before the current cycle times out (full timeout if none running)."""
        threshold = self.thresholds_for(acuity_level)
        if awaiting_since is None:
            return float(threshold.timeout_seconds)
        elapsed = (ensure_aware(now) - ensure_aware(awaiting_since)).total_seconds()
        return max(0.0, threshold.timeout_seconds - elapsed)

    def evaluate_case(self, case: EmergencyCase, now: datetime) -> EscalationAssessment:
        """Evaluate a case; cases outside a notification cycle are never due."""
        elapsed = None
        if case.awaiting_response_since is not None:
            elapsed = (ensure_aware(now) - case.awaiting_response_since).total_seconds()

        assessment = self.evaluate(case.acuity_level, elapsed, case.rejection_count)
        if case.status not in ESCALATABLE_STATUSES and assessment.escalation_due:
            assessment = assessment.model_copy(update={"escalation_due": False, "reason": None})
        return assessment

    # ========================
    # Golden hour
    # ========================

    def golden_hour(
        self,
        created_at: datetime,
        now: datetime,
        handed_over_at: Optional[datetime] = None
    ) -> GoldenHourStatus:
        deadline = ensure_aware(created_at) + timedelta(minutes=self.golden_hour_minutes)
        reference = ensure_aware(handed_over_at) or ensure_aware(now)
        remaining = (deadline - reference).total_seconds() / 60
        return GoldenHourStatus(
            deadline=deadline,
            minutes_remaining=round(remaining, 1),
            breached=reference > deadline,
            met=None if handed_over_at is None else reference <= deadline,
        )

    def golden_hour_compliance(self, cases: Iterable[EmergencyCase]) -> Dict[str, Any]:
        """Summarise golden-hour compliance over handed-over cases."""
        total = 0
        handed_over = 0
        met = 0
        minutes = []
        for case in cases:
            total += 1
            if case.handover_acknowledged_at is None:
                continue
            handed_over += 1
            status = self.golden_hour(case.created_at, case.handover_acknowledged_at, case.handover_acknowledged_at)
            if status.met:
                met += 1
            minutes.append((case.handover_acknowledged_at - case.created_at).total_seconds() / 60)

        return {
            "total_cases": total,
            "handed_over": handed_over,
            "met": met,
            "breached": handed_over - met,
            "compliance_rate": round(met / handed_over * 100, 1) if handed_over else None,
            "average_minutes_to_handover": round(sum(minutes) / len(minutes), 1) if minutes else None,
        }
