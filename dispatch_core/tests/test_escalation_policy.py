"""
Tests for the escalation and timeout policy.
"""

from datetime import timedelta

import pytest

from dispatch_core.models.case import CaseStatus, EmergencyCase, EscalationReason
from dispatch_core.reasoning.escalation_policy import EscalationPolicy

from .conftest import NOW


@pytest.fixture
def policy():
    return EscalationPolicy()


class TestThresholds:

    @pytest.mark.parametrize("acuity, rejections, timeout", [
        (1, 1, 60),
        (2, 2, 90),
        (3, 3, 120),
        (4, 3, 180),
        (5, 3, 180),
    ])
    def test_table(self, policy, acuity, rejections, timeout):
        threshold = policy.thresholds_for(acuity)
        assert threshold.max_rejections == rejections
        assert threshold.timeout_seconds == timeout

    @pytest.mark.parametrize("acuity", [None, 0, 9])
    def test_unknown_acuity_uses_level_three(self, policy, acuity):
        assessment = policy.evaluate(acuity, None, 0)
        assert assessment.acuity_level == 3
        assert assessment.timeout_seconds == 120
        assert assessment.rejection_ceiling == 3

    def test_parallel_fanout_only_for_most_severe(self, policy):
        assert policy.notification_fanout(1) == 2
        assert policy.notification_fanout(2) == 1
        assert policy.notification_fanout(None) == 1


class TestEvaluate:

    def test_within_window(self, policy):
        assessment = policy.evaluate(1, 30, 0)
        assert not assessment.escalation_due
        assert assessment.timeout_remaining == 30
        assert assessment.reason is None

    def test_timeout(self, policy):
        assessment = policy.evaluate(1, 60, 0)
        assert assessment.escalation_due
        assert assessment.reason == EscalationReason.TIMEOUT
        assert assessment.timeout_remaining == 0

    def test_rejection_ceiling(self, policy):
        assessment = policy.evaluate(2, 10, 2)
        assert assessment.escalation_due
        assert assessment.reason == EscalationReason.REJECTIONS

    def test_both(self, policy):
        assessment = policy.evaluate(3, 200, 3)
        assert assessment.reason == EscalationReason.BOTH

    def test_no_cycle_running_gives_full_timeout(self, policy):
        assessment = policy.evaluate(4, None, 0)
        assert assessment.timeout_remaining == 180
        assert not assessment.escalation_due


class TestCaseEvaluation:

    def test_timeout_remaining_is_derived(self, policy):
        remaining = policy.timeout_remaining(4, NOW - timedelta(seconds=100), NOW)
        assert remaining == pytest.approx(80)
        assert policy.timeout_remaining(4, None, NOW) == 180
        assert policy.timeout_remaining(1, NOW - timedelta(minutes=5), NOW) == 0

    def test_awaiting_case_times_out(self, policy):
        case = EmergencyCase(
            acuity_level=2,
            status=CaseStatus.AWAITING_RESPONSE,
            awaiting_response_since=NOW - timedelta(seconds=95),
            created_at=NOW - timedelta(minutes=5),
        )
        assessment = policy.evaluate_case(case, NOW)
        assert assessment.escalation_due
        assert assessment.reason == EscalationReason.TIMEOUT

    def test_cases_outside_a_cycle_are_never_due(self, policy):
        case = EmergencyCase(
            acuity_level=1,
            status=CaseStatus.ACCEPTED,
            rejection_count=3,
            awaiting_response_since=NOW - timedelta(minutes=10),
            created_at=NOW - timedelta(minutes=15),
        )
        assert not policy.evaluate_case(case, NOW).escalation_due


class TestGoldenHour:

    def test_in_progress(self, policy):
        status = policy.golden_hour(NOW - timedelta(minutes=50), NOW)
        assert status.minutes_remaining == pytest.approx(10)
        assert not status.breached
        assert status.met is None

    def test_breached_handover(self, policy):
        created = NOW - timedelta(minutes=70)
        status = policy.golden_hour(created, NOW, handed_over_at=NOW)
        assert status.breached
        assert status.met is False
        assert status.minutes_remaining == pytest.approx(-10)

    def test_compliance_summary(self, policy):
        met = EmergencyCase(
            created_at=NOW - timedelta(minutes=90),
            handover_acknowledged_at=NOW - timedelta(minutes=45),
        )
        breached = EmergencyCase(
            created_at=NOW - timedelta(minutes=90),
            handover_acknowledged_at=NOW,
        )
        open_case = EmergencyCase(created_at=NOW)

        report = policy.golden_hour_compliance([met, breached, open_case])
        assert report["total_cases"] == 3
        assert report["handed_over"] == 2
        assert report["met"] == 1
        assert report["breached"] == 1
        assert report["compliance_rate"] == 50.0
        assert report["average_minutes_to_handover"] == 67.5

    def test_empty_compliance(self, policy):
        report = policy.golden_hour_compliance([])
        assert report["compliance_rate"] is None
