"""
Escalation Monitor Agent.

Periodically sweeps cases waiting on hospitals and escalates the ones whose
response window has expired. It calls the same guarded trigger_escalation
as a human dispatcher, so racing a rejection or an acceptance is harmless.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from dispatch_core.agents.base_agent import BaseAgent
from dispatch_core.core.clock import ensure_aware, utcnow
from dispatch_core.core.config import Config
from dispatch_core.core.event_bus import EventBus
from dispatch_core.core.exceptions import DispatchError
from dispatch_core.lifecycle.state_machine import CaseStateMachine
from dispatch_core.models.case import CaseStatus, EscalationReason
from dispatch_core.models.events import Actor, CaseChangedEvent, EventType
from dispatch_core.reasoning.escalation_policy import ESCALATABLE_STATUSES

logger = logging.getLogger(__name__)

MIN_SLEEP_SECONDS = 0.5


class EscalationMonitorAgent(BaseAgent):
    """
    Timer-driven escalation.

    Each sweep reads every case in a notification cycle from the store, so
    nothing is lost across restarts. Between sweeps the agent tracks known
    deadlines from change events and wakes early when one is due.
    """

    def __init__(
        self,
        state_machine: CaseStateMachine,
        event_bus: Optional[EventBus] = None,
        poll_interval_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Args:
            state_machine: Case state machine to escalate through
            event_bus: Event bus (defaults to the state machine's)
            poll_interval_seconds: Maximum time between sweeps
            clock: Time source, injectable for tests
        """
        super().__init__("EscalationMonitorAgent", state_machine, event_bus)
        self.poll_interval_seconds = poll_interval_seconds or Config.ESCALATION_POLL_INTERVAL_SECONDS
        self.clock = clock
        self.actor = Actor.system(self.name)

        self._deadlines: Dict[str, datetime] = {}
        self._task: Optional[asyncio.Task] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._sweeps = 0
        self._escalated_total = 0

        logger.info("EscalationMonitorAgent initialized")

    async def process(self, input_data: Any = None) -> Dict[str, Any]:
        """
        Run one sweep.

        Args:
            input_data: Optional datetime to evaluate at (defaults to the clock)

        Returns:
            Dict with the number of cases checked and the ids escalated
        """
        now = ensure_aware(input_data) if isinstance(input_data, datetime) else self.clock()
        policy = self.state_machine.policy

        cases = await self.state_machine.list_cases(ESCALATABLE_STATUSES)
        escalated: List[str] = []
        for case in cases:
            assessment = policy.evaluate_case(case, now)
            if not assessment.escalation_due:
                continue
            try:
                updated = await self.state_machine.trigger_escalation(
                    case.id, EscalationReason.TIMEOUT, self.actor, now=now
                )
            except DispatchError as e:
                logger.warning(f"Escalation of case {case.id} failed: {e}")
                continue
            if updated.status == CaseStatus.ESCALATION_REQUIRED:
                escalated.append(case.id)
                self._deadlines.pop(case.id, None)

        # Every expired deadline has just been evaluated against the store
        active = {case.id for case in cases}
        for case_id, deadline in list(self._deadlines.items()):
            if deadline <= now or case_id not in active:
                self._deadlines.pop(case_id, None)

        self._sweeps += 1
        self._escalated_total += len(escalated)
        if escalated:
            logger.info(f"Escalation sweep: {len(escalated)}/{len(cases)} cases escalated")
        return {"checked": len(cases), "escalated": escalated, "at": now.isoformat()}

    # ========================
    # Scheduling
    # ========================

    def _subscribe_to_events(self) -> None:
        self.subscribe(EventType.CASE_CHANGED, self._on_case_changed, priority=8)

    async def _on_case_changed(self, event: CaseChangedEvent) -> None:
        """Track the response deadline of cases entering or leaving a cycle."""
        if event.to_status == CaseStatus.AWAITING_RESPONSE.value:
            if event.from_status == CaseStatus.AWAITING_RESPONSE.value:
                return
            acuity = event.snapshot.get("acuity_level")
            timeout = self.state_machine.policy.thresholds_for(acuity).timeout_seconds
            self._deadlines[event.case_id] = event.timestamp + timedelta(seconds=timeout)
            if self._wakeup is not None:
                self._wakeup.set()
        elif event.to_status == CaseStatus.REJECTED.value:
            # Same cycle, same deadline
            return
        else:
            self._deadlines.pop(event.case_id, None)

    def next_wakeup_seconds(self, now: Optional[datetime] = None) -> float:
        """Seconds until the next sweep: the poll interval or the earliest deadline."""
        now = now or self.clock()
        delay = self.poll_interval_seconds
        if self._deadlines:
            until_deadline = (min(self._deadlines.values()) - now).total_seconds()
            delay = min(delay, until_deadline)
        return max(MIN_SLEEP_SECONDS, delay)

    async def _run(self) -> None:
        while self._is_running:
            self._wakeup.clear()
            try:
                await self.process()
            except DispatchError as e:
                logger.warning(f"Escalation sweep failed: {e}")
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.next_wakeup_seconds())
            except asyncio.TimeoutError:
                pass

    async def on_start(self) -> None:
        self._wakeup = asyncio.Event()
        self._task = asyncio.create_task(self._run())

    async def on_stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def get_monitor_stats(self) -> Dict[str, Any]:
        return {
            "running": self._is_running,
            "sweeps": self._sweeps,
            "escalated_total": self._escalated_total,
            "tracked_deadlines": len(self._deadlines),
            "poll_interval_seconds": self.poll_interval_seconds,
        }
