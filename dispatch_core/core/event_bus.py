"""
Event bus for case change notification.
Uses an async pub/sub pattern so consumers never couple to the transition path.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Any, Optional

from dispatch_core.models.events import EventType, CaseChangedEvent

logger = logging.getLogger(__name__)


class EventBus:
    """
    Async event bus for committed case changes.

    Supports:
    - Publishing events to all subscribers
    - Subscribing to specific event types
    - Bounded event history for debugging

    Subscriber failures are logged and swallowed; publishing never raises.
    """

    def __init__(self, max_history: int = 1000):
        self._subscribers: Dict[EventType, List[Callable]] = {t: [] for t in EventType}
        self._global_subscribers: List[Callable] = []
        self._priorities: Dict[Callable, int] = {}
        self._event_history: List[CaseChangedEvent] = []
        self._max_history = max_history
        self._is_running = True

        logger.info("EventBus initialized")

    async def publish(self, event: CaseChangedEvent) -> None:
        """
        Publish an event to all subscribers.

        Args:
            event: The event to publish
        """
        if not self._is_running:
            logger.warning("EventBus is stopped, ignoring event")
            return

        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history.pop(0)

        logger.debug(f"Publishing {event.event_type.value} for case {event.case_id}")

        subscribers = self._subscribers.get(event.event_type, []) + self._global_subscribers
        subscribers = sorted(
            subscribers,
            key=lambda s: self._priorities.get(s, 5),
            reverse=True
        )

        tasks = []
        for callback in subscribers:
            if asyncio.iscoroutinefunction(callback):
                tasks.append(self._safe_call(callback, event))
            else:
                tasks.append(self._safe_call_sync(callback, event))

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _safe_call(self, callback: Callable, event: CaseChangedEvent) -> None:
        """Safely call an async callback, catching exceptions."""
        try:
            await callback(event)
        except Exception as e:
            logger.error(f"Error in event callback: {e}", exc_info=True)

    async def _safe_call_sync(self, callback: Callable, event: CaseChangedEvent) -> None:
        """Safely call a sync callback."""
        try:
            callback(event)
        except Exception as e:
            logger.error(f"Error in sync event callback: {e}", exc_info=True)

    def subscribe(
        self,
        event_type: EventType,
        callback: Callable[[CaseChangedEvent], Any],
        priority: int = 5
    ) -> None:
        """
        Subscribe to a specific event type.

        Args:
            event_type: Type of event to subscribe to
            callback: Function to call when event occurs
            priority: Handler priority (1-10, 10 = highest)
        """
        self._priorities[callback] = priority
        if callback not in self._subscribers[event_type]:
            self._subscribers[event_type].append(callback)
            logger.debug(f"Subscribed to {event_type.value} with priority {priority}")

    def subscribe_all(self, callback: Callable[[CaseChangedEvent], Any], priority: int = 5) -> None:
        """Subscribe to all events."""
        self._priorities[callback] = priority
        if callback not in self._global_subscribers:
            self._global_subscribers.append(callback)

    def unsubscribe(self, event_type: EventType, callback: Callable) -> None:
        if callback in self._subscribers.get(event_type, []):
            self._subscribers[event_type].remove(callback)
            logger.debug(f"Unsubscribed from {event_type.value}")
        still_subscribed = callback in self._global_subscribers or any(
            callback in subscribers for subscribers in self._subscribers.values()
        )
        if not still_subscribed:
            self._priorities.pop(callback, None)

    def unsubscribe_all(self, callback: Callable) -> None:
        """Remove a callback from all subscriptions."""
        if callback in self._global_subscribers:
            self._global_subscribers.remove(callback)
        for subscribers in self._subscribers.values():
            if callback in subscribers:
                subscribers.remove(callback)
        self._priorities.pop(callback, None)

    def get_history(
        self,
        case_id: Optional[str] = None,
        limit: int = 100
    ) -> List[CaseChangedEvent]:
        """
        Get event history, optionally filtered by case.

        Returns:
            List of events, most recent first
        """
        history = list(reversed(self._event_history))
        if case_id:
            history = [e for e in history if e.case_id == case_id]
        return history[:limit]

    def get_subscriber_count(self) -> int:
        return sum(len(subs) for subs in self._subscribers.values()) + len(self._global_subscribers)

    def stop(self) -> None:
        """Stop the event bus from processing events."""
        self._is_running = False
        logger.info("EventBus stopped")

    def start(self) -> None:
        """Start/resume the event bus."""
        self._is_running = True
        logger.info("EventBus started")
