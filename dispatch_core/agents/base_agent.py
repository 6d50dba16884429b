"""
Base agent class for background actors of the dispatch core.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional, List, Callable

from dispatch_core.core.event_bus import EventBus
from dispatch_core.lifecycle.state_machine import CaseStateMachine
from dispatch_core.models.events import CaseChangedEvent, EventType

logger = logging.getLogger(__name__)


class BaseAgent(ABC):
    """
    Abstract base class for background agents.

    Provides:
    - Event subscription
    - Access to the case state machine (agents act only through it)
    - Lifecycle management
    """

    def __init__(
        self,
        name: str,
        state_machine: CaseStateMachine,
        event_bus: Optional[EventBus] = None
    ):
        """
        Initialize the base agent.

        Args:
            name: Agent name used in logs and as the acting identity
            state_machine: Case state machine the agent acts through
            event_bus: Event bus (defaults to the state machine's bus)
        """
        self.name = name
        self.state_machine = state_machine
        self.event_bus = event_bus or state_machine.event_bus
        self._is_running = False
        self._subscriptions: List[tuple] = []

        logger.info(f"Agent initialized: {self.name}")

    @abstractmethod
    async def process(self, input_data: Any = None) -> Any:
        """
        Run one unit of agent work.
        Must be implemented by subclasses.
        """
        pass

    async def start(self) -> None:
        """Start the agent and subscribe to events."""
        if self._is_running:
            logger.warning(f"Agent {self.name} is already running")
            return

        self._is_running = True
        self._subscribe_to_events()
        await self.on_start()
        logger.info(f"Agent started: {self.name}")

    async def stop(self) -> None:
        """Stop the agent and unsubscribe from events."""
        if not self._is_running:
            return

        self._is_running = False
        self._unsubscribe_from_events()
        await self.on_stop()
        logger.info(f"Agent stopped: {self.name}")

    async def on_start(self) -> None:
        """Hook called when agent starts. Override in subclass."""
        pass

    async def on_stop(self) -> None:
        """Hook called when agent stops. Override in subclass."""
        pass

    def _subscribe_to_events(self) -> None:
        """Subscribe to relevant events. Override in subclass to customize."""
        pass

    def _unsubscribe_from_events(self) -> None:
        """Unsubscribe from all events."""
        for event_type, callback in self._subscriptions:
            self.event_bus.unsubscribe(event_type, callback)
        self._subscriptions.clear()

    def subscribe(
        self,
        event_type: EventType,
        callback: Callable[[CaseChangedEvent], Any],
        priority: int = 5
    ) -> None:
        """
        Subscribe to an event type.

        Args:
            event_type: Type of event to subscribe to
            callback: Handler function
            priority: Handler priority (1-10)
        """
        self.event_bus.subscribe(event_type, callback, priority)
        self._subscriptions.append((event_type, callback))
        logger.debug(f"{self.name} subscribed to {event_type.value}")

    @property
    def is_running(self) -> bool:
        """Check if agent is currently running."""
        return self._is_running

    def __repr__(self) -> str:
        status = "running" if self._is_running else "stopped"
        return f"<{self.__class__.__name__} name={self.name} status={status}>"
