"""
In-process event bus for one client of the sync engine.

The Local State Store publishes a change event here after every committed
write; the broadcast forwarder, the low-stock monitor, the notification
dispatcher and the UI layer subscribe to it.

Design decisions:
- Synchronous delivery, called from inside the event loop
- Type-based subscriptions plus a "*" wildcard
- subscribe returns an unsubscribe callable so owners can tear down cleanly
- A failing handler is logged and does not stop the others
- A bounded log of recent events is kept for debugging and tests
"""

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

logger = logging.getLogger("event_bus")

WILDCARD = "*"


@dataclass
class Event:
    """
    A change or domain event.

    Attributes:
        event_type: Routing key (see events.EventTypes)
        payload: JSON-compatible event data
        source: Client id of the producer
        remote: True when the event describes a change made by another client
            (received via the broadcast channel or the remote feed)
        event_id: Unique identifier for this event instance
        timestamp: When the event was created
    """
    event_type: str
    payload: dict[str, Any]
    source: str
    remote: bool = False
    event_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __str__(self) -> str:
        origin = "remote" if self.remote else "local"
        return f"Event({self.event_type}, id={self.event_id[:8]}, source={self.source}, {origin})"


EventHandler = Callable[[Event], None]


class EventBus:
    """
    Simple in-memory pub/sub.

    Example usage:
        bus = EventBus()
        unsubscribe = bus.subscribe("order_added", lambda e: print(e.payload))
        bus.publish(Event(event_type="order_added", source="tab-1", payload={...}))
        unsubscribe()
    """

    def __init__(self, log_size: int = 500):
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self._event_log: deque[Event] = deque(maxlen=log_size)

    def subscribe(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        """
        Subscribe to events of a specific type, or "*" for all events.

        Returns:
            A callable that removes this subscription. Calling it twice is harmless.
        """
        self._subscribers[event_type].append(handler)
        logger.debug(f"Subscribed handler to '{event_type}' events")

        def unsubscribe() -> None:
            self.unsubscribe(event_type, handler)

        return unsubscribe

    def unsubscribe(self, event_type: str, handler: EventHandler) -> bool:
        """Remove a handler. Returns True if it was subscribed."""
        try:
            self._subscribers[event_type].remove(handler)
            return True
        except ValueError:
            return False

    def publish(self, event: Event) -> int:
        """
        Deliver an event to type subscribers, then wildcard subscribers.

        Returns:
            Number of handlers called
        """
        self._event_log.append(event)
        logger.debug(f"Publishing: {event}")

        handlers = list(self._subscribers.get(event.event_type, []))
        handlers += list(self._subscribers.get(WILDCARD, []))

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(f"Handler raised exception for {event}")

        return len(handlers)

    def emit(self, event_type: str, payload: dict[str, Any], source: str, remote: bool = False) -> Event:
        """Build and publish an event in one call."""
        event = Event(event_type=event_type, payload=payload, source=source, remote=remote)
        self.publish(event)
        return event

    def get_subscriber_count(self, event_type: str) -> int:
        return len(self._subscribers.get(event_type, []))

    def get_event_log(self, event_type: str = None) -> list[Event]:
        """Recent events, optionally filtered by type."""
        if event_type is None:
            return list(self._event_log)
        return [e for e in self._event_log if e.event_type == event_type]

    def clear_event_log(self) -> None:
        self._event_log.clear()

    def clear_subscribers(self) -> None:
        self._subscribers.clear()
