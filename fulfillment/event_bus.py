"""
In-memory event bus.

Services publish domain events (order transitions, shipment creation,
tracking updates) and other components subscribe to them. In production this
would be a message broker; the publish/subscribe surface stays the same.

Design decisions:
- Synchronous delivery in the publisher's thread
- Type-based subscriptions, plus "*" for subscribers that want everything
- Subscriber lists and the event log are guarded by a lock; handlers are
  called outside the lock so a handler may publish in turn
- A failing handler is logged and never propagates to the publisher
- Publishers don't know who is listening
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

logger = logging.getLogger("event_bus")


@dataclass
class Event:
    """
    A record of something that happened.

    Attributes:
        event_type: Name used for routing (see events.EventTypes)
        payload: Event-specific data; carries everything subscribers need
        source: Component that published the event
        event_id: Unique id of this event instance
        timestamp: When the event was created
    """
    event_type: str
    payload: dict[str, Any]
    source: str
    event_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __str__(self) -> str:
        return f"Event({self.event_type}, id={self.event_id[:8]}, source={self.source})"


EventHandler = Callable[[Event], None]


class EventBus:
    """
    Simple in-memory pub/sub.

    Example:
        bus = EventBus()
        bus.subscribe(EventTypes.ORDER_STATUS_CHANGED, dispatcher.on_transition)
        bus.publish(order_status_changed(...))
    """

    def __init__(self, keep_log: bool = True):
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self._event_log: list[Event] = []
        self._log_events = keep_log
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe to events of one type. Subscribing twice means two calls."""
        with self._lock:
            self._subscribers[event_type].append(handler)
        logger.debug(f"Subscribed handler to '{event_type}' events")

    def subscribe_all(self, handler: EventHandler) -> None:
        """Subscribe to every event (audit, debugging)."""
        self.subscribe("*", handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> bool:
        """Returns True if the handler was found and removed."""
        with self._lock:
            try:
                self._subscribers[event_type].remove(handler)
            except ValueError:
                return False
        logger.debug(f"Unsubscribed handler from '{event_type}' events")
        return True

    def publish(self, event: Event) -> int:
        """
        Deliver an event to all subscribers, in subscription order.

        Returns:
            Number of handlers called
        """
        with self._lock:
            if self._log_events:
                self._event_log.append(event)
            handlers = list(self._subscribers.get(event.event_type, []))
            handlers += self._subscribers.get("*", [])

        logger.info(f"Publishing: {event}")

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Handler raised exception for {event}: {e}")

        if not handlers:
            logger.debug(f"No handlers for event type '{event.event_type}'")
        return len(handlers)

    def get_subscriber_count(self, event_type: str) -> int:
        with self._lock:
            return len(self._subscribers.get(event_type, []))

    def get_event_log(self, event_type: str = None) -> list[Event]:
        """Published events, optionally filtered by type."""
        with self._lock:
            if event_type is None:
                return list(self._event_log)
            return [e for e in self._event_log if e.event_type == event_type]

    def clear_event_log(self) -> None:
        with self._lock:
            self._event_log.clear()

    def clear_subscribers(self) -> None:
        with self._lock:
            self._subscribers.clear()
