"""Progress notifications for pipeline and batch runs.

Runs report what they are doing through :class:`Event` objects.  There are
two ways to receive them: pass ``on_event`` to a single ``generate`` /
``resume_from`` / ``batch_generate`` call, or hand an :class:`EventBus` to
the pipeline and subscribe to it.  Both see the same events.

Example::

    bus = EventBus()

    def on_stage_done(event: Event) -> None:
        print(f"{event.data['result_id']}: {event.data['stage']} done")

    bus.subscribe(EventType.STAGE_COMPLETE, on_stage_done)
    pipeline = AssetPipeline(..., event_bus=bus)
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


class EventType(enum.Enum):
    STAGE_START = "stage-start"
    STAGE_COMPLETE = "stage-complete"
    ERROR = "error"
    COMPLETE = "complete"
    BATCH_ERROR = "batch-error"


@dataclass
class Event:
    """One notification.  ``data`` may hold model objects; see :meth:`to_dict`."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    source: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = {}
        for key, value in self.data.items():
            payload[key] = value.to_dict() if hasattr(value, "to_dict") else value
        return {
            "type": self.type.value,
            "source": self.source,
            "timestamp": self.timestamp,
            "data": payload,
        }


EventHandler = Callable[[Event], None]
EventFilter = Callable[[Event], bool]


def deliver(handler: EventHandler | None, event: Event) -> None:
    """Call a one-off *handler*, logging (not raising) its failures."""
    if handler is None:
        return
    try:
        handler(event)
    except Exception:
        logger.exception("Event callback %r failed for %s", handler, event.type.value)


@dataclass(frozen=True)
class _Subscription:
    event_type: EventType | None  # None matches every type
    handler: EventHandler
    filter: EventFilter | None = None

    def matches(self, event: Event) -> bool:
        if self.event_type is not None and self.event_type is not event.type:
            return False
        return self.filter is None or bool(self.filter(event))


class EventBus:
    """In-process fan-out of pipeline events to subscribers.

    Delivery is synchronous, on whichever thread published the event, in
    subscription order.  A subscriber that raises (or whose filter raises)
    is logged and skipped.  The last *max_history* events are kept for
    :meth:`recent_events`.
    """

    def __init__(self, *, max_history: int = 1000) -> None:
        self._subscriptions: list[_Subscription] = []
        self._history: deque[Event] = deque(maxlen=max_history)
        self._lock = threading.Lock()

    def subscribe(
        self,
        event_type: EventType | None,
        handler: EventHandler,
        *,
        filter: EventFilter | None = None,
    ) -> None:
        """Call *handler* for every *event_type* event (``None`` for all).

        Subscribing the same handler to the same type twice is a no-op.
        """
        with self._lock:
            for sub in self._subscriptions:
                if sub.event_type is event_type and sub.handler == handler:
                    logger.debug("Handler %r already subscribed to %s", handler, event_type)
                    return
            self._subscriptions.append(_Subscription(event_type, handler, filter))

    def unsubscribe(self, event_type: EventType | None, handler: EventHandler) -> None:
        with self._lock:
            self._subscriptions = [
                sub
                for sub in self._subscriptions
                if not (sub.event_type is event_type and sub.handler == handler)
            ]

    def publish(
        self,
        event_or_type: Event | EventType,
        data: dict[str, Any] | None = None,
        source: str = "",
    ) -> Event:
        """Record and deliver an event; returns it.

        Takes either a ready :class:`Event` or a type plus its data.
        """
        if isinstance(event_or_type, Event):
            event = event_or_type
        else:
            event = Event(type=event_or_type, data=data or {}, source=source)

        with self._lock:
            self._history.append(event)
            subscribers = list(self._subscriptions)

        # Handlers may publish in turn, so they run without the lock held.
        for sub in subscribers:
            try:
                if sub.matches(event):
                    sub.handler(event)
            except Exception:
                logger.exception("Event handler %r failed for %s", sub.handler, event.type.value)
        return event

    def recent_events(self, event_type: EventType | None = None, limit: int = 50) -> list[Event]:
        """Up to *limit* recorded events, newest first."""
        with self._lock:
            snapshot = list(self._history)
        newest_first = [e for e in reversed(snapshot) if event_type is None or e.type is event_type]
        return newest_first[:limit]

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()
