"""
Outbound Event Bus

Services record what happened by emitting events on the bus; the connection
hub subscribes and fans each event out to the recipients it names. Services
never talk to sockets directly.

=============================================================================
PRINCIPLES
=============================================================================

1. THE BUS RECORDS FACTS
   - Events are past tense: "chat:message_sent" means the line is already in
     the channel history.

2. EVENTS ARE IMMUTABLE AND CARRY FULL POST-STATE
   - A trade event holds the whole trade, not a diff, so two participants
     observing transitions in different orders still converge.

3. EMIT IS SYNCHRONOUS
   - Sequence numbers are assigned at emit time. Within one channel the
     broadcast order equals the insertion order.

4. ASYNC IS AN EXECUTION DETAIL
   - Async handlers are scheduled on the running loop after the event is
     committed to the log.

=============================================================================
USAGE
=============================================================================

    from commons_server.core.bus import EventBus
    from commons_server.core.events import Events

    bus = EventBus()
    unsubscribe = bus.on(Events.CHAT_MESSAGE_SENT, lambda e: print(e.detail))
    bus.emit(Events.CHAT_MESSAGE_SENT, {"message": {...}}, source="chat")
    unsubscribe()

One bus is built per server by the composition root. There is no module
level instance.
=============================================================================
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from commons_server.core.events import is_valid_event_type

logger = logging.getLogger(__name__)


# =============================================================================
# TYPE ALIASES
# =============================================================================

SyncHandler = Callable[["BusEvent"], None]
AsyncHandler = Callable[["BusEvent"], Coroutine[Any, Any, None]]
EventHandler = SyncHandler | AsyncHandler
Unsubscribe = Callable[[], None]


# =============================================================================
# EVENT METADATA
# =============================================================================


@dataclass(frozen=True)
class EventMetadata:
    """
    Metadata attached to every event.

    Attributes:
        timestamp: Unix epoch milliseconds (UTC) at emission. For display only.
        source: Name of the emitting service, e.g. "chat" or "trade".
        sequence: Monotonically increasing integer. The only reliable order.
    """

    timestamp: int
    source: str
    sequence: int

    @staticmethod
    def create(source: str, sequence: int) -> EventMetadata:
        now_ms = int(datetime.now(UTC).timestamp() * 1000)
        return EventMetadata(timestamp=now_ms, source=source, sequence=sequence)


# =============================================================================
# BUS EVENT
# =============================================================================


@dataclass(frozen=True)
class BusEvent:
    """
    A single outbound event.

    Attributes:
        type: "domain:action" string from :class:`~commons_server.core.events.Events`.
        detail: Payload. By convention it holds the entity post-state plus
            either ``recipients`` (a list of user ids) or ``audience``
            (a channel scope the hub resolves against connected sessions).
        _meta: Sequence, source and timestamp.
    """

    type: str
    detail: dict = field(default_factory=dict)
    _meta: EventMetadata | None = field(default=None)

    def __str__(self) -> str:
        if self._meta:
            return (
                f"BusEvent(type='{self.type}', "
                f"source='{self._meta.source}', "
                f"seq={self._meta.sequence})"
            )
        return f"BusEvent(type='{self.type}')"

    @property
    def meta(self) -> EventMetadata | None:
        return self._meta

    @property
    def recipients(self) -> list[str] | None:
        """Explicit recipient ids, or ``None`` when the event targets an audience."""
        recipients = self.detail.get("recipients")
        return list(recipients) if recipients is not None else None


# =============================================================================
# EVENT BUS
# =============================================================================


class EventBus:
    """
    In-process publish/subscribe with a bounded event log.

    Thread Safety:
        Not thread-safe. The server runs on a single asyncio loop; every emit
        happens on that loop.
    """

    def __init__(self, log_size: int = 10_000) -> None:
        # Maps event_type -> handlers, in registration order
        self._handlers: dict[str, list[EventHandler]] = {}
        # Wildcard handlers receive every event (the hub uses this)
        self._any_handlers: list[EventHandler] = []
        self._event_log: deque[BusEvent] = deque(maxlen=log_size)
        self._sequence: int = 0
        self.debug: bool = False

    # =========================================================================
    # EMIT
    # =========================================================================

    def emit(
        self, event_type: str, detail: dict[str, Any] | None = None, source: str = "core"
    ) -> BusEvent:
        """
        Emit an event.

        When this returns the event has a sequence number, is in the log, all
        sync handlers have run and all async handlers are scheduled.

        Args:
            event_type: The type of event, e.g. ``Events.TRADE_UPDATED``.
            detail: The event payload. Defaults to an empty dict.
            source: Emitting component, used for debugging.

        Returns:
            The committed :class:`BusEvent`.
        """
        self._sequence += 1
        event = BusEvent(
            type=event_type,
            detail=detail if detail is not None else {},
            _meta=EventMetadata.create(source, self._sequence),
        )
        self._event_log.append(event)

        if self.debug:
            logger.debug("EMIT [%d]: %s from %s", self._sequence, event.type, source)
            if not is_valid_event_type(event_type):
                logger.warning("Emitted undeclared event type %r from %s", event_type, source)

        self._notify_handlers(event)
        return event

    def _notify_handlers(self, event: BusEvent) -> None:
        """Call handlers in registration order; one failing handler never stops the rest."""
        handlers = list(self._handlers.get(event.type, ())) + list(self._any_handlers)
        for handler in handlers:
            try:
                if inspect.iscoroutinefunction(handler):
                    self._schedule_async_handler(handler, event)
                else:
                    handler(event)
            except Exception:
                logger.error("Handler error for %s", event.type, exc_info=True)

    def _schedule_async_handler(self, handler: AsyncHandler, event: BusEvent) -> None:
        """Schedule on the running loop, or run to completion when no loop runs."""
        try:
            loop = asyncio.get_running_loop()
            loop.create_task(handler(event))
        except RuntimeError:
            asyncio.run(handler(event))

    # =========================================================================
    # SUBSCRIBE
    # =========================================================================

    def on(self, event_type: str, handler: EventHandler) -> Unsubscribe:
        """
        Subscribe to an event type. Use ``"*"`` to receive every event.

        Returns:
            A function that removes the subscription.
        """
        handlers = self._any_handlers if event_type == "*" else self._handlers.setdefault(event_type, [])
        handlers.append(handler)

        if self.debug:
            logger.debug("SUBSCRIBE: '%s' (total handlers: %d)", event_type, len(handlers))

        def unsubscribe() -> None:
            try:
                handlers.remove(handler)
            except ValueError:
                # Already removed
                pass

        return unsubscribe

    # =========================================================================
    # EVENT LOG ACCESS
    # =========================================================================

    def get_event_log(self, limit: int | None = None, event_type: str | None = None) -> list[BusEvent]:
        """
        Events in emission order (oldest first).

        Args:
            limit: Only the last ``limit`` events.
            event_type: Only events of this type.
        """
        events = list(self._event_log)
        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        if limit is not None:
            return events[-limit:]
        return events

    def get_sequence(self) -> int:
        return self._sequence
