"""
Connection hub: fans bus events out to connected WebSocket sessions.

The hub subscribes to every bus event. For each event it picks the target
connections and puts an outbound frame ``{"type": ..., "data": ...}`` on each
connection's queue. The WebSocket route drains the queue in order, so each
client sees events in emission order.

Targeting follows the event detail:

- ``recipients``: exactly those user ids
- ``audience`` ``{"channel": "local", "scope": loc}``: sessions at ``loc``
- ``audience`` ``{"channel": "guild", "scope": gid}``: members of ``gid``
- any other audience, or none: every connection

A ``moderation:user_banned`` event additionally closes the banned user's
connections with code 1008. Each queue is bounded; a client that falls
``max_queued`` frames behind is dropped and closed with 1013.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field

from commons_server.api.auth import SessionRegistry
from commons_server.comms.chat import UNKNOWN_LOCATION
from commons_server.core.bus import BusEvent, EventBus
from commons_server.core.events import Events

logger = logging.getLogger(__name__)

POLICY_VIOLATION = 1008
TRY_AGAIN_LATER = 1013
CLOSE = object()
MAX_QUEUED_FRAMES = 256

_ROUTING_KEYS = ("recipients", "audience")


@dataclass
class Connection:
    id: int
    session_id: str
    user_id: str
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    close_code: int = POLICY_VIOLATION


def outbound_frame(event: BusEvent) -> dict:
    data = {key: value for key, value in event.detail.items() if key not in _ROUTING_KEYS}
    return {"type": event.type, "data": data}


def _push_close(conn: Connection, code: int = POLICY_VIOLATION) -> None:
    """Queue the close marker, dropping the oldest frames if the queue is full."""
    conn.close_code = code
    while True:
        try:
            conn.queue.put_nowait(CLOSE)
            return
        except asyncio.QueueFull:
            conn.queue.get_nowait()


class ConnectionHub:
    """Tracks live connections and routes bus events to them."""

    def __init__(
        self, bus: EventBus, sessions: SessionRegistry, max_queued: int = MAX_QUEUED_FRAMES
    ) -> None:
        self.sessions = sessions
        self.max_queued = max_queued
        self._connections: dict[int, Connection] = {}
        self._ids = itertools.count(1)
        self._unsubscribe = bus.on("*", self._on_event)

    def connect(self, session_id: str, user_id: str) -> Connection:
        conn = Connection(next(self._ids), session_id, user_id, asyncio.Queue(self.max_queued))
        self._connections[conn.id] = conn
        logger.info("WebSocket connected: %s (connection %d)", user_id, conn.id)
        return conn

    def disconnect(self, conn: Connection) -> None:
        if self._connections.pop(conn.id, None) is not None:
            logger.info("WebSocket disconnected: %s (connection %d)", conn.user_id, conn.id)

    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    def count(self) -> int:
        return len(self._connections)

    def close(self) -> None:
        """Stop listening to the bus and close every connection."""
        self._unsubscribe()
        for conn in self.connections():
            _push_close(conn)

    # =========================================================================
    # ROUTING
    # =========================================================================

    def targets(self, event: BusEvent) -> list[Connection]:
        recipients = event.recipients
        if recipients is not None:
            wanted = set(recipients)
            return [c for c in self._connections.values() if c.user_id in wanted]

        audience = event.detail.get("audience") or {}
        channel = audience.get("channel")
        scope = audience.get("scope")
        if channel not in ("local", "guild"):
            return list(self._connections.values())

        matched = []
        for conn in self._connections.values():
            session = self.sessions.get(conn.session_id)
            if session is None:
                continue
            principal = session.principal
            if channel == "local" and (principal.location or UNKNOWN_LOCATION) == scope:
                matched.append(conn)
            elif channel == "guild" and principal.guild_id == scope:
                matched.append(conn)
        return matched

    def _on_event(self, event: BusEvent) -> None:
        frame = outbound_frame(event)
        for conn in self.targets(event):
            try:
                conn.queue.put_nowait(frame)
            except asyncio.QueueFull:
                logger.warning(
                    "Dropping connection %d of %s: %d frames queued", conn.id, conn.user_id, self.max_queued
                )
                self.disconnect(conn)
                _push_close(conn, TRY_AGAIN_LATER)

        if event.type == Events.USER_BANNED:
            for conn in self.connections():
                if conn.user_id in (event.recipients or ()):
                    _push_close(conn)
