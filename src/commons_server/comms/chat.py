"""
Chat channels.

Five fixed channels carry short real-time lines. ``global``, ``trade`` and
``help`` have a single history each; ``local`` keeps one history per
location and ``guild`` one per guild. Every history is bounded and evicts
its oldest line first.

A send is checked in this order, and the first failing check decides the
refusal:

    channel -> banned -> muted -> length -> empty after filter
            -> slow mode -> rate limit

Accepted lines are appended and announced on the bus as
``chat:message_sent`` with the channel scope as audience.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass

from commons_server.comms.content_filter import ContentFilter
from commons_server.comms.moderation import ModerationRegistry
from commons_server.comms.rate_limiter import RateLimiter
from commons_server.config import ChatSettings
from commons_server.core.bus import EventBus
from commons_server.core.clock import Clock, IdGenerator
from commons_server.core.events import Events
from commons_server.core.principal import Principal
from commons_server.core.results import ErrorKind, Result

logger = logging.getLogger(__name__)

CHANNELS: tuple[str, ...] = ("global", "local", "guild", "trade", "help")
SCOPED_CHANNELS = frozenset({"local", "guild"})

SYSTEM_SENDER_ID = "system"
SYSTEM_SENDER_NAME = "System"
UNKNOWN_LOCATION = "unknown"

MAX_HISTORY_PAGE = 100
DEFAULT_HISTORY_PAGE = 50


@dataclass(frozen=True, slots=True)
class ChatMessage:
    id: str
    channel: str
    scope: str
    sender_id: str
    sender_name: str
    body: str
    created_at: int
    filtered: bool = False
    system: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> ChatMessage:
        return cls(**{k: data[k] for k in cls.__slots__ if k in data})


def scope_for(principal: Principal, channel: str) -> Result[str]:
    """Resolve which history of ``channel`` the principal speaks into."""
    if channel == "local":
        return Result.success(principal.location or UNKNOWN_LOCATION)
    if channel == "guild":
        if not principal.guild_id:
            return Result.failure(ErrorKind.VALIDATION_FAILED, "You are not in a guild")
        return Result.success(principal.guild_id)
    return Result.success("")


class ChatService:
    """Owns every channel history."""

    def __init__(
        self,
        moderation: ModerationRegistry,
        rate_limiter: RateLimiter,
        bus: EventBus,
        clock: Clock,
        ids: IdGenerator,
        settings: ChatSettings | None = None,
        content_filter: ContentFilter | None = None,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self.moderation = moderation
        self.rate_limiter = rate_limiter
        self.bus = bus
        self.clock = clock
        self.ids = ids
        self.settings = settings or ChatSettings()
        self.content_filter = content_filter or ContentFilter()
        self._on_change = on_change
        # channel -> scope -> bounded history, oldest first
        self._histories: dict[str, dict[str, deque[ChatMessage]]] = {c: {} for c in CHANNELS}

    def _history(self, channel: str, scope: str) -> deque[ChatMessage]:
        scopes = self._histories[channel]
        if scope not in scopes:
            scopes[scope] = deque(maxlen=self.settings.history_limit)
        return scopes[scope]

    def _append(self, message: ChatMessage) -> None:
        self._history(message.channel, message.scope).append(message)
        self.bus.emit(
            Events.CHAT_MESSAGE_SENT,
            {
                "message": message.to_dict(),
                "audience": {"channel": message.channel, "scope": message.scope},
            },
            source="chat",
        )
        if self._on_change is not None:
            self._on_change()

    # =========================================================================
    # SENDING
    # =========================================================================

    def send(self, sender: Principal, channel: str, body: str) -> Result[ChatMessage]:
        """
        Post a line from ``sender`` into ``channel``.

        Args:
            sender: The speaking principal. Its location and guild pick the
                history for ``local`` and ``guild``.
            channel: One of :data:`CHANNELS`.
            body: Raw text, at most ``settings.max_length`` characters.

        Returns:
            The stored :class:`ChatMessage`, or a refusal.
        """
        if channel not in CHANNELS:
            return Result.failure(ErrorKind.UNKNOWN_CHANNEL, f"Unknown channel: {channel}")

        scope = scope_for(sender, channel)
        if not scope.ok:
            return Result.failure(scope.error.kind, scope.error.detail)

        now = self.clock.now_ms()
        user_id = sender.user_id

        if self.moderation.is_banned(user_id, now):
            return Result.failure(ErrorKind.BANNED)
        if self.moderation.is_muted(user_id, now):
            return Result.failure(ErrorKind.MUTED)
        if len(body) > self.settings.max_length:
            return Result.failure(
                ErrorKind.BODY_TOO_LONG,
                f"Message too long (max {self.settings.max_length} characters)",
            )

        filtered = self.content_filter.apply(body)
        if not filtered.text:
            return Result.failure(ErrorKind.EMPTY_AFTER_FILTER)
        if len(filtered.text) > self.settings.max_length:
            return Result.failure(
                ErrorKind.BODY_TOO_LONG,
                f"Message too long after filtering (max {self.settings.max_length} characters)",
            )

        wait_ms = self.moderation.slow_mode_remaining(user_id, channel, now)
        if wait_ms > 0:
            return Result.failure(
                ErrorKind.SLOW_MODE, f"Slow mode is active. Wait {(wait_ms + 999) // 1000}s."
            )
        if not self.rate_limiter.allow(user_id, "chat", now):
            return Result.failure(ErrorKind.RATE_LIMITED)

        message = ChatMessage(
            id=self.ids.new_id(),
            channel=channel,
            scope=scope.value,
            sender_id=user_id,
            sender_name=sender.name,
            body=filtered.text,
            created_at=now,
            filtered=filtered.was_filtered,
        )
        self.moderation.record_send(user_id, channel, now)
        self._append(message)
        logger.debug("chat %s/%s <- %s", channel, message.scope or "-", user_id)
        return Result.success(message)

    def broadcast_system(self, channel: str, body: str, scope: str = "") -> Result[ChatMessage]:
        """Post a system line. Skips filtering, moderation and rate limits."""
        if channel not in CHANNELS:
            return Result.failure(ErrorKind.UNKNOWN_CHANNEL, f"Unknown channel: {channel}")
        if channel in SCOPED_CHANNELS and not scope:
            return Result.failure(ErrorKind.VALIDATION_FAILED, f"Channel {channel} needs a scope")
        if not body.strip():
            return Result.failure(ErrorKind.EMPTY_AFTER_FILTER)

        message = ChatMessage(
            id=self.ids.new_id(),
            channel=channel,
            scope=scope if channel in SCOPED_CHANNELS else "",
            sender_id=SYSTEM_SENDER_ID,
            sender_name=SYSTEM_SENDER_NAME,
            body=body.strip(),
            created_at=self.clock.now_ms(),
            system=True,
        )
        self._append(message)
        logger.info("System broadcast on %s: %s", channel, message.body)
        return Result.success(message)

    # =========================================================================
    # READING
    # =========================================================================

    def history(
        self,
        channel: str,
        before_id: str | None = None,
        limit: int = DEFAULT_HISTORY_PAGE,
        scope: str = "",
    ) -> Result[list[ChatMessage]]:
        """
        A page of ``channel``, newest first.

        ``before_id`` pages backwards: only lines older than that message are
        returned. A ``before_id`` that is no longer in the history (evicted or
        never existed) yields an empty page.
        """
        if channel not in CHANNELS:
            return Result.failure(ErrorKind.UNKNOWN_CHANNEL, f"Unknown channel: {channel}")
        limit = max(1, min(limit, MAX_HISTORY_PAGE))

        history = self._histories[channel].get(scope if channel in SCOPED_CHANNELS else "")
        if not history:
            return Result.success([])

        messages = list(history)
        if before_id is not None:
            index = next((i for i, m in enumerate(messages) if m.id == before_id), None)
            if index is None:
                return Result.success([])
            messages = messages[:index]

        return Result.success(list(reversed(messages[-limit:])))

    def history_size(self, channel: str, scope: str = "") -> int:
        return len(self._histories.get(channel, {}).get(scope, ()))

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    def snapshot(self) -> dict:
        return {
            channel: {scope: [m.to_dict() for m in history] for scope, history in scopes.items()}
            for channel, scopes in self._histories.items()
        }

    def restore(self, data: dict) -> None:
        count = 0
        for channel, scopes in data.items():
            if channel not in CHANNELS:
                logger.warning("Skipping unknown channel %r in chat snapshot", channel)
                continue
            for scope, messages in scopes.items():
                history = self._history(channel, scope)
                history.clear()
                history.extend(ChatMessage.from_dict(m) for m in messages)
                count += len(history)
        logger.info("Restored %d chat messages", count)
