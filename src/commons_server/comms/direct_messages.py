"""
Direct messages between two players.

A conversation is keyed by the sorted pair ``(a, b)`` and holds at most
``history_limit`` messages; the oldest is evicted first. Messages are kept
while the recipient is offline and are delivered through the bus when they
connect and fetch the conversation.

Unread counters are tracked per ``(recipient, sender)`` so a client can show
both a total badge and per-conversation counts.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass

from commons_server.comms.content_filter import ContentFilter
from commons_server.comms.moderation import ModerationRegistry
from commons_server.comms.rate_limiter import RateLimiter
from commons_server.config import DirectMessageSettings
from commons_server.core.bus import EventBus
from commons_server.core.clock import Clock, IdGenerator
from commons_server.core.events import Events
from commons_server.core.principal import Principal
from commons_server.core.results import ErrorKind, Result

logger = logging.getLogger(__name__)

MAX_PAGE = 100


@dataclass(slots=True)
class DirectMessage:
    id: str
    from_id: str
    to_id: str
    body: str
    created_at: int
    read_at: int | None = None
    filtered: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> DirectMessage:
        return cls(
            id=data["id"],
            from_id=data["from_id"],
            to_id=data["to_id"],
            body=data["body"],
            created_at=data["created_at"],
            read_at=data.get("read_at"),
            filtered=data.get("filtered", False),
        )


def conversation_key(a: str, b: str) -> tuple[str, str]:
    """Order-independent key for the pair ``a``, ``b``."""
    first, second = sorted((a, b))
    return first, second


class DirectMessageService:
    """Owns conversations, blocklists and unread counters."""

    def __init__(
        self,
        moderation: ModerationRegistry,
        rate_limiter: RateLimiter,
        bus: EventBus,
        clock: Clock,
        ids: IdGenerator,
        settings: DirectMessageSettings | None = None,
        content_filter: ContentFilter | None = None,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self.moderation = moderation
        self.rate_limiter = rate_limiter
        self.bus = bus
        self.clock = clock
        self.ids = ids
        self.settings = settings or DirectMessageSettings()
        self.content_filter = content_filter or ContentFilter()
        self._on_change = on_change
        self._conversations: dict[tuple[str, str], deque[DirectMessage]] = {}
        self._blocklists: dict[str, set[str]] = {}
        # recipient -> sender -> unread count
        self._unread: dict[str, dict[str, int]] = {}

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    def _bump_unread(self, recipient: str, sender: str, delta: int) -> int:
        counters = self._unread.setdefault(recipient, {})
        counters[sender] = max(0, counters.get(sender, 0) + delta)
        return counters[sender]

    # =========================================================================
    # SENDING
    # =========================================================================

    def send(self, sender: Principal, recipient: str, body: str) -> Result[DirectMessage]:
        """Deliver ``body`` from ``sender`` to ``recipient``."""
        from_id = sender.user_id
        if recipient == from_id:
            return Result.failure(ErrorKind.VALIDATION_FAILED, "You cannot message yourself")
        if not recipient:
            return Result.failure(ErrorKind.VALIDATION_FAILED, "Recipient is required")

        now = self.clock.now_ms()
        if self.moderation.is_banned(from_id, now):
            return Result.failure(ErrorKind.BANNED)
        if self.moderation.is_muted(from_id, now):
            return Result.failure(ErrorKind.MUTED)
        if self.moderation.is_muted(recipient, now):
            return Result.failure(ErrorKind.MUTED, "That player is muted and cannot receive messages")
        if self.is_blocked(recipient, from_id):
            return Result.failure(ErrorKind.BLOCKED)
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
        if not self.rate_limiter.allow(from_id, "dm", now):
            return Result.failure(ErrorKind.RATE_LIMITED)

        message = DirectMessage(
            id=self.ids.new_id(),
            from_id=from_id,
            to_id=recipient,
            body=filtered.text,
            created_at=now,
            filtered=filtered.was_filtered,
        )

        key = conversation_key(from_id, recipient)
        conversation = self._conversations.get(key)
        if conversation is None:
            conversation = self._conversations[key] = deque(maxlen=self.settings.history_limit)
        if len(conversation) == conversation.maxlen:
            evicted = conversation[0]
            if evicted.read_at is None:
                self._bump_unread(evicted.to_id, evicted.from_id, -1)
        conversation.append(message)
        unread = self._bump_unread(recipient, from_id, 1)

        self.bus.emit(
            Events.DM_DELIVERED,
            {"message": message.to_dict(), "unread": unread, "recipients": [from_id, recipient]},
            source="dm",
        )
        self._changed()
        return Result.success(message)

    # =========================================================================
    # READING
    # =========================================================================

    def conversation(
        self, a: str, b: str, before_id: str | None = None, limit: int = 50
    ) -> list[DirectMessage]:
        """
        Messages between ``a`` and ``b``, oldest first.

        With ``before_id`` only messages sent before that one are considered;
        an id that is not in the conversation yields an empty list.
        """
        limit = max(1, min(limit, MAX_PAGE))
        pair = {a, b}
        messages = [
            m
            for m in self._conversations.get(conversation_key(a, b), ())
            if {m.from_id, m.to_id} == pair
        ]
        if before_id is not None:
            index = next((i for i, m in enumerate(messages) if m.id == before_id), None)
            if index is None:
                return []
            messages = messages[:index]
        return messages[-limit:]

    def mark_read(self, user: str, other: str) -> int:
        """
        Mark every message from ``other`` to ``user`` as read.

        Returns:
            How many messages changed state. Calling again returns 0.
        """
        now = self.clock.now_ms()
        count = 0
        for message in self._conversations.get(conversation_key(user, other), ()):
            if message.to_id == user and message.read_at is None:
                message.read_at = now
                count += 1

        counters = self._unread.get(user)
        if counters is not None:
            counters.pop(other, None)

        if count:
            self.bus.emit(
                Events.DM_READ,
                {"reader": user, "other": other, "count": count, "recipients": [user, other]},
                source="dm",
            )
            self._changed()
        return count

    def unread_count(self, user: str) -> int:
        return sum(self._unread.get(user, {}).values())

    def unread_by_conversation(self, user: str) -> dict[str, int]:
        return {other: n for other, n in self._unread.get(user, {}).items() if n > 0}

    def conversations_for(self, user: str) -> list[dict]:
        """Summaries of every conversation ``user`` takes part in, most recent first."""
        summaries = []
        for (first, second), messages in self._conversations.items():
            if user not in (first, second) or not messages:
                continue
            other = second if first == user else first
            last = messages[-1]
            summaries.append(
                {
                    "with": other,
                    "last_message": last.to_dict(),
                    "unread": self._unread.get(user, {}).get(other, 0),
                    "updated_at": last.created_at,
                }
            )
        summaries.sort(key=lambda s: s["updated_at"], reverse=True)
        return summaries

    # =========================================================================
    # BLOCKLISTS
    # =========================================================================

    def block(self, user: str, target: str) -> Result[None]:
        if user == target:
            return Result.failure(ErrorKind.VALIDATION_FAILED, "You cannot block yourself")
        self._blocklists.setdefault(user, set()).add(target)
        logger.info("%s blocked %s", user, target)
        self._changed()
        return Result.success()

    def unblock(self, user: str, target: str) -> Result[bool]:
        blocked = self._blocklists.get(user)
        removed = blocked is not None and target in blocked
        if removed:
            blocked.discard(target)
            if not blocked:
                del self._blocklists[user]
            logger.info("%s unblocked %s", user, target)
            self._changed()
        return Result.success(removed)

    def is_blocked(self, user: str, target: str) -> bool:
        """Whether ``user`` has blocked ``target``."""
        return target in self._blocklists.get(user, ())

    def blocked_by(self, user: str) -> list[str]:
        return sorted(self._blocklists.get(user, ()))

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    def snapshot(self) -> dict:
        return {
            "conversations": {
                f"{first}:{second}": [m.to_dict() for m in messages]
                for (first, second), messages in self._conversations.items()
                if messages
            },
            "blocklists": {user: sorted(targets) for user, targets in self._blocklists.items()},
            "unread": {user: dict(counters) for user, counters in self._unread.items() if counters},
        }

    def restore(self, data: dict) -> None:
        # Stored keys are display strings; the pair comes from the messages.
        self._conversations = {}
        for raw in data.get("conversations", {}).values():
            messages = [DirectMessage.from_dict(m) for m in raw]
            if not messages:
                continue
            key = conversation_key(messages[0].from_id, messages[0].to_id)
            self._conversations[key] = deque(messages, maxlen=self.settings.history_limit)
        self._blocklists = {user: set(targets) for user, targets in data.get("blocklists", {}).items()}
        self._unread = {
            user: {other: int(n) for other, n in counters.items()}
            for user, counters in data.get("unread", {}).items()
        }
        logger.info("Restored %d DM conversations", len(self._conversations))
