"""
Threaded forum.

Topics live in one of five fixed categories and hold their replies inline.
Replies are never evicted; they are served in pages. Only moderators may
open topics in ``announcements``, and only moderators may lock, pin or
delete.

View counting is deduplicated per ``(viewer, topic)``: a viewer adds at most
one view per ``view_dedupe_seconds`` window, measured from the last view
that counted.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field

from commons_server.comms.content_filter import ContentFilter
from commons_server.comms.moderation import ModerationRegistry
from commons_server.comms.rate_limiter import RateLimiter
from commons_server.config import ForumSettings
from commons_server.core.bus import EventBus
from commons_server.core.clock import MS_PER_SECOND, Clock, IdGenerator
from commons_server.core.events import Events
from commons_server.core.principal import Principal
from commons_server.core.results import ErrorKind, Result

logger = logging.getLogger(__name__)

CATEGORIES: tuple[str, ...] = ("general", "guides", "trading", "guilds", "announcements")
MODERATED_CATEGORIES = frozenset({"announcements"})

MAX_TITLE_LENGTH = 200
MAX_BODY_LENGTH = 10_000
MAX_TOPICS_PER_PAGE = 100


@dataclass(slots=True)
class ForumReply:
    id: str
    topic_id: str
    author_id: str
    author_name: str
    body: str
    created_at: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "topic_id": self.topic_id,
            "author_id": self.author_id,
            "author_name": self.author_name,
            "body": self.body,
            "created_at": self.created_at,
        }


@dataclass(slots=True)
class ForumTopic:
    id: str
    category: str
    author_id: str
    author_name: str
    title: str
    body: str
    created_at: int
    updated_at: int
    locked: bool = False
    pinned: bool = False
    views: int = 0
    replies: list[ForumReply] = field(default_factory=list)

    def to_dict(self, include_replies: bool = True) -> dict:
        data = {
            "id": self.id,
            "category": self.category,
            "author_id": self.author_id,
            "author_name": self.author_name,
            "title": self.title,
            "body": self.body,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "locked": self.locked,
            "pinned": self.pinned,
            "views": self.views,
            "reply_count": len(self.replies),
        }
        if include_replies:
            data["replies"] = [r.to_dict() for r in self.replies]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> ForumTopic:
        return cls(
            id=data["id"],
            category=data["category"],
            author_id=data["author_id"],
            author_name=data.get("author_name", data["author_id"]),
            title=data["title"],
            body=data["body"],
            created_at=data["created_at"],
            updated_at=data.get("updated_at", data["created_at"]),
            locked=data.get("locked", False),
            pinned=data.get("pinned", False),
            views=data.get("views", 0),
            replies=[ForumReply(**r) for r in data.get("replies", [])],
        )


@dataclass(frozen=True, slots=True)
class TopicView:
    """One topic with a single page of its replies."""

    topic: ForumTopic
    replies: list[ForumReply]
    page: int
    total_pages: int

    def to_dict(self) -> dict:
        return {
            "topic": self.topic.to_dict(include_replies=False),
            "replies": [r.to_dict() for r in self.replies],
            "page": self.page,
            "total_pages": self.total_pages,
            "total_replies": len(self.topic.replies),
        }


@dataclass(frozen=True, slots=True)
class TopicPage:
    topics: list[ForumTopic]
    total: int
    page: int
    per_page: int
    total_pages: int

    def to_dict(self) -> dict:
        return {
            "topics": [t.to_dict(include_replies=False) for t in self.topics],
            "total": self.total,
            "page": self.page,
            "per_page": self.per_page,
            "total_pages": self.total_pages,
        }


class ForumService:
    """Owns every topic and its replies."""

    def __init__(
        self,
        moderation: ModerationRegistry,
        rate_limiter: RateLimiter,
        bus: EventBus,
        clock: Clock,
        ids: IdGenerator,
        settings: ForumSettings | None = None,
        content_filter: ContentFilter | None = None,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self.moderation = moderation
        self.rate_limiter = rate_limiter
        self.bus = bus
        self.clock = clock
        self.ids = ids
        self.settings = settings or ForumSettings()
        self.content_filter = content_filter or ContentFilter()
        self._on_change = on_change
        self._topics: dict[str, ForumTopic] = {}
        # (viewer, topic) -> time of the last counted view
        self._last_view: dict[tuple[str, str], int] = {}

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    def _can_moderate(self, principal: Principal) -> bool:
        return principal.is_moderator or self.moderation.is_moderator(principal.user_id)

    def _check_author(self, author: Principal, now: int) -> Result[None]:
        if self.moderation.is_banned(author.user_id, now):
            return Result.failure(ErrorKind.BANNED)
        if self.moderation.is_muted(author.user_id, now):
            return Result.failure(ErrorKind.MUTED)
        return Result.success()

    def _clean_body(self, body: str) -> Result[str]:
        if len(body) > MAX_BODY_LENGTH:
            return Result.failure(
                ErrorKind.BODY_TOO_LONG, f"Content too long (max {MAX_BODY_LENGTH} characters)"
            )
        text = self.content_filter.apply(body).text
        if not text:
            return Result.failure(ErrorKind.EMPTY_AFTER_FILTER)
        if len(text) > MAX_BODY_LENGTH:
            return Result.failure(
                ErrorKind.BODY_TOO_LONG,
                f"Content too long after filtering (max {MAX_BODY_LENGTH} characters)",
            )
        return Result.success(text)

    # =========================================================================
    # POSTING
    # =========================================================================

    def create_topic(
        self, author: Principal, category: str, title: str, body: str
    ) -> Result[ForumTopic]:
        """Open a topic. ``announcements`` is reserved for moderators."""
        if category not in CATEGORIES:
            return Result.failure(ErrorKind.VALIDATION_FAILED, "Invalid category")

        now = self.clock.now_ms()
        allowed = self._check_author(author, now)
        if not allowed.ok:
            return Result.failure(allowed.error.kind, allowed.error.detail)
        if category in MODERATED_CATEGORIES and not self._can_moderate(author):
            return Result.failure(ErrorKind.UNAUTHORIZED, "Only moderators can post announcements")

        if not title.strip():
            return Result.failure(ErrorKind.VALIDATION_FAILED, "Title is required")
        if len(title) > MAX_TITLE_LENGTH:
            return Result.failure(
                ErrorKind.BODY_TOO_LONG, f"Title too long (max {MAX_TITLE_LENGTH} characters)"
            )
        clean_title = self.content_filter.apply(title).text
        if not clean_title:
            return Result.failure(ErrorKind.EMPTY_AFTER_FILTER, "Title cannot be empty")
        if len(clean_title) > MAX_TITLE_LENGTH:
            return Result.failure(
                ErrorKind.BODY_TOO_LONG,
                f"Title too long after filtering (max {MAX_TITLE_LENGTH} characters)",
            )
        clean_body = self._clean_body(body)
        if not clean_body.ok:
            return Result.failure(clean_body.error.kind, clean_body.error.detail)

        if not self.rate_limiter.allow(author.user_id, "forum", now):
            return Result.failure(ErrorKind.RATE_LIMITED)

        topic = ForumTopic(
            id=self.ids.new_id(),
            category=category,
            author_id=author.user_id,
            author_name=author.name,
            title=clean_title,
            body=clean_body.value,
            created_at=now,
            updated_at=now,
        )
        self._topics[topic.id] = topic
        self.bus.emit(
            Events.FORUM_TOPIC_CREATED,
            {
                "topic": topic.to_dict(include_replies=False),
                "audience": {"channel": "forum", "scope": category},
            },
            source="forum",
        )
        self._changed()
        logger.debug("Topic %s created in %s by %s", topic.id, category, author.user_id)
        return Result.success(topic)

    def reply(self, topic_id: str, author: Principal, body: str) -> Result[ForumReply]:
        topic = self._topics.get(topic_id)
        if topic is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Topic not found")

        now = self.clock.now_ms()
        allowed = self._check_author(author, now)
        if not allowed.ok:
            return Result.failure(allowed.error.kind, allowed.error.detail)
        if topic.locked:
            return Result.failure(ErrorKind.VALIDATION_FAILED, "Topic is locked")

        clean_body = self._clean_body(body)
        if not clean_body.ok:
            return Result.failure(clean_body.error.kind, clean_body.error.detail)
        if not self.rate_limiter.allow(author.user_id, "forum", now):
            return Result.failure(ErrorKind.RATE_LIMITED)

        reply = ForumReply(
            id=self.ids.new_id(),
            topic_id=topic.id,
            author_id=author.user_id,
            author_name=author.name,
            body=clean_body.value,
            created_at=now,
        )
        topic.replies.append(reply)
        topic.updated_at = now

        participants = {topic.author_id} | {r.author_id for r in topic.replies}
        self.bus.emit(
            Events.FORUM_REPLY_POSTED,
            {"reply": reply.to_dict(), "topic_id": topic.id, "recipients": sorted(participants)},
            source="forum",
        )
        self._changed()
        return Result.success(reply)

    # =========================================================================
    # READING
    # =========================================================================

    def get_topic(self, topic_id: str, viewer_id: str, page: int = 1) -> Result[TopicView]:
        """Fetch a topic and one page of replies, counting the view."""
        topic = self._topics.get(topic_id)
        if topic is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Topic not found")

        now = self.clock.now_ms()
        key = (viewer_id, topic_id)
        last = self._last_view.get(key)
        if last is None or now - last >= self.settings.view_dedupe_seconds * MS_PER_SECOND:
            topic.views += 1
            self._last_view[key] = now
            self._changed()

        per_page = self.settings.replies_per_page
        total_pages = max(1, math.ceil(len(topic.replies) / per_page))
        page = max(1, page)
        start = (page - 1) * per_page
        return Result.success(
            TopicView(
                topic=topic,
                replies=topic.replies[start : start + per_page],
                page=page,
                total_pages=total_pages,
            )
        )

    def list_topics(
        self, category: str | None = None, page: int = 1, per_page: int | None = None
    ) -> Result[TopicPage]:
        """Pinned topics first, then newest first."""
        if category is not None and category not in CATEGORIES:
            return Result.failure(ErrorKind.VALIDATION_FAILED, "Invalid category")
        per_page = per_page or self.settings.topics_per_page
        per_page = max(1, min(per_page, MAX_TOPICS_PER_PAGE))
        page = max(1, page)

        topics = [t for t in self._topics.values() if category is None or t.category == category]
        topics.sort(key=lambda t: (not t.pinned, -t.created_at))

        start = (page - 1) * per_page
        return Result.success(
            TopicPage(
                topics=topics[start : start + per_page],
                total=len(topics),
                page=page,
                per_page=per_page,
                total_pages=math.ceil(len(topics) / per_page),
            )
        )

    def prune_view_records(self, now: int) -> int:
        """Drop dedupe records that can no longer suppress a view."""
        window = self.settings.view_dedupe_seconds * MS_PER_SECOND
        stale = [key for key, at in self._last_view.items() if now - at >= window]
        for key in stale:
            del self._last_view[key]
        return len(stale)

    # =========================================================================
    # MODERATION
    # =========================================================================

    def _moderated(self, moderator: Principal, topic_id: str) -> Result[ForumTopic]:
        if not self._can_moderate(moderator):
            return Result.failure(ErrorKind.UNAUTHORIZED, "Moderator privileges required")
        topic = self._topics.get(topic_id)
        if topic is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Topic not found")
        return Result.success(topic)

    def _announce(self, topic: ForumTopic, action: str, moderator: Principal) -> None:
        self.bus.emit(
            Events.FORUM_TOPIC_MODERATED,
            {
                "topic_id": topic.id,
                "action": action,
                "moderator": moderator.user_id,
                "audience": {"channel": "forum", "scope": topic.category},
            },
            source="forum",
        )
        self._changed()
        logger.info("Topic %s %s by %s", topic.id, action, moderator.user_id)

    def set_locked(self, moderator: Principal, topic_id: str, locked: bool = True) -> Result[ForumTopic]:
        found = self._moderated(moderator, topic_id)
        if not found.ok:
            return found
        topic = found.value
        topic.locked = locked
        self._announce(topic, "lock" if locked else "unlock", moderator)
        return Result.success(topic)

    def set_pinned(self, moderator: Principal, topic_id: str, pinned: bool = True) -> Result[ForumTopic]:
        found = self._moderated(moderator, topic_id)
        if not found.ok:
            return found
        topic = found.value
        topic.pinned = pinned
        self._announce(topic, "pin" if pinned else "unpin", moderator)
        return Result.success(topic)

    def delete_topic(self, moderator: Principal, topic_id: str) -> Result[None]:
        found = self._moderated(moderator, topic_id)
        if not found.ok:
            return Result.failure(found.error.kind, found.error.detail)
        topic = self._topics.pop(topic_id)
        for key in [k for k in self._last_view if k[1] == topic_id]:
            del self._last_view[key]
        self._announce(topic, "delete", moderator)
        return Result.success()

    def delete_reply(self, moderator: Principal, topic_id: str, reply_id: str) -> Result[None]:
        found = self._moderated(moderator, topic_id)
        if not found.ok:
            return Result.failure(found.error.kind, found.error.detail)
        topic = found.value
        index = next((i for i, r in enumerate(topic.replies) if r.id == reply_id), None)
        if index is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Reply not found")
        del topic.replies[index]
        self._announce(topic, "delete_reply", moderator)
        return Result.success()

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    def snapshot(self) -> dict:
        return {"topics": [t.to_dict() for t in self._topics.values()]}

    def restore(self, data: dict) -> None:
        self._topics = {}
        for raw in data.get("topics", []):
            topic = ForumTopic.from_dict(raw)
            self._topics[topic.id] = topic
        logger.info("Restored %d forum topics", len(self._topics))
