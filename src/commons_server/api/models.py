"""
Pydantic models for inbound wire events.

Every payload model forbids unknown fields, so a client that sends an
unexpected key gets a ``VALIDATION_FAILED`` response instead of having the
key silently ignored. Field names follow the wire format (camelCase) through
aliases; Python code uses the snake_case attribute names.

Models are organized into four groups:
1. Envelopes: the outer ``POST /events`` body and WebSocket frame
2. Payloads: one model per wire event type (see :data:`PAYLOAD_MODELS`)
3. Responses: the ``/events`` response shape
4. Sessions: bodies of the game server's ``/sessions`` calls
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class WireModel(BaseModel):
    """Base for every inbound payload."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


# ============================================================================
# ENVELOPES
# ============================================================================


class EventRequest(WireModel):
    """
    Body of ``POST /events``.

    Attributes:
        session_id: Session registered by the embedding game server.
        type: Wire event type such as ``"chat.send"``.
        payload: Event payload, validated against the type's model.
    """

    session_id: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)


class WebSocketFrame(WireModel):
    """Inbound WebSocket frame. ``requestId`` is echoed on the response."""

    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    request_id: str | None = Field(None, alias="requestId")


# ============================================================================
# CHAT AND DIRECT MESSAGES
# ============================================================================


class ChatSendPayload(WireModel):
    channel: str
    body: str


class ChatHistoryPayload(WireModel):
    channel: str
    before: str | None = None
    limit: int = 50


class DmSendPayload(WireModel):
    to: str
    body: str


class DmConversationPayload(WireModel):
    with_: str = Field(alias="with")
    before: str | None = None
    limit: int = 50


class DmPeerPayload(WireModel):
    with_: str = Field(alias="with")


class DmTargetPayload(WireModel):
    target: str


# ============================================================================
# MAIL
# ============================================================================


class MailSendPayload(WireModel):
    to: str
    subject: str
    body: str


class EmptyPayload(WireModel):
    pass


class MailIdPayload(WireModel):
    mail_id: str = Field(alias="mailId")


# ============================================================================
# FORUM
# ============================================================================


class ForumCreateTopicPayload(WireModel):
    category: str
    title: str
    body: str


class ForumReplyPayload(WireModel):
    topic_id: str = Field(alias="topicId")
    body: str


class ForumGetPayload(WireModel):
    topic_id: str = Field(alias="topicId")
    page: int = 1


class ForumListPayload(WireModel):
    category: str | None = None
    page: int = 1
    per_page: int | None = Field(None, alias="perPage")


class ForumFlagPayload(WireModel):
    """Lock, pin or delete a topic. ``flag`` is ignored by delete."""

    topic_id: str = Field(alias="topicId")
    flag: bool = True


class ForumDeleteReplyPayload(WireModel):
    topic_id: str = Field(alias="topicId")
    reply_id: str = Field(alias="replyId")


# ============================================================================
# TRADE
# ============================================================================


class OfferPayload(WireModel):
    """Item ids (repeat an id for quantity) and pennies."""

    items: list[str] = Field(default_factory=list)
    currency: int = 0


class TradeProposePayload(WireModel):
    to: str
    offer: OfferPayload = Field(default_factory=OfferPayload)


class TradeUpdatePayload(WireModel):
    trade_id: str = Field(alias="tradeId")
    offer: OfferPayload


class TradeIdPayload(WireModel):
    trade_id: str = Field(alias="tradeId")


class TradeGetPayload(WireModel):
    trade_id: str | None = Field(None, alias="tradeId")


class TradeHistoryPayload(WireModel):
    limit: int = 20


# ============================================================================
# ADMIN
# ============================================================================


class SanctionPayload(WireModel):
    """
    Mute, ban or IP-ban request, and their reversals.

    Attributes:
        target: User id, or an IP address / CIDR block for IP bans.
        duration_ms: Length of the sanction. Omitted or ``permanent`` means
            indefinite. Ignored by the reversal events.
        reason: Free text kept with the sanction.
    """

    target: str
    duration_ms: int | None = Field(None, alias="durationMs")
    reason: str = ""
    permanent: bool = False


class SlowModePayload(WireModel):
    channel: str
    interval_ms: int = Field(alias="intervalMs")


class BroadcastPayload(WireModel):
    channel: str
    body: str
    scope: str = ""


class SystemMailPayload(WireModel):
    to: str
    subject: str
    body: str


class ModeratorPayload(WireModel):
    target: str


PAYLOAD_MODELS: dict[str, type[WireModel]] = {
    "chat.send": ChatSendPayload,
    "chat.history": ChatHistoryPayload,
    "dm.send": DmSendPayload,
    "dm.conversation": DmConversationPayload,
    "dm.markRead": DmPeerPayload,
    "dm.block": DmTargetPayload,
    "dm.unblock": DmTargetPayload,
    "mail.send": MailSendPayload,
    "mail.fetch": EmptyPayload,
    "mail.read": MailIdPayload,
    "mail.delete": MailIdPayload,
    "mail.archive": MailIdPayload,
    "forum.createTopic": ForumCreateTopicPayload,
    "forum.reply": ForumReplyPayload,
    "forum.get": ForumGetPayload,
    "forum.list": ForumListPayload,
    "forum.lock": ForumFlagPayload,
    "forum.pin": ForumFlagPayload,
    "forum.delete": ForumFlagPayload,
    "forum.deleteReply": ForumDeleteReplyPayload,
    "trade.propose": TradeProposePayload,
    "trade.update": TradeUpdatePayload,
    "trade.confirm": TradeIdPayload,
    "trade.cancel": TradeIdPayload,
    "trade.get": TradeGetPayload,
    "trade.history": TradeHistoryPayload,
    "admin.banUser": SanctionPayload,
    "admin.unbanUser": SanctionPayload,
    "admin.muteUser": SanctionPayload,
    "admin.unmuteUser": SanctionPayload,
    "admin.banIp": SanctionPayload,
    "admin.unbanIp": SanctionPayload,
    "admin.slowMode": SlowModePayload,
    "admin.broadcast": BroadcastPayload,
    "admin.systemMail": SystemMailPayload,
    "admin.grantModerator": ModeratorPayload,
    "admin.revokeModerator": ModeratorPayload,
}


# ============================================================================
# RESPONSES
# ============================================================================


class EventResponse(BaseModel):
    """``{ok, event, data}`` on success, ``{ok, event, error}`` on failure."""

    ok: bool
    event: str
    data: Any = None
    error: dict[str, Any] | None = None


# ============================================================================
# SESSIONS
# ============================================================================


class OpenSessionRequest(WireModel):
    """
    Body of ``POST /sessions``, sent by the embedding game server.

    ``userId`` may not contain ``":"``, which separates the pair in stored
    conversation keys.
    """

    user_id: str = Field(alias="userId", min_length=1, max_length=64, pattern=r"^[^:\s]+$")
    name: str = Field(min_length=1, max_length=64)
    role: Literal["player", "moderator", "admin", "superuser"] = "player"
    location: str = ""
    guild_id: str | None = Field(None, alias="guildId")


class UpdateSessionRequest(WireModel):
    """Body of ``PATCH /sessions/{session_id}``. Omitted fields are unchanged."""

    location: str | None = None
    guild_id: str | None = Field(None, alias="guildId")
    role: Literal["player", "moderator", "admin", "superuser"] | None = None
