"""
Outbound Event Type Constants

Every event a service emits on the :class:`~commons_server.core.bus.EventBus`
is named here. Using constants instead of string literals gives a single
source of truth for names the hub and the client both depend on.

=============================================================================
NAMING CONVENTION
=============================================================================

Events use "domain:action" in PAST TENSE ("chat:message_sent",
"trade:updated"). They record facts, not requests.

=============================================================================
AUDIENCE CONVENTION
=============================================================================

Each detail dict names who should receive it:

    {"recipients": ["alice", "bob"], ...}              explicit users
    {"audience": {"channel": "local", "scope": "docks"}, ...}
                                                       everyone the hub
                                                       places in that scope
=============================================================================
"""


class Events:
    """All outbound event types, grouped by subsystem."""

    # =========================================================================
    # CHAT
    # =========================================================================

    CHAT_MESSAGE_SENT = "chat:message_sent"
    """
    A line was appended to a channel history (player or system).

    Detail: {
        "message": dict,     # ChatMessage.to_dict()
        "audience": {"channel": str, "scope": str}
    }
    """

    # =========================================================================
    # DIRECT MESSAGES
    # =========================================================================

    DM_DELIVERED = "dm:delivered"
    """
    A direct message was stored in its conversation.

    Detail: {"message": dict, "unread": int, "recipients": [from, to]}
    """

    DM_READ = "dm:read"
    """
    A user read their side of a conversation.

    Detail: {"reader": str, "other": str, "count": int, "recipients": [reader, other]}
    """

    # =========================================================================
    # MAIL
    # =========================================================================

    MAIL_RECEIVED = "mail:received"
    """
    A mail landed in a recipient's inbox.

    Detail: {"mail": dict, "recipients": [to]}
    """

    # =========================================================================
    # FORUM
    # =========================================================================

    FORUM_TOPIC_CREATED = "forum:topic_created"
    """Detail: {"topic": dict (without replies), "audience": {"channel": "forum", "scope": category}}"""

    FORUM_REPLY_POSTED = "forum:reply_posted"
    """Detail: {"reply": dict, "topic_id": str, "recipients": [topic author]}"""

    FORUM_TOPIC_MODERATED = "forum:topic_moderated"
    """Detail: {"topic_id": str, "action": "lock"|"unlock"|"pin"|"unpin"|"delete", "moderator": str}"""

    # =========================================================================
    # TRADE
    # =========================================================================

    TRADE_UPDATED = "trade:updated"
    """
    Any trade transition (proposed, negotiating, confirmed, completed,
    cancelled, failed). Carries the whole trade.

    Detail: {"trade": dict, "recipients": [from, to]}
    """

    # =========================================================================
    # MODERATION
    # =========================================================================

    USER_MUTED = "moderation:user_muted"
    """Detail: {"user_id": str, "until": int | None, "reason": str, "recipients": [user_id]}"""

    USER_BANNED = "moderation:user_banned"
    """Detail: {"user_id": str, "until": int | None, "reason": str, "recipients": [user_id]}"""


def get_all_event_types() -> list[str]:
    """Return all defined event type strings."""
    return [
        value
        for name, value in vars(Events).items()
        if not name.startswith("_") and isinstance(value, str)
    ]


def is_valid_event_type(event_type: str) -> bool:
    """Check whether ``event_type`` is one of the defined constants."""
    return event_type in get_all_event_types()
