"""
Unit tests for the event dispatcher (commons_server/api/adapter.py).

Tests cover:
- Unknown event types and payload validation
- Ban, IP ban and permission checks ahead of every handler
- Handler responses for chat, DMs, mail, forum and trade events
- Admin events and the sanction rank rules
- Internal errors and monitor tracking
"""

import pytest

from commons_server.api.adapter import EventDispatcher, serialize
from commons_server.core.principal import Principal


@pytest.fixture
def dispatcher(services, sessions, session_ids) -> EventDispatcher:
    return EventDispatcher(services, sessions)


@pytest.fixture
def admin(sessions, session_ids) -> Principal:
    return sessions.resolve(session_ids["admin"])


def error_code(response: dict) -> str:
    assert response["ok"] is False, response
    return response["error"]["code"]


# ============================================================================
# ENVELOPE AND VALIDATION
# ============================================================================


@pytest.mark.unit
@pytest.mark.api
class TestValidation:
    @pytest.mark.asyncio
    async def test_unknown_event_type(self, dispatcher, alice):
        response = await dispatcher.dispatch(alice, "chat.shout", {})

        assert response["event"] == "chat.shout"
        assert error_code(response) == "VALIDATION_FAILED"
        assert response["error"]["message"] == "Unknown event type: chat.shout"

    @pytest.mark.asyncio
    async def test_missing_field(self, dispatcher, alice):
        response = await dispatcher.dispatch(alice, "chat.send", {"channel": "global"})

        assert error_code(response) == "VALIDATION_FAILED"
        assert response["error"]["detail"].startswith("body:")

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, dispatcher, alice):
        response = await dispatcher.dispatch(
            alice, "chat.send", {"channel": "global", "body": "hi", "color": "red"}
        )

        assert error_code(response) == "VALIDATION_FAILED"
        assert response["error"]["detail"].startswith("color:")

    @pytest.mark.asyncio
    async def test_none_payload_is_empty(self, dispatcher, alice):
        response = await dispatcher.dispatch(alice, "mail.fetch", None)

        assert response["ok"] is True
        assert response["data"]["unread"] == 0

    def test_event_types_listed(self, dispatcher):
        assert len(dispatcher.event_types) == 37
        assert "admin.systemMail" in dispatcher.event_types

    def test_serialize_nested(self):
        principal = Principal("alice", "Alice", role="admin")
        assert serialize({"n": (1, 2), "p": [principal.role]}) == {"n": [1, 2], "p": ["admin"]}


# ============================================================================
# ACCESS CHECKS
# ============================================================================


@pytest.mark.unit
@pytest.mark.api
class TestAccess:
    @pytest.mark.asyncio
    async def test_banned_user_refused(self, dispatcher, services, alice):
        services.moderation.ban("alice", reason="spam")

        response = await dispatcher.dispatch(alice, "chat.send", {"channel": "global", "body": "hi"})

        assert error_code(response) == "BANNED"

    @pytest.mark.asyncio
    async def test_banned_address_refused(self, dispatcher, services, alice):
        services.moderation.ban_ip("10.0.0.0/24")

        response = await dispatcher.dispatch(alice, "mail.fetch", {})

        assert error_code(response) == "BANNED"

    @pytest.mark.asyncio
    async def test_player_cannot_send_admin_events(self, dispatcher, alice):
        response = await dispatcher.dispatch(alice, "admin.muteUser", {"target": "bob"})

        assert error_code(response) == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_permission_checked_before_payload(self, dispatcher, alice):
        """A player learns nothing about an admin payload's shape."""
        response = await dispatcher.dispatch(alice, "admin.banUser", {"bogus": 1})

        assert error_code(response) == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_runtime_moderator_grant(self, dispatcher, services, alice, bob):
        created = await dispatcher.dispatch(
            bob, "forum.createTopic", {"category": "general", "title": "Hello", "body": "First!"}
        )
        topic_id = created["data"]["id"]
        services.moderation.grant_moderator("alice")

        response = await dispatcher.dispatch(alice, "forum.lock", {"topicId": topic_id})

        assert response["ok"] is True
        assert response["data"]["locked"] is True
        assert dispatcher.effective_principal(alice).role == "moderator"


# ============================================================================
# SERVICE HANDLERS
# ============================================================================


@pytest.mark.unit
@pytest.mark.api
class TestHandlers:
    @pytest.mark.asyncio
    async def test_chat_send_and_history(self, dispatcher, alice):
        sent = await dispatcher.dispatch(alice, "chat.send", {"channel": "global", "body": "hello"})
        history = await dispatcher.dispatch(alice, "chat.history", {"channel": "global"})

        assert sent["ok"] is True
        assert sent["data"]["body"] == "hello"
        assert sent["data"]["sender_id"] == "alice"
        assert [m["id"] for m in history["data"]] == [sent["data"]["id"]]

    @pytest.mark.asyncio
    async def test_local_history_uses_sender_location(self, dispatcher, alice, carol):
        await dispatcher.dispatch(alice, "chat.send", {"channel": "local", "body": "at the harbor"})

        harbor = await dispatcher.dispatch(alice, "chat.history", {"channel": "local"})
        market = await dispatcher.dispatch(carol, "chat.history", {"channel": "local"})

        assert len(harbor["data"]) == 1
        assert market["data"] == []

    @pytest.mark.asyncio
    async def test_guild_history_needs_guild(self, dispatcher, carol):
        response = await dispatcher.dispatch(carol, "chat.history", {"channel": "guild"})

        assert error_code(response) == "VALIDATION_FAILED"

    @pytest.mark.asyncio
    async def test_direct_message_flow(self, dispatcher, alice, bob):
        await dispatcher.dispatch(alice, "dm.send", {"to": "bob", "body": "psst"})

        conversation = await dispatcher.dispatch(bob, "dm.conversation", {"with": "alice"})
        marked = await dispatcher.dispatch(bob, "dm.markRead", {"with": "alice"})

        assert conversation["data"]["with"] == "alice"
        assert conversation["data"]["unread"] == 1
        assert [m["body"] for m in conversation["data"]["messages"]] == ["psst"]
        assert marked["data"] == {"with": "alice", "marked": 1, "unread": 0}

    @pytest.mark.asyncio
    async def test_block_and_unblock(self, dispatcher, alice, bob):
        blocked = await dispatcher.dispatch(bob, "dm.block", {"target": "alice"})
        refused = await dispatcher.dispatch(alice, "dm.send", {"to": "bob", "body": "hello?"})
        unblocked = await dispatcher.dispatch(bob, "dm.unblock", {"target": "alice"})

        assert blocked["data"] == {"blocked": ["alice"]}
        assert error_code(refused) == "BLOCKED"
        assert unblocked["data"] == {"removed": True, "blocked": []}

    @pytest.mark.asyncio
    async def test_mail_flow(self, dispatcher, alice, bob):
        sent = await dispatcher.dispatch(alice, "mail.send", {"to": "bob", "subject": "Hi", "body": "Hello"})
        inbox = await dispatcher.dispatch(bob, "mail.fetch", {})
        mail_id = inbox["data"]["inbox"][0]["id"]

        read = await dispatcher.dispatch(bob, "mail.read", {"mailId": mail_id})
        deleted = await dispatcher.dispatch(bob, "mail.delete", {"mailId": mail_id})

        assert sent["ok"] is True
        assert inbox["data"]["unread"] == 1
        assert read["data"]["read_at"] is not None
        assert deleted["data"] == {"deleted": mail_id}

    @pytest.mark.asyncio
    async def test_forum_flow(self, dispatcher, alice, bob, mod):
        created = await dispatcher.dispatch(
            alice, "forum.createTopic", {"category": "trading", "title": "WTS sword", "body": "Cheap"}
        )
        topic_id = created["data"]["id"]
        await dispatcher.dispatch(bob, "forum.reply", {"topicId": topic_id, "body": "How cheap?"})

        page = await dispatcher.dispatch(bob, "forum.get", {"topicId": topic_id})
        listing = await dispatcher.dispatch(bob, "forum.list", {"category": "trading"})
        pinned = await dispatcher.dispatch(mod, "forum.pin", {"topicId": topic_id})

        assert page["data"]["topic"]["title"] == "WTS sword"
        assert [r["body"] for r in page["data"]["replies"]] == ["How cheap?"]
        assert [t["id"] for t in listing["data"]["topics"]] == [topic_id]
        assert pinned["data"]["pinned"] is True

    @pytest.mark.asyncio
    async def test_forum_delete_returns_id(self, dispatcher, alice, mod):
        created = await dispatcher.dispatch(
            alice, "forum.createTopic", {"category": "general", "title": "Oops", "body": "x"}
        )
        topic_id = created["data"]["id"]

        deleted = await dispatcher.dispatch(mod, "forum.delete", {"topicId": topic_id})
        missing = await dispatcher.dispatch(alice, "forum.get", {"topicId": topic_id})

        assert deleted["data"] == {"deleted": topic_id}
        assert error_code(missing) == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_trade_flow(self, dispatcher, services, alice, bob):
        proposed = await dispatcher.dispatch(
            alice, "trade.propose", {"to": "bob", "offer": {"items": ["sword"], "currency": 10}}
        )
        trade_id = proposed["data"]["id"]
        await dispatcher.dispatch(bob, "trade.update", {"tradeId": trade_id, "offer": {"items": ["herb"]}})
        await dispatcher.dispatch(alice, "trade.confirm", {"tradeId": trade_id})
        done = await dispatcher.dispatch(bob, "trade.confirm", {"tradeId": trade_id})

        assert proposed["data"]["status"] == "proposed"
        assert done["data"]["status"] == "completed"
        assert done["data"]["to_offer"] == {"items": ["herb"], "currency": 0}

        active = await dispatcher.dispatch(alice, "trade.get", {})
        history = await dispatcher.dispatch(alice, "trade.history", {"limit": 5})
        assert active["data"] is None
        assert [t["id"] for t in history["data"]] == [trade_id]

        bob_after = await services.players.get_player("bob")
        assert bob_after.pennies == 60
        assert "sword" in bob_after.inventory

    @pytest.mark.asyncio
    async def test_trade_get_by_id_for_outsider(self, dispatcher, alice, carol):
        proposed = await dispatcher.dispatch(alice, "trade.propose", {"to": "bob"})

        response = await dispatcher.dispatch(carol, "trade.get", {"tradeId": proposed["data"]["id"]})

        assert error_code(response) == "NOT_IN_THIS_TRADE"


# ============================================================================
# ADMIN EVENTS
# ============================================================================


@pytest.mark.unit
@pytest.mark.api
class TestAdmin:
    @pytest.mark.asyncio
    async def test_moderator_mutes_player(self, dispatcher, services, clock, mod, alice):
        response = await dispatcher.dispatch(
            mod, "admin.muteUser", {"target": "alice", "durationMs": 60_000, "reason": "spam"}
        )
        refused = await dispatcher.dispatch(alice, "chat.send", {"channel": "global", "body": "hi"})

        assert response["data"]["until"] == clock.now_ms() + 60_000
        assert response["data"]["issued_by"] == "mod"
        assert error_code(refused) == "MUTED"

        unmuted = await dispatcher.dispatch(mod, "admin.unmuteUser", {"target": "alice"})
        assert unmuted["data"] == {"target": "alice", "removed": True}
        assert not services.moderation.is_muted("alice")

    @pytest.mark.asyncio
    async def test_permanent_flag_overrides_duration(self, dispatcher, mod):
        response = await dispatcher.dispatch(
            mod, "admin.muteUser", {"target": "bob", "durationMs": 1000, "permanent": True}
        )

        assert response["data"]["until"] is None

    @pytest.mark.asyncio
    async def test_cannot_sanction_self(self, dispatcher, mod):
        response = await dispatcher.dispatch(mod, "admin.muteUser", {"target": "mod"})

        assert error_code(response) == "VALIDATION_FAILED"
        assert response["error"]["message"] == "You cannot sanction yourself"

    @pytest.mark.asyncio
    async def test_cannot_sanction_higher_rank(self, dispatcher, mod):
        response = await dispatcher.dispatch(mod, "admin.muteUser", {"target": "admin"})

        assert error_code(response) == "UNAUTHORIZED"
        assert response["error"]["message"] == "Target outranks you"

    @pytest.mark.asyncio
    async def test_ban_closes_sessions(self, dispatcher, sessions, session_ids, admin):
        response = await dispatcher.dispatch(admin, "admin.banUser", {"target": "alice", "reason": "cheating"})

        assert response["ok"] is True
        assert sessions.get(session_ids["alice"]) is None
        assert sessions.get(session_ids["bob"]) is not None

    @pytest.mark.asyncio
    async def test_moderator_cannot_ban(self, dispatcher, mod):
        response = await dispatcher.dispatch(mod, "admin.banUser", {"target": "alice"})

        assert error_code(response) == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_ip_ban_and_unban(self, dispatcher, services, admin):
        banned = await dispatcher.dispatch(admin, "admin.banIp", {"target": "192.168.1.0/24"})
        assert banned["ok"] is True
        assert services.moderation.is_ip_banned("192.168.1.77")

        removed = await dispatcher.dispatch(admin, "admin.unbanIp", {"target": "192.168.1.0/24"})
        assert removed["data"]["removed"] is True
        assert not services.moderation.is_ip_banned("192.168.1.77")

    @pytest.mark.asyncio
    async def test_slow_mode(self, dispatcher, services, mod):
        response = await dispatcher.dispatch(mod, "admin.slowMode", {"channel": "trade", "intervalMs": 5000})

        assert response["data"] == {"channel": "trade", "interval_ms": 5000}
        assert services.moderation.slow_mode_interval("trade") == 5000

    @pytest.mark.asyncio
    async def test_slow_mode_unknown_channel(self, dispatcher, mod):
        response = await dispatcher.dispatch(mod, "admin.slowMode", {"channel": "lobby", "intervalMs": 5000})

        assert error_code(response) == "UNKNOWN_CHANNEL"

    @pytest.mark.asyncio
    async def test_broadcast_and_system_mail(self, dispatcher, services, admin):
        line = await dispatcher.dispatch(admin, "admin.broadcast", {"channel": "global", "body": "Restart soon"})
        mail = await dispatcher.dispatch(
            admin, "admin.systemMail", {"to": "bob", "subject": "Welcome", "body": "Enjoy"}
        )

        assert line["data"]["system"] is True
        assert line["data"]["sender_id"] == "system"
        assert mail["data"]["system"] is True
        assert services.mail.unread_count("bob") == 1

    @pytest.mark.asyncio
    async def test_grant_and_revoke_moderator(self, dispatcher, services, admin, alice):
        slow = {"channel": "trade", "intervalMs": 3000}

        granted = await dispatcher.dispatch(admin, "admin.grantModerator", {"target": "alice"})
        allowed = await dispatcher.dispatch(alice, "admin.slowMode", slow)
        revoked = await dispatcher.dispatch(admin, "admin.revokeModerator", {"target": "alice"})
        denied = await dispatcher.dispatch(alice, "admin.slowMode", slow)

        assert granted["data"] == {"target": "alice", "moderator": True}
        assert allowed["ok"] is True
        assert revoked["data"]["removed"] is True
        assert error_code(denied) == "UNAUTHORIZED"
        assert not services.moderation.is_moderator("alice")

    @pytest.mark.asyncio
    async def test_moderator_grants_need_admin(self, dispatcher, admin, mod):
        refused = await dispatcher.dispatch(mod, "admin.grantModerator", {"target": "bob"})
        own = await dispatcher.dispatch(admin, "admin.grantModerator", {"target": "admin"})

        assert error_code(refused) == "UNAUTHORIZED"
        assert error_code(own) == "VALIDATION_FAILED"


# ============================================================================
# ERRORS AND MONITORING
# ============================================================================


@pytest.mark.unit
@pytest.mark.api
class TestMonitoring:
    @pytest.mark.asyncio
    async def test_every_dispatch_is_tracked(self, dispatcher, services, alice):
        await dispatcher.dispatch(alice, "mail.fetch", {})
        await dispatcher.dispatch(alice, "nonsense", {})

        assert services.monitor.counters["total_websocket_messages"] == 2

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_internal_error(self, dispatcher, services, monkeypatch, alice):
        def explode(*args, **kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(services.chat, "send", explode)

        response = await dispatcher.dispatch(alice, "chat.send", {"channel": "global", "body": "hi"})

        assert error_code(response) == "INTERNAL_ERROR"
        assert response["error"]["message"] == "Something went wrong. Please try again."
        errors = services.monitor.get_errors()
        assert errors[-1]["source"] == "chat.send"
        assert errors[-1]["type"] == "RuntimeError"
        assert services.monitor.total_errors == 1
