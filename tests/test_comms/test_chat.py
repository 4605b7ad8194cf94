"""Tests for chat channels."""

import pytest

from commons_server.comms.chat import ChatService, scope_for
from commons_server.comms.moderation import ModerationRegistry
from commons_server.comms.rate_limiter import RateLimiter
from commons_server.core.events import Events
from commons_server.core.principal import Principal
from commons_server.core.results import ErrorKind


@pytest.fixture
def unlimited_chat(bus, clock, ids) -> ChatService:
    """Chat with rate limiting switched off, for bulk history tests."""
    return ChatService(ModerationRegistry(clock, bus), RateLimiter(enabled=False), bus, clock, ids)


class TestSend:
    @pytest.mark.unit
    @pytest.mark.comms
    def test_send_stores_and_emits(self, chat, alice, bus):
        result = chat.send(alice, "global", "hello world")

        assert result.ok
        message = result.value
        assert message.body == "hello world"
        assert message.sender_id == "alice"
        assert chat.history_size("global") == 1

        event = bus.get_event_log(event_type=Events.CHAT_MESSAGE_SENT)[-1]
        assert event.detail["audience"] == {"channel": "global", "scope": ""}
        assert event.detail["message"]["id"] == message.id

    @pytest.mark.unit
    @pytest.mark.comms
    def test_unknown_channel(self, chat, alice):
        assert chat.send(alice, "shouting", "hi").kind is ErrorKind.UNKNOWN_CHANNEL

    @pytest.mark.unit
    @pytest.mark.comms
    def test_body_is_filtered(self, chat, alice):
        message = chat.send(alice, "global", "what the hell").value

        assert message.body == "what the ****"
        assert message.filtered

    @pytest.mark.unit
    @pytest.mark.comms
    def test_empty_after_filter(self, chat, alice):
        assert chat.send(alice, "global", "    ").kind is ErrorKind.EMPTY_AFTER_FILTER

    @pytest.mark.unit
    @pytest.mark.comms
    def test_length_limit(self, chat, alice):
        assert chat.send(alice, "global", "a" * 500).ok
        assert chat.send(alice, "global", "a" * 501).kind is ErrorKind.BODY_TOO_LONG

    @pytest.mark.unit
    @pytest.mark.comms
    def test_length_limit_applies_after_link_removal(self, chat, alice):
        body = " ".join(["www.a"] * 80)

        refused = chat.send(alice, "global", body)

        assert len(body) <= 500
        assert refused.kind is ErrorKind.BODY_TOO_LONG
        assert "after filtering" in refused.error.detail

    @pytest.mark.unit
    @pytest.mark.comms
    def test_muted_refused(self, chat, moderation, alice):
        moderation.mute("alice")

        assert chat.send(alice, "global", "hi").kind is ErrorKind.MUTED
        assert chat.history_size("global") == 0

    @pytest.mark.unit
    @pytest.mark.comms
    def test_ban_checked_before_mute(self, chat, moderation, alice):
        moderation.mute("alice")
        moderation.ban("alice")

        assert chat.send(alice, "global", "hi").kind is ErrorKind.BANNED

    @pytest.mark.unit
    @pytest.mark.comms
    def test_rate_limit(self, chat, alice, clock):
        for _ in range(10):
            assert chat.send(alice, "global", "hi").ok

        assert chat.send(alice, "global", "hi").kind is ErrorKind.RATE_LIMITED

        clock.advance(10_100)
        assert chat.send(alice, "global", "hi again").ok

    @pytest.mark.unit
    @pytest.mark.comms
    def test_slow_mode(self, chat, moderation, alice, bob, clock):
        moderation.set_slow_mode("trade", 5_000)

        assert chat.send(alice, "trade", "WTS sword").ok
        refused = chat.send(alice, "trade", "WTS shield")
        assert refused.kind is ErrorKind.SLOW_MODE
        assert "5s" in refused.error.message
        assert chat.send(bob, "trade", "WTB sword").ok

        clock.advance(5_000)
        assert chat.send(alice, "trade", "WTS shield").ok


class TestScopes:
    @pytest.mark.unit
    @pytest.mark.comms
    def test_local_scope_is_location(self, alice):
        assert scope_for(alice, "local").value == "harbor"
        assert scope_for(Principal("x", "X"), "local").value == "unknown"

    @pytest.mark.unit
    @pytest.mark.comms
    def test_guild_needs_guild(self, chat, carol):
        assert chat.send(carol, "guild", "anyone?").kind is ErrorKind.VALIDATION_FAILED

    @pytest.mark.unit
    @pytest.mark.comms
    def test_local_histories_are_separate(self, chat, alice, carol):
        chat.send(alice, "local", "at the harbor")
        chat.send(carol, "local", "at the market")

        harbor = chat.history("local", scope="harbor").value
        market = chat.history("local", scope="market").value

        assert [m.body for m in harbor] == ["at the harbor"]
        assert [m.body for m in market] == ["at the market"]

    @pytest.mark.unit
    @pytest.mark.comms
    def test_guild_event_audience(self, chat, alice, bus):
        chat.send(alice, "guild", "rally")

        event = bus.get_event_log(event_type=Events.CHAT_MESSAGE_SENT)[-1]
        assert event.detail["audience"] == {"channel": "guild", "scope": "g-red"}


class TestHistory:
    @pytest.mark.unit
    @pytest.mark.comms
    def test_newest_first_and_paging(self, unlimited_chat, alice):
        sent = [unlimited_chat.send(alice, "help", f"line {i}").value for i in range(5)]

        page = unlimited_chat.history("help", limit=2).value
        assert [m.id for m in page] == [sent[4].id, sent[3].id]

        older = unlimited_chat.history("help", before_id=sent[3].id, limit=2).value
        assert [m.id for m in older] == [sent[2].id, sent[1].id]

    @pytest.mark.unit
    @pytest.mark.comms
    def test_unknown_before_id_gives_empty_page(self, unlimited_chat, alice):
        unlimited_chat.send(alice, "help", "hi")

        assert unlimited_chat.history("help", before_id="nope").value == []

    @pytest.mark.unit
    @pytest.mark.comms
    def test_oldest_evicted_after_limit(self, unlimited_chat, alice):
        first = unlimited_chat.send(alice, "global", "message 0").value
        for i in range(1, 501):
            unlimited_chat.send(alice, "global", f"message {i}")

        assert unlimited_chat.history_size("global") == 500
        page = unlimited_chat.history("global", limit=100).value
        assert page[0].body == "message 500"
        assert unlimited_chat.history("global", before_id=first.id).value == []

    @pytest.mark.unit
    @pytest.mark.comms
    def test_limit_clamped(self, unlimited_chat, alice):
        for i in range(120):
            unlimited_chat.send(alice, "global", f"m{i}")

        assert len(unlimited_chat.history("global", limit=1000).value) == 100
        assert len(unlimited_chat.history("global", limit=0).value) == 1


class TestSystemBroadcast:
    @pytest.mark.unit
    @pytest.mark.comms
    def test_broadcast_skips_moderation(self, chat, moderation):
        moderation.set_slow_mode("global", 60_000)

        first = chat.broadcast_system("global", "Server restart in 5 minutes")
        second = chat.broadcast_system("global", "Server restart in 4 minutes")

        assert first.ok and second.ok
        assert first.value.system
        assert first.value.sender_id == "system"

    @pytest.mark.unit
    @pytest.mark.comms
    def test_scoped_broadcast_needs_scope(self, chat):
        assert chat.broadcast_system("local", "hi").kind is ErrorKind.VALIDATION_FAILED
        assert chat.broadcast_system("local", "hi", scope="harbor").ok


class TestSnapshot:
    @pytest.mark.unit
    @pytest.mark.comms
    def test_round_trip(self, chat, alice, moderation, rate_limiter, bus, clock, ids):
        chat.send(alice, "local", "saved line")

        restored = ChatService(moderation, rate_limiter, bus, clock, ids)
        restored.restore(chat.snapshot())

        assert [m.body for m in restored.history("local", scope="harbor").value] == ["saved line"]
