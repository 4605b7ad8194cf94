"""
Unit tests for session management (commons_server/api/auth.py).

Tests cover:
- Opening, resolving and closing sessions
- Closing every session of a banned user
- Session updates and role lookup
"""

import pytest
from fastapi import HTTPException

from commons_server.api.auth import SessionRegistry


@pytest.fixture
def registry(clock) -> SessionRegistry:
    return SessionRegistry(clock)


@pytest.mark.unit
@pytest.mark.api
class TestSessions:
    def test_open_and_resolve(self, registry):
        sid = registry.open("alice", "Alice", location="harbor")

        principal = registry.resolve(sid)

        assert principal.user_id == "alice"
        assert principal.role == "player"
        assert principal.location == "harbor"

    @pytest.mark.parametrize("user_id", ["", "a:b"])
    def test_open_rejects_bad_user_id(self, registry, user_id):
        with pytest.raises(ValueError):
            registry.open(user_id, "Someone")

    def test_explicit_session_id(self, registry):
        assert registry.open("bob", "Bob", session_id="s-bob") == "s-bob"
        assert registry.get("s-bob").principal.name == "Bob"

    @pytest.mark.parametrize("session_id", [None, "", "missing"])
    def test_resolve_unknown_session(self, registry, session_id):
        with pytest.raises(HTTPException) as exc_info:
            registry.resolve(session_id)

        assert exc_info.value.status_code == 401

    def test_resolve_tracks_activity_and_address(self, registry, clock):
        sid = registry.open("alice", "Alice")
        clock.advance(5000)

        principal = registry.resolve(sid, ip="10.1.1.1")

        assert principal.ip == "10.1.1.1"
        assert registry.get(sid).last_seen == registry.get(sid).created_at + 5000

    def test_close(self, registry):
        sid = registry.open("alice", "Alice")

        assert registry.close(sid) is True
        assert registry.close(sid) is False
        assert registry.count() == 0

    def test_close_user_ends_every_session(self, registry):
        registry.open("alice", "Alice")
        registry.open("alice", "Alice")
        keep = registry.open("bob", "Bob")

        assert registry.close_user("alice") == 2
        assert registry.user_ids() == {"bob"}
        assert registry.get(keep) is not None

    def test_update(self, registry):
        sid = registry.open("alice", "Alice", location="harbor")

        principal = registry.update(sid, location="market", guild_id="g-red")

        assert principal.location == "market"
        assert registry.resolve(sid).guild_id == "g-red"
        assert registry.update("missing", location="x") is None

    def test_role_of(self, registry):
        registry.open("admin", "Admin", role="admin")

        assert registry.role_of("admin") == "admin"
        assert registry.role_of("stranger") == "player"
