"""
Shared pytest fixtures for the commons server test suite.

This module provides fixtures that are automatically available to all test files:
- A manual clock and deterministic id generator
- A fresh event bus, moderation registry and rate limiter
- Each service built around those shared collaborators
- An in-memory player store with a few funded players
- A full service graph rooted in a temporary data directory
- FastAPI TestClient instances with sessions for each role

Every service fixture shares the same clock, so advancing ``clock`` moves
time for all of them.
"""

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from commons_server.api.auth import SessionRegistry
from commons_server.api.server import create_app
from commons_server.comms.chat import ChatService
from commons_server.comms.direct_messages import DirectMessageService
from commons_server.comms.forum import ForumService
from commons_server.comms.mail import MailService
from commons_server.comms.moderation import ModerationRegistry
from commons_server.comms.rate_limiter import RateLimiter
from commons_server.config import ServerConfig
from commons_server.core.bus import EventBus
from commons_server.core.clock import ManualClock, SequentialIdGenerator
from commons_server.core.container import Services, build_services
from commons_server.core.principal import Principal
from commons_server.players.store import InMemoryPlayerStore
from commons_server.trade.coordinator import TradeCoordinator
from tests.constants import make_players

# ============================================================================
# CORE FIXTURES
# ============================================================================


@pytest.fixture
def clock() -> ManualClock:
    """A clock that only moves when a test advances it."""
    return ManualClock()


@pytest.fixture
def ids() -> SequentialIdGenerator:
    """Ids ``id-1``, ``id-2``, ... in creation order."""
    return SequentialIdGenerator()


@pytest.fixture
def bus() -> EventBus:
    """A fresh event bus per test."""
    return EventBus()


@pytest.fixture
def moderation(clock, bus) -> ModerationRegistry:
    return ModerationRegistry(clock, bus)


@pytest.fixture
def rate_limiter() -> RateLimiter:
    return RateLimiter()


# ============================================================================
# PRINCIPALS
# ============================================================================


@pytest.fixture
def alice() -> Principal:
    return Principal("alice", "Alice", location="harbor", guild_id="g-red", ip="10.0.0.1")


@pytest.fixture
def bob() -> Principal:
    return Principal("bob", "Bob", location="harbor", guild_id="g-blue", ip="10.0.0.2")


@pytest.fixture
def carol() -> Principal:
    return Principal("carol", "Carol", location="market", ip="10.0.0.3")


@pytest.fixture
def mod() -> Principal:
    return Principal("mod", "Moderator", role="moderator")


# ============================================================================
# SERVICE FIXTURES
# ============================================================================


@pytest.fixture
def chat(moderation, rate_limiter, bus, clock, ids) -> ChatService:
    return ChatService(moderation, rate_limiter, bus, clock, ids)


@pytest.fixture
def dms(moderation, rate_limiter, bus, clock, ids) -> DirectMessageService:
    return DirectMessageService(moderation, rate_limiter, bus, clock, ids)


@pytest.fixture
def mail(moderation, rate_limiter, bus, clock, ids) -> MailService:
    return MailService(moderation, rate_limiter, bus, clock, ids)


@pytest.fixture
def forum(moderation, rate_limiter, bus, clock, ids) -> ForumService:
    return ForumService(moderation, rate_limiter, bus, clock, ids)


# ============================================================================
# PLAYERS AND TRADE
# ============================================================================


@pytest.fixture
def players() -> InMemoryPlayerStore:
    return InMemoryPlayerStore(make_players())


@pytest.fixture
def trades(players, bus, clock, ids) -> TradeCoordinator:
    return TradeCoordinator(players, bus, clock, ids)


# ============================================================================
# FULL SERVICE GRAPH
# ============================================================================


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """A temporary data directory for snapshot files."""
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def services(data_dir, clock, ids) -> Services:
    """
    Every service wired together over ``data_dir``.

    Uses default configuration, the manual clock and an in-memory player
    store seeded with :func:`make_players`.
    """
    return build_services(
        ServerConfig(),
        player_store=InMemoryPlayerStore(make_players()),
        clock=clock,
        ids=ids,
        data_dir=data_dir,
    )


# ============================================================================
# FASTAPI TEST CLIENT FIXTURES
# ============================================================================


@pytest.fixture
def sessions(services) -> SessionRegistry:
    return SessionRegistry(services.clock)


@pytest.fixture
def session_ids(sessions) -> dict[str, str]:
    """
    Open one session per role.

    Returns:
        Dict mapping user id to session id for alice, bob (players),
        mod (moderator) and admin (admin).
    """
    return {
        "alice": sessions.open("alice", "Alice", location="harbor", guild_id="g-red"),
        "bob": sessions.open("bob", "Bob", location="harbor"),
        "mod": sessions.open("mod", "Moderator", role="moderator"),
        "admin": sessions.open("admin", "Admin", role="admin"),
    }


@pytest.fixture
def test_client(services, sessions, session_ids) -> Generator[TestClient, None, None]:
    """
    A TestClient around a fully wired app.

    Background jobs are disabled; tests drive reapers and flushes directly.
    """
    app = create_app(services, sessions, run_jobs=False)
    with TestClient(app) as client:
        yield client
