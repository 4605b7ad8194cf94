"""
Composition root.

:func:`build_services` constructs every service once, wires the shared event
bus, rate limiter and moderation registry into them, connects each service's
``on_change`` hook to the debounced snapshot writer and restores persisted
state from the data directory.

Usage:
    from commons_server.core.container import build_services

    services = build_services()
    result = services.chat.send(principal, "global", "hello")

Tests pass a :class:`~commons_server.core.clock.ManualClock`, a
:class:`~commons_server.core.clock.SequentialIdGenerator` and an in-memory
player store to get deterministic behaviour.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from commons_server.comms.chat import ChatService
from commons_server.comms.content_filter import ContentFilter
from commons_server.comms.direct_messages import DirectMessageService
from commons_server.comms.forum import ForumService
from commons_server.comms.mail import MailService
from commons_server.comms.moderation import ModerationRegistry
from commons_server.comms.rate_limiter import RateLimiter, RateLimitRule
from commons_server.config import ServerConfig
from commons_server.config import config as default_config
from commons_server.core.bus import EventBus
from commons_server.core.clock import Clock, IdGenerator, SystemClock
from commons_server.monitoring.performance import PerformanceMonitor
from commons_server.persistence.snapshots import (
    DebouncedSnapshotWriter,
    SnapshotReadError,
    SnapshotStore,
)
from commons_server.players.store import JsonPlayerStore, PlayerStore
from commons_server.trade.coordinator import TradeCoordinator

logger = logging.getLogger(__name__)

# =============================================================================
# SNAPSHOT NAMES
# =============================================================================

CHAT_SNAPSHOT = "chat-history.json"
DM_SNAPSHOT = "dms.json"
MAIL_SNAPSHOT = "mail.json"
FORUM_SNAPSHOT = "forum.json"
MODERATION_SNAPSHOT = "moderation.json"
ACTIVE_TRADES_SNAPSHOT = "trades/active-trades.json"
TRADE_HISTORY_SNAPSHOT = "trades/trade-history.json"


@dataclass
class Services:
    """Everything the transport layer needs, built once per process."""

    config: ServerConfig
    clock: Clock
    ids: IdGenerator
    bus: EventBus
    moderation: ModerationRegistry
    rate_limiter: RateLimiter
    content_filter: ContentFilter
    chat: ChatService
    dms: DirectMessageService
    mail: MailService
    forum: ForumService
    trades: TradeCoordinator
    players: PlayerStore
    monitor: PerformanceMonitor
    store: SnapshotStore
    writer: DebouncedSnapshotWriter


def rate_rules_from(cfg: ServerConfig) -> dict[str, RateLimitRule]:
    return {
        "chat": RateLimitRule(cfg.chat.rate_limit_count, cfg.chat.rate_limit_window_ms),
        "dm": RateLimitRule(cfg.dm.rate_limit_count, cfg.dm.rate_limit_window_ms),
        "mail": RateLimitRule(cfg.mail.rate_limit_count, cfg.mail.rate_limit_window_ms),
        "forum": RateLimitRule(cfg.forum.rate_limit_count, cfg.forum.rate_limit_window_ms),
    }


def _read_or_quarantine(store: SnapshotStore, name: str):
    try:
        return store.read(name)
    except SnapshotReadError:
        logger.error("Snapshot %s is unreadable; starting from empty state", name, exc_info=True)
        store.quarantine(name)
        return None


def restore_snapshots(services: Services) -> None:
    """Load every persisted snapshot into its owning service."""
    store = services.store
    plain = {
        MODERATION_SNAPSHOT: services.moderation,
        CHAT_SNAPSHOT: services.chat,
        DM_SNAPSHOT: services.dms,
        MAIL_SNAPSHOT: services.mail,
        FORUM_SNAPSHOT: services.forum,
    }
    for name, service in plain.items():
        data = _read_or_quarantine(store, name)
        if data is not None:
            service.restore(data)

    active = _read_or_quarantine(store, ACTIVE_TRADES_SNAPSHOT)
    history = _read_or_quarantine(store, TRADE_HISTORY_SNAPSHOT)
    if active is not None or history is not None:
        services.trades.restore(active, history)
    logger.info("Restored state from %s", store.root)


def build_services(
    cfg: ServerConfig | None = None,
    player_store: PlayerStore | None = None,
    clock: Clock | None = None,
    ids: IdGenerator | None = None,
    data_dir: Path | str | None = None,
    restore: bool = True,
) -> Services:
    """
    Construct and wire all services.

    Args:
        cfg: Configuration to use. Defaults to the module-level ``config``.
        player_store: Player record store. Defaults to a
            :class:`JsonPlayerStore` under the data directory.
        clock: Time source shared by every service.
        ids: Id generator shared by every service.
        data_dir: Overrides ``cfg.data.absolute_dir``.
        restore: Load persisted snapshots before returning.

    Returns:
        Services: The wired service graph.
    """
    cfg = cfg or default_config
    clock = clock or SystemClock()
    ids = ids or IdGenerator()
    root = Path(data_dir) if data_dir is not None else cfg.data.absolute_dir

    store = SnapshotStore(root)
    writer = DebouncedSnapshotWriter(
        store,
        clock,
        debounce_ms=cfg.persistence.debounce_ms,
        max_wait_ms=cfg.persistence.max_wait_ms,
    )
    bus = EventBus()
    content_filter = ContentFilter()
    rate_limiter = RateLimiter(rate_rules_from(cfg))
    moderation = ModerationRegistry(clock, bus, on_change=writer.marker(MODERATION_SNAPSHOT))

    shared = dict(
        moderation=moderation,
        rate_limiter=rate_limiter,
        bus=bus,
        clock=clock,
        ids=ids,
        content_filter=content_filter,
    )
    chat = ChatService(settings=cfg.chat, on_change=writer.marker(CHAT_SNAPSHOT), **shared)
    dms = DirectMessageService(settings=cfg.dm, on_change=writer.marker(DM_SNAPSHOT), **shared)
    mail = MailService(settings=cfg.mail, on_change=writer.marker(MAIL_SNAPSHOT), **shared)
    forum = ForumService(settings=cfg.forum, on_change=writer.marker(FORUM_SNAPSHOT), **shared)

    monitor = PerformanceMonitor(cfg.monitor, clock)
    players = player_store if player_store is not None else JsonPlayerStore(root, monitor=monitor)
    trades = TradeCoordinator(
        players,
        bus,
        clock,
        ids,
        settings=cfg.trade,
        on_change=writer.marker(ACTIVE_TRADES_SNAPSHOT, TRADE_HISTORY_SNAPSHOT),
    )

    writer.register(MODERATION_SNAPSHOT, moderation.snapshot)
    writer.register(CHAT_SNAPSHOT, chat.snapshot)
    writer.register(DM_SNAPSHOT, dms.snapshot)
    writer.register(MAIL_SNAPSHOT, mail.snapshot)
    writer.register(FORUM_SNAPSHOT, forum.snapshot)
    writer.register(ACTIVE_TRADES_SNAPSHOT, trades.snapshot_active)
    writer.register(TRADE_HISTORY_SNAPSHOT, trades.snapshot_history)

    services = Services(
        config=cfg,
        clock=clock,
        ids=ids,
        bus=bus,
        moderation=moderation,
        rate_limiter=rate_limiter,
        content_filter=content_filter,
        chat=chat,
        dms=dms,
        mail=mail,
        forum=forum,
        trades=trades,
        players=players,
        monitor=monitor,
        store=store,
        writer=writer,
    )
    if restore:
        restore_snapshots(services)
    return services
