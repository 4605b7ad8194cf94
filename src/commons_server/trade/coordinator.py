"""
Player-to-player trade coordinator.

=============================================================================
STATE MACHINE
=============================================================================

    propose ──► proposed
                   │ update_offer (either side)
                   ▼
              negotiating ◄──────────────┐
                   │ confirm (one side)   │ update_offer resets
                   ▼                      │ both confirmations
               confirmed ─────────────────┘
                   │ other side confirms
                   ▼
               [execute] ──► completed
                   │
      cancel / timeout / re-validation failure
                   ▼
           cancelled | failed

``completed``, ``cancelled`` and ``failed`` are terminal: the trade leaves
the active map, enters the bounded history and can never change again.

=============================================================================
INVARIANTS
=============================================================================

- A player appears in at most one active trade; the player index maps both
  participants of every active trade to its id.
- Any offer update clears both confirmations.
- Execution happens only when both sides confirmed AND both offers still
  validate against freshly read player records.
- A completed trade conserves every item count and the penny total across
  the two participants.

=============================================================================
CONCURRENCY
=============================================================================

Every mutation holds the per-player ``asyncio.Lock`` of both participants,
acquired in lexicographic id order. The commit reads both players, validates,
computes both new records and writes them while holding the locks, so two
commits touching the same player never interleave. If the second write fails
the first player is written back to its original record.
=============================================================================
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator, Callable
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from enum import StrEnum

from commons_server.config import TradeSettings
from commons_server.core.bus import EventBus
from commons_server.core.clock import MS_PER_MINUTE, Clock, IdGenerator
from commons_server.core.events import Events
from commons_server.core.results import ErrorKind, Result
from commons_server.players.store import PlayerStore
from commons_server.trade.offers import Offer, apply_exchange, validate_offer

logger = logging.getLogger(__name__)

TRADE_TIMEOUT_REASON = "Trade timeout"
PLAYER_MISSING_REASON = "Player not found"
EXECUTION_FAILED_REASON = "Trade execution failed"


class TradeStatus(StrEnum):
    PROPOSED = "proposed"
    NEGOTIATING = "negotiating"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TradeStatus.COMPLETED, TradeStatus.CANCELLED, TradeStatus.FAILED})


@dataclass(slots=True)
class Trade:
    id: str
    from_id: str
    to_id: str
    from_name: str
    to_name: str
    created_at: int
    updated_at: int
    from_offer: Offer = field(default_factory=Offer)
    to_offer: Offer = field(default_factory=Offer)
    from_confirmed: bool = False
    to_confirmed: bool = False
    status: TradeStatus = TradeStatus.PROPOSED
    completed_at: int | None = None
    cancelled_by: str | None = None
    failure_reason: str | None = None

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal

    def involves(self, player_id: str) -> bool:
        return player_id in (self.from_id, self.to_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from_id": self.from_id,
            "to_id": self.to_id,
            "from_name": self.from_name,
            "to_name": self.to_name,
            "from_offer": self.from_offer.to_dict(),
            "to_offer": self.to_offer.to_dict(),
            "from_confirmed": self.from_confirmed,
            "to_confirmed": self.to_confirmed,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "cancelled_by": self.cancelled_by,
            "failure_reason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Trade:
        return cls(
            id=data["id"],
            from_id=data["from_id"],
            to_id=data["to_id"],
            from_name=data.get("from_name", data["from_id"]),
            to_name=data.get("to_name", data["to_id"]),
            created_at=data["created_at"],
            updated_at=data.get("updated_at", data["created_at"]),
            from_offer=Offer.from_dict(data.get("from_offer")),
            to_offer=Offer.from_dict(data.get("to_offer")),
            from_confirmed=data.get("from_confirmed", False),
            to_confirmed=data.get("to_confirmed", False),
            status=TradeStatus(data.get("status", TradeStatus.PROPOSED)),
            completed_at=data.get("completed_at"),
            cancelled_by=data.get("cancelled_by"),
            failure_reason=data.get("failure_reason"),
        )


class TradeCoordinator:
    """Owns active trades, the player index and the trade history."""

    def __init__(
        self,
        players: PlayerStore,
        bus: EventBus,
        clock: Clock,
        ids: IdGenerator,
        settings: TradeSettings | None = None,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self.players = players
        self.bus = bus
        self.clock = clock
        self.ids = ids
        self.settings = settings or TradeSettings()
        self._on_change = on_change
        self._active: dict[str, Trade] = {}
        self._index: dict[str, str] = {}
        self._history: deque[Trade] = deque(maxlen=self.settings.history_limit)
        self._locks: dict[str, asyncio.Lock] = {}

    # =========================================================================
    # INTERNAL
    # =========================================================================

    @asynccontextmanager
    async def _locked(self, *player_ids: str) -> AsyncIterator[None]:
        """Hold the locks of ``player_ids`` in lexicographic order."""
        async with AsyncExitStack() as stack:
            for player_id in sorted(set(player_ids)):
                lock = self._locks.setdefault(player_id, asyncio.Lock())
                await stack.enter_async_context(lock)
            yield

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    def _publish(self, trade: Trade) -> None:
        self.bus.emit(
            Events.TRADE_UPDATED,
            {"trade": trade.to_dict(), "recipients": [trade.from_id, trade.to_id]},
            source="trade",
        )
        self._changed()

    def _finish(self, trade: Trade, status: TradeStatus, reason: str | None = None) -> None:
        """Move ``trade`` into a terminal state and out of the active map."""
        now = self.clock.now_ms()
        trade.status = status
        trade.updated_at = now
        if status is TradeStatus.COMPLETED:
            trade.completed_at = now
        if reason is not None:
            trade.failure_reason = reason

        self._active.pop(trade.id, None)
        for player_id in (trade.from_id, trade.to_id):
            if self._index.get(player_id) == trade.id:
                del self._index[player_id]
        self._history.append(trade)
        logger.info("Trade %s %s%s", trade.id, status.value, f" ({reason})" if reason else "")
        self._publish(trade)

    def _lookup(self, player_id: str, trade_id: str) -> Result[Trade]:
        trade = self._active.get(trade_id)
        if trade is None:
            finished = next((t for t in self._history if t.id == trade_id), None)
            if finished is None:
                return Result.failure(ErrorKind.NOT_FOUND, "Trade not found")
            if not finished.involves(player_id):
                return Result.failure(ErrorKind.NOT_IN_THIS_TRADE)
            return Result.failure(ErrorKind.TERMINAL_STATE, f"Trade is already {finished.status.value}")
        if not trade.involves(player_id):
            return Result.failure(ErrorKind.NOT_IN_THIS_TRADE)
        return Result.success(trade)

    def _still_active(self, trade: Trade) -> Result[Trade]:
        """Re-check after awaiting the locks; another task may have finished the trade."""
        if trade.id not in self._active:
            return Result.failure(ErrorKind.TERMINAL_STATE, f"Trade is already {trade.status.value}")
        return Result.success(trade)

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def propose(self, from_id: str, to_id: str, offer: Offer | None = None) -> Result[Trade]:
        """Open a trade from ``from_id`` to ``to_id`` with an initial offer."""
        offer = offer or Offer()
        if from_id == to_id:
            return Result.failure(ErrorKind.VALIDATION_FAILED, "You cannot trade with yourself")

        async with self._locked(from_id, to_id):
            from_player = await self.players.get_player(from_id)
            to_player = await self.players.get_player(to_id)
            if from_player is None or to_player is None:
                return Result.failure(ErrorKind.PLAYER_NOT_FOUND)
            if from_id in self._index:
                return Result.failure(ErrorKind.ALREADY_IN_TRADE, "You are already in an active trade")
            if to_id in self._index:
                return Result.failure(ErrorKind.ALREADY_IN_TRADE, "Target player is already in a trade")

            problem = validate_offer(from_player, offer)
            if problem:
                return Result.failure(ErrorKind.VALIDATION_FAILED, problem)

            now = self.clock.now_ms()
            trade = Trade(
                id=self.ids.new_id(),
                from_id=from_id,
                to_id=to_id,
                from_name=from_player.username,
                to_name=to_player.username,
                created_at=now,
                updated_at=now,
                from_offer=offer,
            )
            self._active[trade.id] = trade
            self._index[from_id] = trade.id
            self._index[to_id] = trade.id
            logger.info("Trade %s proposed: %s -> %s", trade.id, from_id, to_id)
            self._publish(trade)
            return Result.success(trade)

    async def update_offer(self, player_id: str, trade_id: str, offer: Offer) -> Result[Trade]:
        """Replace ``player_id``'s side of the trade. Clears both confirmations."""
        found = self._lookup(player_id, trade_id)
        if not found.ok:
            return found
        trade = found.value

        async with self._locked(trade.from_id, trade.to_id):
            check = self._still_active(trade)
            if not check.ok:
                return check

            player = await self.players.get_player(player_id)
            if player is None:
                return Result.failure(ErrorKind.PLAYER_NOT_FOUND)
            problem = validate_offer(player, offer)
            if problem:
                return Result.failure(ErrorKind.VALIDATION_FAILED, problem)

            if player_id == trade.from_id:
                trade.from_offer = offer
            else:
                trade.to_offer = offer
            trade.from_confirmed = False
            trade.to_confirmed = False
            trade.status = TradeStatus.NEGOTIATING
            trade.updated_at = self.clock.now_ms()
            self._publish(trade)
            return Result.success(trade)

    async def confirm(self, player_id: str, trade_id: str) -> Result[Trade]:
        """
        Confirm ``player_id``'s side. The second confirmation executes the trade.

        Returns:
            The trade in ``confirmed`` or ``completed`` state. When commit-time
            validation fails the trade ends ``failed`` and a
            ``VALIDATION_FAILED`` result carries the same reason both
            participants receive on the bus.
        """
        found = self._lookup(player_id, trade_id)
        if not found.ok:
            return found
        trade = found.value

        async with self._locked(trade.from_id, trade.to_id):
            check = self._still_active(trade)
            if not check.ok:
                return check

            if player_id == trade.from_id:
                trade.from_confirmed = True
            else:
                trade.to_confirmed = True
            trade.updated_at = self.clock.now_ms()

            if trade.from_confirmed and trade.to_confirmed:
                return await self._execute(trade)

            trade.status = TradeStatus.CONFIRMED
            self._publish(trade)
            return Result.success(trade)

    async def _execute(self, trade: Trade) -> Result[Trade]:
        """Commit both offers. Caller holds both player locks."""
        from_player = await self.players.get_player(trade.from_id)
        to_player = await self.players.get_player(trade.to_id)
        if from_player is None or to_player is None:
            self._finish(trade, TradeStatus.FAILED, PLAYER_MISSING_REASON)
            return Result.failure(ErrorKind.PLAYER_NOT_FOUND)

        problem = validate_offer(from_player, trade.from_offer) or validate_offer(
            to_player, trade.to_offer
        )
        if problem:
            self._finish(trade, TradeStatus.FAILED, problem)
            return Result.failure(ErrorKind.VALIDATION_FAILED, problem)

        new_from, new_to = apply_exchange(from_player, trade.from_offer, to_player, trade.to_offer)

        first, second = sorted(
            [(from_player, new_from), (to_player, new_to)], key=lambda pair: pair[0].id
        )
        try:
            await self.players.update_player(first[0].id, first[1])
        except Exception:
            logger.error("Trade %s: writing %s failed", trade.id, first[0].id, exc_info=True)
            self._finish(trade, TradeStatus.FAILED, EXECUTION_FAILED_REASON)
            return Result.failure(ErrorKind.INTERNAL_ERROR, EXECUTION_FAILED_REASON)

        try:
            await self.players.update_player(second[0].id, second[1])
        except Exception:
            logger.error("Trade %s: writing %s failed, rolling back", trade.id, second[0].id, exc_info=True)
            try:
                await self.players.update_player(first[0].id, first[0])
            except Exception:
                logger.critical(
                    "Trade %s: rollback of %s failed; record needs manual repair",
                    trade.id,
                    first[0].id,
                    exc_info=True,
                )
            self._finish(trade, TradeStatus.FAILED, EXECUTION_FAILED_REASON)
            return Result.failure(ErrorKind.INTERNAL_ERROR, EXECUTION_FAILED_REASON)

        self._finish(trade, TradeStatus.COMPLETED)
        return Result.success(trade)

    async def cancel(self, player_id: str, trade_id: str) -> Result[Trade]:
        found = self._lookup(player_id, trade_id)
        if not found.ok:
            return found
        trade = found.value

        async with self._locked(trade.from_id, trade.to_id):
            check = self._still_active(trade)
            if not check.ok:
                return check
            trade.cancelled_by = player_id
            self._finish(trade, TradeStatus.CANCELLED)
            return Result.success(trade)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_player_active_trade(self, player_id: str) -> Trade | None:
        trade_id = self._index.get(player_id)
        return self._active.get(trade_id) if trade_id else None

    def get_trade(self, trade_id: str, player_id: str | None = None) -> Result[Trade]:
        """Look up an active or finished trade. With ``player_id`` it must be a participant."""
        trade = self._active.get(trade_id) or next(
            (t for t in self._history if t.id == trade_id), None
        )
        if trade is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Trade not found")
        if player_id is not None and not trade.involves(player_id):
            return Result.failure(ErrorKind.NOT_IN_THIS_TRADE)
        return Result.success(trade)

    def history(self, player_id: str, limit: int = 20) -> list[Trade]:
        """Finished trades of ``player_id``, newest first."""
        mine = [t for t in self._history if t.involves(player_id)]
        return list(reversed(mine[-limit:])) if limit > 0 else []

    def active_count(self) -> int:
        return len(self._active)

    def index_snapshot(self) -> dict[str, str]:
        return dict(self._index)

    # =========================================================================
    # REAPER
    # =========================================================================

    async def reap_stale(self, now: int | None = None) -> int:
        """
        Fail every active trade idle for longer than the stale timeout.

        Returns:
            Number of trades timed out.
        """
        now = self.clock.now_ms() if now is None else now
        timeout_ms = self.settings.stale_timeout_minutes * MS_PER_MINUTE
        stale = [t for t in self._active.values() if now - t.updated_at > timeout_ms]

        reaped = 0
        for trade in stale:
            async with self._locked(trade.from_id, trade.to_id):
                if trade.id not in self._active or now - trade.updated_at <= timeout_ms:
                    continue
                self._finish(trade, TradeStatus.FAILED, TRADE_TIMEOUT_REASON)
                reaped += 1

        if reaped:
            logger.info("Trade reaper timed out %d stale trades", reaped)
        return reaped

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    def snapshot_active(self) -> dict:
        return {"trades": [t.to_dict() for t in self._active.values()]}

    def snapshot_history(self) -> dict:
        return {"trades": [t.to_dict() for t in self._history]}

    def restore(self, active: dict | None, history: dict | None) -> None:
        """Load both snapshots and rebuild the player index."""
        self._history = deque(
            (Trade.from_dict(t) for t in (history or {}).get("trades", [])),
            maxlen=self.settings.history_limit,
        )
        self._active = {}
        self._index = {}
        for raw in (active or {}).get("trades", []):
            trade = Trade.from_dict(raw)
            if not trade.is_active:
                self._history.append(trade)
                continue
            if trade.from_id in self._index or trade.to_id in self._index:
                logger.warning("Dropping trade %s: a participant is already in another trade", trade.id)
                trade.status = TradeStatus.FAILED
                trade.failure_reason = "Conflicting trade on restore"
                self._history.append(trade)
                continue
            self._active[trade.id] = trade
            self._index[trade.from_id] = trade.id
            self._index[trade.to_id] = trade.id
        logger.info(
            "Restored %d active trades and %d history entries", len(self._active), len(self._history)
        )
