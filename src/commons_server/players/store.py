"""
Player records as seen by the trade coordinator.

The core only needs a player's currency and inventory, so :class:`Player`
carries just those plus the fields the chat channels scope on. Storage is
behind the async :class:`PlayerStore` protocol:

- :class:`InMemoryPlayerStore` keeps records in a dict (tests, embedding).
- :class:`JsonPlayerStore` keeps one snapshot file per player under
  ``data/players/`` and does its file I/O in a worker thread.

Currency is always integer pennies. :func:`format_currency` renders it for
display with 12 pennies to the shilling.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from commons_server.monitoring.performance import PerformanceMonitor
from commons_server.persistence.snapshots import SnapshotStore

logger = logging.getLogger(__name__)

PENNIES_PER_SHILLING = 12

# 83 shillings 4 pennies, the starting purse of a new character
DEFAULT_STARTING_PENNIES = 83 * PENNIES_PER_SHILLING + 4
DEFAULT_LOCATION = "town-square"

_PLAYER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")


def format_currency(pennies: int) -> str:
    """Render ``pennies`` as shillings and pennies, e.g. ``"83s 4d"``."""
    shillings, rest = divmod(pennies, PENNIES_PER_SHILLING)
    if shillings and rest:
        return f"{shillings}s {rest}d"
    if shillings:
        return f"{shillings}s"
    return f"{rest}d"


def to_pennies(shillings: int, pennies: int = 0) -> int:
    return shillings * PENNIES_PER_SHILLING + pennies


@dataclass(slots=True)
class Player:
    """
    A player's tradeable state.

    Attributes:
        id: Stable player id.
        username: Display name.
        pennies: Purse in pennies, never negative.
        inventory: Item ids; duplicates encode quantity.
        location: Location id, scopes ``local`` chat.
        guild_id: Guild membership, scopes ``guild`` chat.
    """

    id: str
    username: str
    pennies: int = 0
    inventory: list[str] = field(default_factory=list)
    location: str = DEFAULT_LOCATION
    guild_id: str | None = None

    def item_counts(self) -> Counter[str]:
        return Counter(self.inventory)

    def copy(self) -> Player:
        return Player(
            id=self.id,
            username=self.username,
            pennies=self.pennies,
            inventory=list(self.inventory),
            location=self.location,
            guild_id=self.guild_id,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "pennies": self.pennies,
            "inventory": list(self.inventory),
            "location": self.location,
            "guild_id": self.guild_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Player:
        pennies = data.get("pennies", 0)
        # Records written by the older client carry shillings and pennies separately
        if "shillings" in data:
            pennies = to_pennies(int(data["shillings"]), int(pennies))
        return cls(
            id=data["id"],
            username=data.get("username", data["id"]),
            pennies=int(pennies),
            inventory=list(data.get("inventory", [])),
            location=data.get("location", DEFAULT_LOCATION),
            guild_id=data.get("guild_id"),
        )


class PlayerStore(Protocol):
    """What the core needs from player storage."""

    async def get_player(self, player_id: str) -> Player | None: ...

    async def update_player(self, player_id: str, player: Player) -> None: ...

    async def create_player(self, player_id: str, username: str, **fields) -> Player: ...


class InMemoryPlayerStore:
    """Dict-backed store. Returned players are copies; mutate and call update."""

    def __init__(self, players: list[Player] | None = None) -> None:
        self._players: dict[str, Player] = {p.id: p.copy() for p in players or []}

    async def get_player(self, player_id: str) -> Player | None:
        player = self._players.get(player_id)
        return player.copy() if player is not None else None

    async def update_player(self, player_id: str, player: Player) -> None:
        if player_id not in self._players:
            raise KeyError(f"Player {player_id} not found")
        self._players[player_id] = player.copy()

    async def create_player(self, player_id: str, username: str, **fields) -> Player:
        fields.setdefault("pennies", DEFAULT_STARTING_PENNIES)
        player = Player(id=player_id, username=username, **fields)
        self._players[player_id] = player.copy()
        return player

    def __contains__(self, player_id: str) -> bool:
        return player_id in self._players

    def __len__(self) -> int:
        return len(self._players)


class JsonPlayerStore:
    """
    One snapshot file per player under ``<data_dir>/players/``.

    Records are cached after the first read. Writes go to disk before the
    cache is updated, so a failed write leaves the cached record untouched.

    With a ``monitor``, every lookup counts as a cache hit or miss and every
    file read or write is timed as a database query.
    """

    def __init__(self, data_dir: Path | str, monitor: PerformanceMonitor | None = None) -> None:
        self._snapshots = SnapshotStore(data_dir)
        self._cache: dict[str, Player] = {}
        self.monitor = monitor

    async def _io(self, query: str, func, *args):
        started = time.perf_counter()
        try:
            return await asyncio.to_thread(func, *args)
        finally:
            if self.monitor is not None:
                self.monitor.track_database_query(query, (time.perf_counter() - started) * 1000)

    @staticmethod
    def _name(player_id: str) -> str:
        if not _PLAYER_ID_PATTERN.match(player_id):
            raise ValueError(f"Invalid player id: {player_id!r}")
        return f"players/{player_id}.json"

    async def get_player(self, player_id: str) -> Player | None:
        cached = self._cache.get(player_id)
        if self.monitor is not None:
            if cached is not None:
                self.monitor.track_cache_hit()
            else:
                self.monitor.track_cache_miss()
        if cached is not None:
            return cached.copy()
        try:
            name = self._name(player_id)
        except ValueError:
            return None
        data = await self._io("read player", self._snapshots.read, name)
        if data is None:
            return None
        player = Player.from_dict(data)
        self._cache[player_id] = player
        return player.copy()

    async def update_player(self, player_id: str, player: Player) -> None:
        name = self._name(player_id)
        record = player.copy()
        await self._io("write player", self._snapshots.write, name, record.to_dict())
        self._cache[player_id] = record

    async def create_player(self, player_id: str, username: str, **fields) -> Player:
        fields.setdefault("pennies", DEFAULT_STARTING_PENNIES)
        player = Player(id=player_id, username=username, **fields)
        await self.update_player(player_id, player)
        logger.info("Created player record %s (%s)", player_id, username)
        return player.copy()

    def cached_count(self) -> int:
        return len(self._cache)
