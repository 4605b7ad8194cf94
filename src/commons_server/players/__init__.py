"""Player storage collaborators."""

from commons_server.players.store import (
    InMemoryPlayerStore,
    JsonPlayerStore,
    Player,
    PlayerStore,
    format_currency,
)

__all__ = ["InMemoryPlayerStore", "JsonPlayerStore", "Player", "PlayerStore", "format_currency"]
