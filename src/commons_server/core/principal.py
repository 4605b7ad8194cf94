"""The acting identity passed into every service call."""

from __future__ import annotations

from dataclasses import dataclass

MODERATOR_ROLES = frozenset({"moderator", "admin", "superuser"})


@dataclass(frozen=True, slots=True)
class Principal:
    """
    An authenticated user as seen by the services.

    The boundary adapter builds one per session; services never look the
    user up themselves.

    Attributes:
        user_id: Stable player id. Rate limits and moderation key on this.
        name: Display name copied onto messages and topics.
        role: Role string (player, moderator, admin, superuser).
        location: Current location id. Scopes the ``local`` chat channel.
        guild_id: Guild membership, or ``None``. Scopes the ``guild`` channel.
        ip: Remote address of the session, when known.
    """

    user_id: str
    name: str
    role: str = "player"
    location: str = ""
    guild_id: str | None = None
    ip: str | None = None

    @property
    def is_moderator(self) -> bool:
        return self.role.lower() in MODERATOR_ROLES
