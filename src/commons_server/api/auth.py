"""
Session management and principal resolution.

Player authentication lives in the game server that embeds this service. It
registers each logged-in user with :meth:`SessionRegistry.open` and hands
the returned session id to the client. Every inbound request carries that id;
the registry turns it into a :class:`~commons_server.core.principal.Principal`
with the server-side role, location and guild.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace

from fastapi import HTTPException

from commons_server.core.principal import Principal


@dataclass
class Session:
    session_id: str
    principal: Principal
    created_at: int
    last_seen: int


class SessionRegistry:
    """In-process map of session id to principal."""

    def __init__(self, clock) -> None:
        self.clock = clock
        self._sessions: dict[str, Session] = {}

    def open(
        self,
        user_id: str,
        name: str,
        role: str = "player",
        location: str = "",
        guild_id: str | None = None,
        session_id: str | None = None,
    ) -> str:
        """
        Register a logged-in user and return the session id.

        Raises:
            ValueError: ``user_id`` is empty or contains ``":"``.
        """
        if not user_id or ":" in user_id:
            raise ValueError(f"Invalid user id: {user_id!r}")
        session_id = session_id or str(uuid.uuid4())
        now = self.clock.now_ms()
        principal = Principal(user_id, name, role=role, location=location, guild_id=guild_id)
        self._sessions[session_id] = Session(session_id, principal, now, now)
        return session_id

    def close(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def close_user(self, user_id: str) -> int:
        """End every session of ``user_id``. Used when a user is banned."""
        doomed = [sid for sid, s in self._sessions.items() if s.principal.user_id == user_id]
        for sid in doomed:
            del self._sessions[sid]
        return len(doomed)

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def update(self, session_id: str, **changes) -> Principal | None:
        """Update location, guild or role of a live session."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        session.principal = replace(session.principal, **changes)
        return session.principal

    def role_of(self, user_id: str) -> str:
        """Role of any live session of ``user_id``, ``"player"`` if none."""
        for session in self._sessions.values():
            if session.principal.user_id == user_id:
                return session.principal.role
        return "player"

    def user_ids(self) -> set[str]:
        return {s.principal.user_id for s in self._sessions.values()}

    def count(self) -> int:
        return len(self._sessions)

    def resolve(self, session_id: str | None, ip: str | None = None) -> Principal:
        """
        Return the principal for ``session_id``.

        Raises:
            HTTPException(401): Unknown or missing session.
        """
        session = self._sessions.get(session_id or "")
        if session is None:
            raise HTTPException(status_code=401, detail="Invalid or expired session")
        session.last_seen = self.clock.now_ms()
        if ip is not None and session.principal.ip != ip:
            session.principal = replace(session.principal, ip=ip)
        return session.principal
