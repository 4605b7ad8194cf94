"""
Session management for the embedding game server.

The game server authenticates its players, opens a session here for each one
and hands the returned id to the client. Later it moves the session when the
player changes location or guild, and closes it on logout.

Every route needs the shared secret from ``[security] admin_token`` in the
``X-Admin-Token`` header (or as a bearer token). With no token configured the
routes refuse every caller.
"""

import logging
import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, status

from commons_server.api.adapter import EventDispatcher
from commons_server.api.models import OpenSessionRequest, UpdateSessionRequest
from commons_server.config import SecuritySettings

logger = logging.getLogger(__name__)


def _resolve_token(x_admin_token: str | None, authorization: str | None) -> str | None:
    if x_admin_token:
        return x_admin_token
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1]
    return None


def router(dispatcher: EventDispatcher, security: SecuritySettings) -> APIRouter:
    """Build the sessions router."""
    api = APIRouter(prefix="/sessions", tags=["sessions"])
    sessions = dispatcher.sessions
    moderation = dispatcher.services.moderation

    async def require_admin_token(
        x_admin_token: str | None = Header(default=None, alias="X-Admin-Token"),
        authorization: str | None = Header(default=None, alias="Authorization"),
    ) -> None:
        if not security.admin_token:
            raise HTTPException(status.HTTP_403_FORBIDDEN, detail="Session management is disabled")
        provided = _resolve_token(x_admin_token, authorization)
        if provided is None or not secrets.compare_digest(provided, security.admin_token):
            raise HTTPException(status.HTTP_403_FORBIDDEN, detail="Invalid admin token")

    guarded = [Depends(require_admin_token)]

    @api.post("", status_code=status.HTTP_201_CREATED, dependencies=guarded)
    async def open_session(body: OpenSessionRequest):
        """Register a logged-in player. Banned users are refused."""
        if moderation.is_banned(body.user_id):
            raise HTTPException(status.HTTP_403_FORBIDDEN, detail="User is banned")
        session_id = sessions.open(
            body.user_id,
            body.name,
            role=body.role,
            location=body.location,
            guild_id=body.guild_id,
        )
        logger.info("Opened session for %s (%s)", body.user_id, body.role)
        return {"session_id": session_id, "user_id": body.user_id}

    @api.patch("/{session_id}", dependencies=guarded)
    async def update_session(session_id: str, body: UpdateSessionRequest):
        """Move a session to another location or guild, or change its role."""
        changes = body.model_dump(exclude_unset=True)
        for key in ("location", "role"):
            if key in changes and changes[key] is None:
                del changes[key]
        principal = sessions.update(session_id, **changes)
        if principal is None:
            raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Session not found")
        return {
            "user_id": principal.user_id,
            "role": principal.role,
            "location": principal.location,
            "guild_id": principal.guild_id,
        }

    @api.delete("/{session_id}", dependencies=guarded)
    async def close_session(session_id: str):
        """End a session. Open WebSockets are refused on their next frame."""
        if not sessions.close(session_id):
            raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Session not found")
        return {"closed": True}

    return api
