"""``POST /events``: one wire event per HTTP request."""

from fastapi import APIRouter, Request

from commons_server.api.adapter import EventDispatcher
from commons_server.api.models import EventRequest, EventResponse


def router(dispatcher: EventDispatcher) -> APIRouter:
    """Build the events router around the dispatcher."""
    api = APIRouter()

    @api.post("/events", response_model=EventResponse)
    async def post_event(body: EventRequest, request: Request):
        """
        Dispatch a wire event on behalf of the session's principal.

        Service refusals are returned as ``{"ok": false, ...}`` with status
        200; only an unknown session is an HTTP error (401).
        """
        ip = request.client.host if request.client else None
        principal = dispatcher.sessions.resolve(body.session_id, ip=ip)
        return await dispatcher.dispatch(principal, body.type, body.payload)

    return api
