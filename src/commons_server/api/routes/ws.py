"""
WebSocket endpoint: ``/ws?session_id=...``.

Inbound frames are ``{"type", "payload", "requestId"?}`` and go through the
same dispatcher as ``POST /events``; the response echoes ``requestId``.
Outbound bus events arrive as ``{"type", "data"}``. Responses and events share
one queue per connection, so the client sees them in order.

Unknown sessions, banned users and banned addresses are closed with 1008.
"""

import asyncio
import logging

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from commons_server.api.adapter import EventDispatcher
from commons_server.api.hub import CLOSE, POLICY_VIOLATION, Connection, ConnectionHub
from commons_server.api.models import WebSocketFrame
from commons_server.core.results import ErrorKind

logger = logging.getLogger(__name__)


async def _pump(websocket: WebSocket, conn: Connection) -> None:
    while True:
        frame = await conn.queue.get()
        if frame is CLOSE:
            await websocket.close(code=conn.close_code)
            return
        await websocket.send_json(frame)


def _bad_frame(detail: str) -> dict:
    return {
        "ok": False,
        "event": None,
        "error": {
            "code": ErrorKind.VALIDATION_FAILED.code,
            "message": detail,
            "detail": detail,
        },
    }


def router(dispatcher: EventDispatcher, hub: ConnectionHub) -> APIRouter:
    """Build the WebSocket router."""
    api = APIRouter()
    sessions = dispatcher.sessions
    moderation = dispatcher.services.moderation

    async def _read(websocket: WebSocket, conn: Connection, ip: str | None) -> None:
        while True:
            text = await websocket.receive_text()
            try:
                frame = WebSocketFrame.model_validate_json(text)
            except ValidationError as exc:
                await conn.queue.put(_bad_frame(f"Malformed frame: {exc.errors()[0].get('msg')}"))
                continue

            try:
                principal = sessions.resolve(conn.session_id, ip=ip)
            except HTTPException:
                await websocket.close(code=POLICY_VIOLATION)
                return

            response = await dispatcher.dispatch(principal, frame.type, frame.payload)
            if frame.request_id is not None:
                response["requestId"] = frame.request_id
            await conn.queue.put(response)

    @api.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, session_id: str = ""):
        ip = websocket.client.host if websocket.client else None
        session = sessions.get(session_id)
        if session is None:
            await websocket.close(code=POLICY_VIOLATION)
            return
        user_id = session.principal.user_id
        if moderation.is_banned(user_id) or moderation.is_ip_banned(ip):
            logger.warning("Refused WebSocket for banned %s from %s", user_id, ip)
            await websocket.close(code=POLICY_VIOLATION)
            return

        await websocket.accept()
        conn = hub.connect(session_id, user_id)
        reader = asyncio.create_task(_read(websocket, conn, ip))
        writer = asyncio.create_task(_pump(websocket, conn))
        try:
            done, pending = await asyncio.wait({reader, writer}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            for task in done:
                exc = task.exception()
                if exc is not None and not isinstance(exc, WebSocketDisconnect):
                    logger.error("WebSocket task failed for %s", user_id, exc_info=exc)
        finally:
            hub.disconnect(conn)

    return api
