"""
Route registration entry point for the FastAPI application.

Keeps the public ``register_routes(app, dispatcher, hub, security)`` API in
one place while the implementation lives in focused router modules.
"""

from fastapi import FastAPI

from commons_server.api.adapter import EventDispatcher
from commons_server.api.hub import ConnectionHub
from commons_server.api.routes import events, health, sessions, ws
from commons_server.config import SecuritySettings


def register_routes(
    app: FastAPI,
    dispatcher: EventDispatcher,
    hub: ConnectionHub,
    security: SecuritySettings,
) -> None:
    """Register all API routes with the FastAPI app."""
    app.include_router(health.router(dispatcher, hub))
    app.include_router(sessions.router(dispatcher, security))
    app.include_router(events.router(dispatcher))
    app.include_router(ws.router(dispatcher, hub))
