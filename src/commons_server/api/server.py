"""
FastAPI application for the commons server.

:func:`create_app` builds the application around one service graph:

- CORS middleware configured from ``[security]``, so a browser game client
  on an allowed origin can connect
- a request middleware that refuses banned addresses with 403 and feeds
  every request duration to the performance monitor
- the event dispatcher, connection hub and session registry, stored on
  ``app.state``
- background jobs started and stopped by the lifespan, which also flushes
  every dirty snapshot on shutdown

The embedding game server opens sessions through ``POST /sessions`` with the
shared admin token, or directly through ``app.state.sessions`` when it runs
in the same process.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from commons_server import __version__
from commons_server.api.adapter import EventDispatcher
from commons_server.api.auth import SessionRegistry
from commons_server.api.hub import ConnectionHub
from commons_server.api.routes.register import register_routes
from commons_server.config import SecuritySettings, config
from commons_server.core.container import Services, build_services
from commons_server.core.scheduler import BackgroundJobs

logger = logging.getLogger(__name__)


def create_app(
    services: Services | None = None,
    sessions: SessionRegistry | None = None,
    run_jobs: bool = True,
    security: SecuritySettings | None = None,
) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        services: Service graph. Defaults to :func:`build_services` with the
            global configuration.
        sessions: Session registry shared with the embedding game server.
        run_jobs: Start reapers, sampling and snapshot flushing in the
            lifespan. Tests usually turn this off.
        security: CORS and admin token settings. Defaults to the global
            ``[security]`` section.
    """
    services = services or build_services()
    security = security or config.security
    sessions = sessions or SessionRegistry(services.clock)
    dispatcher = EventDispatcher(services, sessions)
    hub = ConnectionHub(services.bus, sessions)
    jobs = BackgroundJobs(services)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_jobs:
            await jobs.start()
        logger.info("Commons server %s ready", __version__)
        yield
        hub.close()
        if run_jobs:
            await jobs.stop()
        else:
            services.writer.flush_all()
        logger.info("Commons server stopped")

    app = FastAPI(title="Commons Server", version=__version__, lifespan=lifespan)

    # ========================================================================
    # MIDDLEWARE
    # ========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=security.cors_origins,
        allow_credentials=security.cors_allow_credentials,
        allow_methods=security.cors_allow_methods,
        allow_headers=security.cors_allow_headers,
    )

    @app.middleware("http")
    async def guard_and_time(request: Request, call_next):
        ip = request.client.host if request.client else None
        if services.moderation.is_ip_banned(ip):
            logger.warning("Refused request from banned address %s", ip)
            return JSONResponse(status_code=403, content={"detail": "Your address is banned"})

        started = time.perf_counter()
        response = await call_next(request)
        services.monitor.track_request((time.perf_counter() - started) * 1000)
        return response

    app.state.services = services
    app.state.sessions = sessions
    app.state.dispatcher = dispatcher
    app.state.hub = hub
    app.state.jobs = jobs

    register_routes(app, dispatcher, hub, security)
    return app
