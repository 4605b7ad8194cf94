"""Root, health and metrics endpoints.

``/`` reports the API identity and version, ``/health`` runs the performance
monitor's health check, and ``/metrics`` returns the full operator view. The
metrics endpoint needs a session whose role holds ``VIEW_METRICS``.
"""

from fastapi import APIRouter, HTTPException

from commons_server import __version__
from commons_server.api.adapter import EventDispatcher
from commons_server.api.hub import ConnectionHub
from commons_server.api.permissions import Permission, has_permission
from commons_server.monitoring.performance import METRIC_TYPES


def router(dispatcher: EventDispatcher, hub: ConnectionHub) -> APIRouter:
    """Build the health router."""
    api = APIRouter()
    services = dispatcher.services

    @api.get("/")
    async def root():
        """API identity and version."""
        return {"message": "Commons Server API", "version": __version__}

    @api.get("/health")
    async def health_check():
        """Liveness plus the monitor's threshold checks."""
        report = services.monitor.health_check()
        return {
            "status": "ok" if report["healthy"] else "degraded",
            "healthy": report["healthy"],
            "issues": report["issues"],
            "active_sessions": dispatcher.sessions.count(),
            "connections": hub.count(),
        }

    @api.get("/metrics")
    async def metrics(session_id: str = "", count: int = 10):
        """Counters, averages, recent samples and the internal error log."""
        principal = dispatcher.effective_principal(dispatcher.sessions.resolve(session_id))
        if not has_permission(principal.role, Permission.VIEW_METRICS):
            raise HTTPException(
                status_code=403,
                detail=f"Insufficient permissions. Required: {Permission.VIEW_METRICS.value}",
            )

        monitor = services.monitor
        return {
            "metrics": monitor.get_current_metrics(),
            "health": monitor.health_check()["issues"],
            "history": {name: monitor.get_metric_history(name, count) for name in METRIC_TYPES},
            "errors": monitor.get_errors(),
            "trades": {"active": services.trades.active_count()},
            "connections": hub.count(),
            "pending_snapshots": sorted(services.writer.pending()),
        }

    return api
