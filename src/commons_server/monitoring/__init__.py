"""Performance monitoring."""

from commons_server.monitoring.performance import PerformanceMonitor, format_uptime

__all__ = ["PerformanceMonitor", "format_uptime"]
