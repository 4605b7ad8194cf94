"""
Process and traffic metrics.

The monitor keeps three kinds of data:

- **Counters** for requests, WebSocket messages, database queries and cache
  hits/misses since start (or the last :meth:`PerformanceMonitor.reset_counters`).
- **Latency averages** as exponential moving averages with smoothing
  ``ema_alpha``: ``avg = avg * (1 - alpha) + sample * alpha``.
- **Rolling windows** of the last ``history_size`` samples per metric type
  (``cpu``, ``memory``, ``requests``, ``websockets``, ``database``,
  ``cache``).

Memory and CPU figures come from :mod:`psutil` for the current process.
``heap_used`` is the resident set size and ``heap_total`` the machine's
physical memory, so heap utilisation is the share of RAM this process holds.

Internal errors seen by the boundary adapter are recorded in a bounded error
log so operators can inspect them through ``/metrics``.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass

import psutil

from commons_server.config import MonitorSettings
from commons_server.core.clock import MS_PER_SECOND, Clock, SystemClock

logger = logging.getLogger(__name__)

METRIC_TYPES: tuple[str, ...] = ("cpu", "memory", "requests", "websockets", "database", "cache")
ERROR_LOG_SIZE = 100
_MB = 1024 * 1024


@dataclass(frozen=True, slots=True)
class MemoryReading:
    heap_used: int
    heap_total: int
    rss: int
    external: int

    @property
    def heap_percent(self) -> float:
        return (self.heap_used / self.heap_total * 100) if self.heap_total else 0.0


def _empty_counters() -> dict[str, int]:
    return {
        "total_requests": 0,
        "total_websocket_messages": 0,
        "total_database_queries": 0,
        "total_cache_hits": 0,
        "total_cache_misses": 0,
    }


def _empty_timings() -> dict[str, float]:
    return {
        "avg_request_time": 0.0,
        "avg_websocket_message_time": 0.0,
        "avg_database_query_time": 0.0,
    }


def format_uptime(seconds: float) -> str:
    """Render ``seconds`` as ``"1d 2h 3m 4s"``, omitting leading zero units."""
    seconds = int(seconds)
    days, rest = divmod(seconds, 86_400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    parts.append(f"{secs}s")
    return " ".join(parts)


class PerformanceMonitor:
    """Collects counters, latency averages and periodic process samples."""

    def __init__(
        self,
        settings: MonitorSettings | None = None,
        clock: Clock | None = None,
        process: psutil.Process | None = None,
    ) -> None:
        self.settings = settings or MonitorSettings()
        self.clock = clock or SystemClock()
        self._process = process or psutil.Process()
        self.started_at = self.clock.now_ms()
        self.metrics: dict[str, deque[dict]] = {
            name: deque(maxlen=self.settings.history_size) for name in METRIC_TYPES
        }
        self.counters = _empty_counters()
        self.timings = _empty_timings()
        self._errors: deque[dict] = deque(maxlen=ERROR_LOG_SIZE)
        self.total_errors = 0

    # =========================================================================
    # RECORDING
    # =========================================================================

    def _ema(self, key: str, sample: float) -> None:
        alpha = self.settings.ema_alpha
        self.timings[key] = self.timings[key] * (1 - alpha) + sample * alpha

    def add_metric(self, metric_type: str, data: dict) -> None:
        if metric_type not in self.metrics:
            self.metrics[metric_type] = deque(maxlen=self.settings.history_size)
        self.metrics[metric_type].append(data)

    def track_request(self, duration_ms: float) -> None:
        self.counters["total_requests"] += 1
        self._ema("avg_request_time", duration_ms)
        self.add_metric("requests", {"timestamp": self.clock.now_ms(), "duration": duration_ms})

    def track_websocket_message(self, duration_ms: float) -> None:
        self.counters["total_websocket_messages"] += 1
        self._ema("avg_websocket_message_time", duration_ms)
        self.add_metric("websockets", {"timestamp": self.clock.now_ms(), "duration": duration_ms})

    def track_database_query(self, query: str, duration_ms: float) -> None:
        self.counters["total_database_queries"] += 1
        self._ema("avg_database_query_time", duration_ms)
        self.add_metric(
            "database", {"timestamp": self.clock.now_ms(), "query": query, "duration": duration_ms}
        )

    def track_cache_hit(self) -> None:
        self.counters["total_cache_hits"] += 1

    def track_cache_miss(self) -> None:
        self.counters["total_cache_misses"] += 1

    def record_error(self, source: str, error: BaseException | str) -> None:
        """Keep an internal error for the operator view."""
        self.total_errors += 1
        self._errors.append(
            {
                "timestamp": self.clock.now_ms(),
                "source": source,
                "type": type(error).__name__ if isinstance(error, BaseException) else "str",
                "message": str(error),
            }
        )

    def get_errors(self, limit: int = 20) -> list[dict]:
        return list(self._errors)[-limit:] if limit > 0 else []

    # =========================================================================
    # SAMPLING
    # =========================================================================

    def read_memory(self) -> MemoryReading:
        info = self._process.memory_info()
        return MemoryReading(
            heap_used=info.rss,
            heap_total=psutil.virtual_memory().total,
            rss=info.rss,
            external=info.vms,
        )

    def sample(self) -> None:
        """Record one memory, CPU and cache sample. Called on the sample interval."""
        now = self.clock.now_ms()
        memory = self.read_memory()
        self.add_metric(
            "memory",
            {
                "timestamp": now,
                "heap_used": memory.heap_used,
                "heap_total": memory.heap_total,
                "rss": memory.rss,
                "external": memory.external,
                "heap_used_mb": round(memory.heap_used / _MB, 2),
                "heap_total_mb": round(memory.heap_total / _MB, 2),
            },
        )
        cpu = self._process.cpu_times()
        self.add_metric("cpu", {"timestamp": now, "user": cpu.user, "system": cpu.system})
        self.add_metric("cache", {"timestamp": now, "hit_rate": self.cache_hit_rate()})

    # =========================================================================
    # REPORTING
    # =========================================================================

    def uptime_seconds(self) -> float:
        return (self.clock.now_ms() - self.started_at) / MS_PER_SECOND

    def cache_hit_rate(self) -> float:
        """Cache hit percentage, ``0.0`` before any cache access."""
        hits = self.counters["total_cache_hits"]
        total = hits + self.counters["total_cache_misses"]
        if total == 0:
            return 0.0
        return round(hits / total * 100, 2)

    def get_metric_history(self, metric_type: str, count: int = 10) -> list[dict]:
        history = list(self.metrics.get(metric_type, ()))
        return history[-count:] if count > 0 else []

    def get_current_metrics(self) -> dict:
        memory = self.read_memory()
        uptime = self.uptime_seconds()
        return {
            "timestamp": self.clock.now_ms(),
            "uptime": {"seconds": int(uptime), "formatted": format_uptime(uptime)},
            "memory": {
                "heap_used_mb": round(memory.heap_used / _MB, 2),
                "heap_total_mb": round(memory.heap_total / _MB, 2),
                "rss_mb": round(memory.rss / _MB, 2),
                "external_mb": round(memory.external / _MB, 2),
                "heap_percent": round(memory.heap_percent, 2),
            },
            "counters": dict(self.counters),
            "timings": {key: round(value, 2) for key, value in self.timings.items()},
            "cache": {"hit_rate": self.cache_hit_rate()},
            "errors": {"total": self.total_errors},
        }

    def health_check(self) -> dict:
        """
        Evaluate the health thresholds.

        Returns:
            ``{"healthy": bool, "issues": [str], "metrics": dict}``.
        """
        s = self.settings
        issues = []

        if self.read_memory().heap_percent > s.max_heap_percent:
            issues.append(f"High memory usage (>{s.max_heap_percent:g}%)")
        if self.timings["avg_request_time"] > s.max_request_ms:
            issues.append(f"Slow request times (>{s.max_request_ms:g}ms)")
        if self.timings["avg_websocket_message_time"] > s.max_websocket_ms:
            issues.append(f"Slow WebSocket message processing (>{s.max_websocket_ms:g}ms)")

        accesses = self.counters["total_cache_hits"] + self.counters["total_cache_misses"]
        if accesses > s.min_cache_samples and self.cache_hit_rate() < s.min_cache_hit_percent:
            issues.append(f"Low cache hit rate (<{s.min_cache_hit_percent:g}%)")

        if issues:
            logger.warning("Health check found issues: %s", "; ".join(issues))
        return {"healthy": not issues, "issues": issues, "metrics": self.get_current_metrics()}

    def get_report(self) -> str:
        m = self.get_current_metrics()
        c = m["counters"]
        t = m["timings"]
        lines = [
            "=" * 50,
            "PERFORMANCE REPORT",
            "=" * 50,
            f"Uptime:             {m['uptime']['formatted']}",
            "-" * 50,
            f"Heap used:          {m['memory']['heap_used_mb']} MB",
            f"Heap total:         {m['memory']['heap_total_mb']} MB",
            f"RSS:                {m['memory']['rss_mb']} MB",
            "-" * 50,
            f"Total requests:     {c['total_requests']}",
            f"Avg request time:   {t['avg_request_time']} ms",
            f"WebSocket messages: {c['total_websocket_messages']}",
            f"Avg message time:   {t['avg_websocket_message_time']} ms",
            "-" * 50,
            f"Database queries:   {c['total_database_queries']}",
            f"Avg query time:     {t['avg_database_query_time']} ms",
            "-" * 50,
            f"Cache hits:         {c['total_cache_hits']}",
            f"Cache misses:       {c['total_cache_misses']}",
            f"Cache hit rate:     {m['cache']['hit_rate']}%",
            f"Internal errors:    {m['errors']['total']}",
            "=" * 50,
        ]
        return "\n".join(lines)

    def reset_counters(self) -> None:
        self.counters = _empty_counters()
        self.timings = _empty_timings()
        logger.info("Performance counters reset")
