"""
Root logger configuration.

Applies the ``[logging]`` settings (level and format) once at process start.
Formats:

    simple    "INFO commons_server.comms.chat: message"
    detailed  timestamp, level, logger name, and line number
    json      one JSON object per line, suitable for log shippers
"""

import json
import logging
import sys

FORMATS = {
    "simple": "%(levelname)s %(name)s: %(message)s",
    "detailed": "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s",
}


class JsonFormatter(logging.Formatter):
    """Render each record as a single-line JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(level: str = "INFO", fmt: str = "detailed") -> None:
    """
    Install a single stderr handler on the root logger.

    Calling this again replaces the previous handler, so the CLI and tests can
    reconfigure freely.

    Args:
        level: Level name such as ``"DEBUG"`` or ``"INFO"``. Unknown names
            fall back to ``INFO``.
        fmt: One of ``"simple"``, ``"detailed"``, ``"json"``.
    """
    handler = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(FORMATS.get(fmt, FORMATS["detailed"])))

    root = logging.getLogger()
    for existing in list(root.handlers):
        if getattr(existing, "_commons_handler", False):
            root.removeHandler(existing)
    handler._commons_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
