"""Commons Server: chat, mail, forum, trading and monitoring for the game.

The server owns the three subsystems where the game's consistency lives:

- ``commons_server.comms``: chat channels, direct messages, mail and the forum,
  gated by rate limiting, content filtering and moderation.
- ``commons_server.trade``: the two-party trade state machine with atomic
  item/currency exchange against the player store.
- ``commons_server.monitoring``: process and traffic metrics with a health
  report.

Version Management
------------------
``__version__`` is read from the installed package metadata at import time.
The single source of truth is the ``version`` field in ``pyproject.toml``.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__: str = version("commons-server")
except PackageNotFoundError:
    __version__ = "0.1.0"
