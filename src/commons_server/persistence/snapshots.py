"""Whole-file JSON snapshots for the in-process services.

Overview
--------
Each service keeps its state in memory and periodically writes a complete
snapshot to one JSON file under the data directory::

    data/chat-history.json
    data/dms.json
    data/mail.json
    data/forum.json
    data/moderation.json
    data/trades/active-trades.json
    data/trades/trade-history.json
    data/players/<player_id>.json

A snapshot is never patched in place. Writers serialise the full state to a
temporary file in the same directory and ``os.replace`` it over the old one,
so a reader sees either the previous snapshot or the new one, never a torn
file.

Envelope format
---------------
Every file is a JSON object::

    {
      "name":           "mail.json",
      "saved_at":       "2026-02-27T14:23:01.452345+00:00",
      "schema_version": "1.0",
      "data":           { ... service snapshot ... },
      "_checksum":      "sha256:b94f3e..."
    }

``_checksum`` covers every other field serialised with ``sort_keys=True``.
:meth:`SnapshotStore.read` refuses a file whose checksum does not match.

Concurrency
-----------
``fcntl.flock(LOCK_EX)`` on a sibling ``.lock`` file is held around the
temp-write and rename. This serialises writers inside the process (the
debounced writer and the player store may run in worker threads) and across
processes on the same host (``commons-server reap`` against a live data
directory).

``fcntl`` is POSIX-only.

Failure isolation
-----------------
:exc:`SnapshotWriteError` is raised on filesystem failure. The
:class:`DebouncedSnapshotWriter` catches it, logs a warning and keeps the
snapshot dirty so the next flush retries.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import logging
import os
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from commons_server.core.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = "1.0"


# ── Exceptions ────────────────────────────────────────────────────────────────


class SnapshotError(Exception):
    """Base class for snapshot failures."""


class SnapshotWriteError(SnapshotError):
    """Raised when a snapshot cannot be written.

    Callers on a background path must catch this, log a warning and carry
    on. In-memory state is unaffected; only durability is delayed.
    """


class SnapshotReadError(SnapshotError):
    """Raised when a snapshot exists but is unreadable or fails its checksum."""


# ── Result type ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SnapshotVerifyResult:
    """Outcome of :meth:`SnapshotStore.verify`.

    Attributes:
        status: ``"ok"``, ``"empty"`` (no file) or ``"corrupt"``.
        saved_at: ISO timestamp recorded in the envelope, when readable.
        error_detail: Why the file is corrupt, otherwise ``None``.
    """

    status: Literal["ok", "empty", "corrupt"]
    saved_at: str | None
    error_detail: str | None


# ── Store ─────────────────────────────────────────────────────────────────────


class SnapshotStore:
    """Reads and writes named snapshots below ``root``.

    Names are relative paths such as ``"mail.json"`` or
    ``"trades/active-trades.json"``.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def path_for(self, name: str) -> Path:
        path = (self.root / name).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Snapshot name escapes the data directory: {name!r}")
        return path

    def exists(self, name: str) -> bool:
        return self.path_for(name).exists()

    def write(self, name: str, data: Any) -> Path:
        """Atomically replace snapshot ``name`` with ``data``.

        Args:
            name: Relative snapshot path.
            data: JSON-serialisable payload.

        Returns:
            The path written.

        Raises:
            SnapshotWriteError: If serialisation or any filesystem step fails.
        """
        body = {
            "name": name,
            "saved_at": datetime.now(UTC).isoformat(),
            "schema_version": _SCHEMA_VERSION,
            "data": data,
        }
        try:
            envelope = {**body, "_checksum": f"sha256:{_compute_checksum(body)}"}
            text = json.dumps(envelope, ensure_ascii=False, indent=2, sort_keys=True)
        except (TypeError, ValueError) as exc:
            raise SnapshotWriteError(f"Snapshot {name!r} is not JSON-serialisable: {exc}") from exc

        path = self.path_for(name)
        try:
            _replace_locked(path, text)
        except OSError as exc:
            raise SnapshotWriteError(f"Failed to write snapshot {name!r} at {path}: {exc}") from exc

        logger.debug("snapshot: wrote %s (%d bytes)", name, len(text))
        return path

    def read(self, name: str) -> Any | None:
        """Return the payload of snapshot ``name``, or ``None`` if it does not exist.

        Raises:
            SnapshotReadError: If the file is unreadable, malformed or fails
                its checksum.
        """
        path = self.path_for(name)
        if not path.exists():
            return None
        envelope = self._load_envelope(path)
        return envelope["data"]

    def verify(self, name: str) -> SnapshotVerifyResult:
        """Check snapshot ``name`` without raising."""
        path = self.path_for(name)
        if not path.exists():
            return SnapshotVerifyResult(status="empty", saved_at=None, error_detail=None)
        try:
            envelope = self._load_envelope(path)
        except SnapshotReadError as exc:
            return SnapshotVerifyResult(status="corrupt", saved_at=None, error_detail=str(exc))
        return SnapshotVerifyResult(status="ok", saved_at=envelope.get("saved_at"), error_detail=None)

    def quarantine(self, name: str) -> Path | None:
        """Move an unreadable snapshot aside so a fresh one can be written."""
        path = self.path_for(name)
        if not path.exists():
            return None
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
        target = path.with_name(f"{path.name}.corrupt-{stamp}")
        os.replace(path, target)
        logger.critical("snapshot: moved unreadable %s to %s", name, target.name)
        return target

    def delete(self, name: str) -> bool:
        path = self.path_for(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    @staticmethod
    def _load_envelope(path: Path) -> dict:
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise SnapshotReadError(f"Cannot read {path}: {exc}") from exc
        try:
            envelope = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise SnapshotReadError(f"{path.name} is not valid JSON: {exc}") from exc
        if not isinstance(envelope, dict) or "data" not in envelope:
            raise SnapshotReadError(f"{path.name} is not a snapshot envelope")

        recorded = envelope.get("_checksum")
        body = {k: v for k, v in envelope.items() if k != "_checksum"}
        expected = f"sha256:{_compute_checksum(body)}"
        if recorded != expected:
            raise SnapshotReadError(
                f"Checksum mismatch in {path.name}. Recorded: {recorded!r}. Expected: {expected!r}."
            )
        return envelope


# ── Debounced writer ──────────────────────────────────────────────────────────


class DebouncedSnapshotWriter:
    """Coalesces bursts of mutations into one write per snapshot.

    Services call the hook returned by :meth:`marker` after every mutation.
    A background job calls :meth:`flush_due`; a snapshot is written once no
    further mutation has arrived for ``debounce_ms``, or once it has been
    dirty for ``max_wait_ms`` (default ten debounce periods) so a snapshot
    that never goes quiet is still written.

    Example::

        writer = DebouncedSnapshotWriter(store, clock, debounce_ms=1000)
        writer.register("mail.json", mail_service.snapshot)
        mail_service = MailService(..., on_change=writer.marker("mail.json"))
    """

    def __init__(
        self,
        store: SnapshotStore,
        clock: Clock | None = None,
        debounce_ms: int = 1000,
        max_wait_ms: int | None = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.debounce_ms = debounce_ms
        self.max_wait_ms = max_wait_ms if max_wait_ms is not None else 10 * debounce_ms
        self._sources: dict[str, Callable[[], Any]] = {}
        # name -> time of the latest unflushed mutation
        self._dirty: dict[str, int] = {}
        # name -> time of the oldest unflushed mutation
        self._dirty_since: dict[str, int] = {}

    def register(self, name: str, source: Callable[[], Any]) -> None:
        self._sources[name] = source

    def mark_dirty(self, *names: str) -> None:
        now = self.clock.now_ms()
        for name in names:
            self._dirty[name] = now
            self._dirty_since.setdefault(name, now)

    def marker(self, *names: str) -> Callable[[], None]:
        """A zero-argument hook that marks ``names`` dirty."""

        def mark() -> None:
            self.mark_dirty(*names)

        return mark

    def pending(self) -> set[str]:
        return set(self._dirty)

    def flush_due(self, now: int | None = None) -> list[str]:
        """Write every snapshot quiet for ``debounce_ms`` or dirty for ``max_wait_ms``."""
        now = self.clock.now_ms() if now is None else now
        due = [
            name
            for name, at in self._dirty.items()
            if now - at >= self.debounce_ms or now - self._dirty_since[name] >= self.max_wait_ms
        ]
        return self._flush(due)

    def flush_all(self) -> list[str]:
        """Write every dirty snapshot now. Used at shutdown."""
        return self._flush(list(self._dirty))

    def _flush(self, names: list[str]) -> list[str]:
        written = []
        for name in names:
            source = self._sources.get(name)
            if source is None:
                logger.warning("snapshot: no source registered for %s", name)
                self._dirty.pop(name, None)
                self._dirty_since.pop(name, None)
                continue
            marked_at = self._dirty.get(name)
            try:
                self.store.write(name, source())
            except SnapshotWriteError:
                logger.warning("Snapshot write failed for %s; will retry.", name, exc_info=True)
                continue
            # A mutation that landed during the write keeps the entry dirty
            if self._dirty.get(name) == marked_at:
                self._dirty.pop(name, None)
                self._dirty_since.pop(name, None)
            else:
                self._dirty_since[name] = self._dirty[name]
            written.append(name)
        return written


# ── Internal helpers ──────────────────────────────────────────────────────────


def _compute_checksum(payload: dict) -> str:
    """SHA-256 hex digest of the canonical JSON serialisation of ``payload``."""
    canonical = json.dumps(payload, ensure_ascii=False, sort_keys=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _replace_locked(path: Path, text: str) -> None:
    """Write ``text`` to a temp file beside ``path`` and rename it into place.

    Raises:
        OSError: On any filesystem failure. The temp file is removed.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    lock_path = path.with_name(path.name + ".lock")
    with lock_path.open("a", encoding="utf-8") as lock:
        fcntl.flock(lock, fcntl.LOCK_EX)
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(text)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        finally:
            fcntl.flock(lock, fcntl.LOCK_UN)
