"""Snapshot persistence package.

Public API::

    from commons_server.persistence import SnapshotStore, DebouncedSnapshotWriter, SnapshotWriteError
"""

from commons_server.persistence.snapshots import (
    DebouncedSnapshotWriter,
    SnapshotError,
    SnapshotReadError,
    SnapshotStore,
    SnapshotVerifyResult,
    SnapshotWriteError,
)

__all__ = [
    "DebouncedSnapshotWriter",
    "SnapshotError",
    "SnapshotReadError",
    "SnapshotStore",
    "SnapshotVerifyResult",
    "SnapshotWriteError",
]
