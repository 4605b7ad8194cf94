"""
Tests for the snapshot store and the debounced writer.

The store must never leave a torn file behind and must refuse files whose
checksum no longer matches. The writer must coalesce bursts and retry
failed writes.
"""

import json

import pytest

from commons_server.persistence.snapshots import (
    DebouncedSnapshotWriter,
    SnapshotReadError,
    SnapshotStore,
    SnapshotWriteError,
)

# =============================================================================
# STORE
# =============================================================================


class TestSnapshotStore:
    @pytest.mark.unit
    @pytest.mark.persistence
    def test_write_then_read(self, data_dir):
        store = SnapshotStore(data_dir)

        path = store.write("trades/active-trades.json", {"trades": []})

        assert path == (data_dir / "trades" / "active-trades.json").resolve()
        assert store.read("trades/active-trades.json") == {"trades": []}

    @pytest.mark.unit
    @pytest.mark.persistence
    def test_missing_snapshot_reads_none(self, data_dir):
        store = SnapshotStore(data_dir)

        assert store.read("mail.json") is None
        assert store.verify("mail.json").status == "empty"

    @pytest.mark.unit
    @pytest.mark.persistence
    def test_envelope_has_checksum(self, data_dir):
        store = SnapshotStore(data_dir)
        store.write("mail.json", {"mailboxes": {}})

        envelope = json.loads((data_dir / "mail.json").read_text())

        assert envelope["name"] == "mail.json"
        assert envelope["schema_version"] == "1.0"
        assert envelope["_checksum"].startswith("sha256:")

    @pytest.mark.unit
    @pytest.mark.persistence
    def test_tampered_file_is_refused(self, data_dir):
        store = SnapshotStore(data_dir)
        store.write("mail.json", {"count": 1})
        path = data_dir / "mail.json"
        envelope = json.loads(path.read_text())
        envelope["data"]["count"] = 2
        path.write_text(json.dumps(envelope))

        with pytest.raises(SnapshotReadError, match="Checksum mismatch"):
            store.read("mail.json")
        assert store.verify("mail.json").status == "corrupt"

    @pytest.mark.unit
    @pytest.mark.persistence
    def test_garbage_is_refused(self, data_dir):
        (data_dir / "forum.json").write_text("{not json")

        with pytest.raises(SnapshotReadError):
            SnapshotStore(data_dir).read("forum.json")

    @pytest.mark.unit
    @pytest.mark.persistence
    def test_quarantine_moves_file_aside(self, data_dir):
        (data_dir / "forum.json").write_text("{not json")
        store = SnapshotStore(data_dir)

        target = store.quarantine("forum.json")

        assert target.name.startswith("forum.json.corrupt-")
        assert not store.exists("forum.json")
        assert store.quarantine("forum.json") is None

    @pytest.mark.unit
    @pytest.mark.persistence
    def test_name_cannot_escape_root(self, data_dir):
        with pytest.raises(ValueError):
            SnapshotStore(data_dir).path_for("../outside.json")

    @pytest.mark.unit
    @pytest.mark.persistence
    def test_unserialisable_data(self, data_dir):
        with pytest.raises(SnapshotWriteError):
            SnapshotStore(data_dir).write("bad.json", {"value": object()})

    @pytest.mark.unit
    @pytest.mark.persistence
    def test_no_temp_files_left(self, data_dir):
        store = SnapshotStore(data_dir)
        for i in range(3):
            store.write("chat-history.json", {"i": i})

        leftovers = [p.name for p in data_dir.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    @pytest.mark.unit
    @pytest.mark.persistence
    def test_delete(self, data_dir):
        store = SnapshotStore(data_dir)
        store.write("dms.json", {})

        assert store.delete("dms.json") is True
        assert store.delete("dms.json") is False


# =============================================================================
# DEBOUNCED WRITER
# =============================================================================


class FlakyStore(SnapshotStore):
    """Fails the first ``failures`` writes."""

    def __init__(self, root, failures: int) -> None:
        super().__init__(root)
        self.failures = failures

    def write(self, name, data):
        if self.failures:
            self.failures -= 1
            raise SnapshotWriteError("disk full")
        return super().write(name, data)


class TestDebouncedWriter:
    @pytest.mark.unit
    @pytest.mark.persistence
    def test_waits_for_quiet_period(self, data_dir, clock):
        state = {"n": 0}
        writer = DebouncedSnapshotWriter(SnapshotStore(data_dir), clock, debounce_ms=1_000)
        writer.register("mail.json", lambda: dict(state))
        mark = writer.marker("mail.json")

        mark()
        clock.advance(600)
        state["n"] = 1
        mark()
        clock.advance(600)

        assert writer.flush_due() == []
        clock.advance(400)
        assert writer.flush_due() == ["mail.json"]
        assert SnapshotStore(data_dir).read("mail.json") == {"n": 1}
        assert writer.pending() == set()

    @pytest.mark.unit
    @pytest.mark.persistence
    def test_busy_snapshot_written_after_max_wait(self, data_dir, clock):
        writer = DebouncedSnapshotWriter(SnapshotStore(data_dir), clock, debounce_ms=1_000, max_wait_ms=3_000)
        writer.register("chat-history.json", dict)
        mark = writer.marker("chat-history.json")

        flushed = []
        for _ in range(7):
            mark()
            flushed.append(writer.flush_due())
            clock.advance(500)

        # Marks at 0, 500 .. 3000; never quiet, forced at 3000
        assert flushed == [[], [], [], [], [], [], ["chat-history.json"]]
        assert writer.pending() == set()

    @pytest.mark.unit
    @pytest.mark.persistence
    def test_default_max_wait_is_ten_debounces(self, data_dir, clock):
        assert DebouncedSnapshotWriter(SnapshotStore(data_dir), clock, debounce_ms=250).max_wait_ms == 2_500

    @pytest.mark.unit
    @pytest.mark.persistence
    def test_marker_covers_several_snapshots(self, data_dir, clock):
        writer = DebouncedSnapshotWriter(SnapshotStore(data_dir), clock)
        writer.register("a.json", dict)
        writer.register("b.json", dict)

        writer.marker("a.json", "b.json")()

        assert writer.pending() == {"a.json", "b.json"}
        assert sorted(writer.flush_all()) == ["a.json", "b.json"]

    @pytest.mark.unit
    @pytest.mark.persistence
    def test_failed_write_stays_dirty(self, data_dir, clock):
        writer = DebouncedSnapshotWriter(FlakyStore(data_dir, failures=1), clock, debounce_ms=0)
        writer.register("mail.json", dict)
        writer.mark_dirty("mail.json")

        assert writer.flush_due() == []
        assert writer.pending() == {"mail.json"}
        assert writer.flush_due() == ["mail.json"]

    @pytest.mark.unit
    @pytest.mark.persistence
    def test_unregistered_name_is_dropped(self, data_dir, clock):
        writer = DebouncedSnapshotWriter(SnapshotStore(data_dir), clock)
        writer.mark_dirty("ghost.json")

        assert writer.flush_all() == []
        assert writer.pending() == set()
