"""
End-to-end tests for the NoteSpine facade.

Run with: pytest notespine/test_spine.py -v
"""

import threading
import pytest

from notespine import NoteSpine, NotFound, SpineConfig, StorageFull, load_config
from notespine.inverted_index import InvertedIndex
from notespine.metrics import MetricsCollector
from notespine.snapshots import SnapshotManager


@pytest.fixture
def config(tmp_path):
    return SpineConfig(data_dir=tmp_path, max_snapshots=2)


@pytest.fixture
def spine(config):
    spine = NoteSpine(config)
    yield spine
    spine.close()


class TestNoteSpine:
    """Ingest, query, delete, compact"""

    def test_channels_example(self, spine):
        note_id = spine.ingest("Concurrency in Go", "channels are simple to learn", ["go"])

        assert spine.query_ids("channels") == [note_id]

        spine.delete(note_id)
        assert spine.query_ids("channels") == []

    def test_get_returns_what_was_ingested(self, spine):
        note_id = spine.ingest("Effective Python", "Prefer enumerate over range", ["python", "Idioms"])
        record = spine.get(note_id)
        assert record.body == "Prefer enumerate over range"
        assert record.tags == frozenset({"python", "Idioms"})

    def test_every_stored_tag_is_searchable(self, spine):
        note_id = spine.ingest("Go in Action", "select blocks on channels", ["  Go ", "   "])

        tags = spine.get(note_id).tags
        assert tags == frozenset({"Go"})
        for tag in tags:
            assert spine.query_ids({"tag": tag}) == [note_id]

    def test_disjoint_tags_intersection_is_empty(self, spine):
        for i in range(1000):
            spine.ingest("Effective Python", f"python note {i}", ["python"])
        for i in range(1000):
            spine.ingest("The Go Programming Language", f"go note {i}", ["go"])

        assert spine.query_ids("tag:python AND tag:go") == []
        assert len(spine.query_ids("tag:python")) == 1000
        assert len(spine.query_ids("tag:python OR tag:go")) == 2000

    def test_deleted_never_returned_before_compaction(self, spine):
        ids = [spine.ingest("DDIA", f"replication log entry {i}", ["ddia"]) for i in range(10)]
        for record_id in ids[:5]:
            spine.delete(record_id)

        assert sorted(spine.query_ids("replication")) == sorted(ids[5:])
        assert sorted(spine.query_ids("tag:ddia")) == sorted(ids[5:])

    def test_compaction_preserves_results(self, spine):
        ids = [spine.ingest("Clean Architecture", f"boundary rule {i}", ["arch" if i % 2 else "design"])
               for i in range(20)]
        for record_id in ids[::4]:
            spine.delete(record_id)

        queries = ["boundary", "tag:arch", "rule AND tag:design", "tag:arch OR tag:design"]
        before = {q: spine.query_ids(q) for q in queries}
        result = spine.compact()
        after = {q: spine.query_ids(q) for q in queries}

        assert before == after
        assert result.records_removed == 5
        assert spine.store.tombstone_count() == 0

    def test_delete_missing_raises(self, spine):
        with pytest.raises(NotFound):
            spine.delete(404)

    def test_get_deleted_raises(self, spine):
        note_id = spine.ingest("src", "body")
        spine.delete(note_id)
        with pytest.raises(NotFound):
            spine.get(note_id)

    def test_query_hits_include_bodies(self, spine):
        spine.ingest("Systems Performance", "USE method: utilization saturation errors", ["perf"])
        hits = spine.query("saturation")
        assert [hit.body for hit in hits] == ["USE method: utilization saturation errors"]

    def test_storage_full(self, tmp_path):
        spine = NoteSpine(SpineConfig(data_dir=tmp_path, max_records=1, snapshots_enabled=False))
        try:
            spine.ingest("src", "one")
            with pytest.raises(StorageFull):
                spine.ingest("src", "two")
            assert spine.query_ids("two") == []
        finally:
            spine.close()

    def test_metrics_recorded(self, spine):
        spine.ingest("src", "timed")
        spine.query_ids("timed")
        latency = spine.metrics.get_all_metrics()["latency"]
        assert latency["note_append"]["count"] == 1
        assert latency["note_query"]["count"] == 1

    def test_stats_and_health(self, spine):
        spine.ingest("src", "one")
        gone = spine.ingest("src", "two")
        spine.delete(gone)

        stats = spine.stats()
        assert stats["store"]["live_records"] == 1
        assert stats["index"]["stale"] == 1
        assert stats["tombstone_ratio"] == 0.5

        health = spine.health()
        assert health["records"] == 1
        assert health["tombstones"] == 1

    def test_concurrent_queries_during_writes(self, spine):
        errors = []
        stop = threading.Event()

        def reader():
            while not stop.is_set():
                try:
                    ids = spine.query_ids("concurrent")
                    assert ids == sorted(ids, reverse=True)
                except Exception as e:
                    errors.append(e)

        threads = [threading.Thread(target=reader) for _ in range(3)]
        for t in threads:
            t.start()
        try:
            ids = [spine.ingest("src", f"concurrent note {i}") for i in range(200)]
            for record_id in ids[::2]:
                spine.delete(record_id)
            spine.compact()
        finally:
            stop.set()
            for t in threads:
                t.join()

        assert errors == []
        assert sorted(spine.query_ids("concurrent")) == ids[1::2]


class TestRestart:
    """State survives close/reopen"""

    def test_reopen_uses_snapshot_and_catches_up(self, config):
        first = NoteSpine(config)
        kept = first.ingest("src", "persistent note", ["keep"])
        gone = first.ingest("src", "persistent deleted note")
        first.delete(gone)
        first.close()

        second = NoteSpine(config)
        try:
            assert second.recovery.method == "snapshot"
            assert second.query_ids("persistent") == [kept]
            assert second.query_ids("tag:keep") == [kept]
        finally:
            second.close()

    def test_reopen_without_snapshots_rebuilds(self, tmp_path):
        config = SpineConfig(data_dir=tmp_path, snapshots_enabled=False)
        first = NoteSpine(config)
        note_id = first.ingest("src", "rebuilt from the log")
        first.close()

        second = NoteSpine(config)
        try:
            assert second.recovery.method == "full_rebuild"
            assert second.query_ids("rebuilt") == [note_id]
        finally:
            second.close()

    def test_snapshot_during_ingest_keeps_every_note_findable(self, config, monkeypatch):
        first = NoteSpine(config)
        first.ingest("Effective Go", "goroutines are cheap", ["go"])
        real_to_dict = InvertedIndex.to_dict
        writer = {}

        def to_dict_then_write(index):
            state = real_to_dict(index)
            if "thread" not in writer:
                def write():
                    writer["id"] = first.ingest("Go", "channels are simple to learn", ["go"])
                writer["thread"] = threading.Thread(target=write)
                writer["thread"].start()
                writer["thread"].join(timeout=0.2)
            return state

        monkeypatch.setattr(InvertedIndex, "to_dict", to_dict_then_write)
        first.snapshot()
        writer["thread"].join()
        monkeypatch.undo()

        # Close without the shutdown snapshot so restart uses the one above
        first.snapshots = None
        first.close()

        second = NoteSpine(config)
        try:
            assert second.recovery.snapshot_used is not None
            assert second.query_ids("channels") == [writer["id"]]
            assert len(second.query_ids("tag:go")) == 2
        finally:
            second.close()

    def test_restart_after_compaction_snapshot_raced_by_ingest(self, config, monkeypatch):
        first = NoteSpine(config)
        ids = [first.ingest("src", f"compacted note {i}") for i in range(6)]
        for record_id in ids[:3]:
            first.delete(record_id)

        real_create = SnapshotManager.create_snapshot
        late = []

        def create_while_writing(manager, index, *args, **kwargs):
            thread = threading.Thread(target=lambda: late.append(first.ingest("src", "late note")))
            thread.start()
            try:
                return real_create(manager, index, *args, **kwargs)
            finally:
                thread.join()

        monkeypatch.setattr(SnapshotManager, "create_snapshot", create_while_writing)
        first.compact()
        monkeypatch.undo()

        first.snapshots = None
        first.close()

        second = NoteSpine(config)
        try:
            assert sorted(second.query_ids("note")) == sorted(ids[3:] + late)
            assert second.query_ids("late") == late
        finally:
            second.close()


class TestConfig:

    def test_load_config_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("NOTESPINE_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("NOTESPINE_MAX_RECORDS", "10")
        monkeypatch.setenv("NOTESPINE_SNAPSHOTS", "false")
        monkeypatch.setenv("NOTESPINE_COMPACT_RATIO", "0.5")
        monkeypatch.setenv("NOTESPINE_PORT", "not-a-port")

        config = load_config(env_file=tmp_path / "missing.env")
        assert config.data_dir == tmp_path
        assert config.db_path == tmp_path / "notes.db"
        assert config.max_records == 10
        assert config.snapshots_enabled is False
        assert config.compact_tombstone_ratio == 0.5
        assert config.port == 7790

    def test_background_compaction_from_config(self, tmp_path):
        spine = NoteSpine(SpineConfig(data_dir=tmp_path, compact_interval_seconds=30))
        try:
            assert spine.stats()["background_compaction"] is True
        finally:
            spine.close()
        assert spine._worker is None


class TestMetricsCollector:

    def test_timer_counts_errors(self):
        metrics = MetricsCollector()
        with pytest.raises(ValueError):
            with metrics.timer("op"):
                raise ValueError("boom")

        all_metrics = metrics.get_all_metrics()
        assert all_metrics["errors"]["by_operation"] == {"op": 1}
        assert all_metrics["latency"]["op"]["count"] == 1

    def test_export_writes_file(self, tmp_path):
        metrics = MetricsCollector(metrics_dir=tmp_path / "metrics")
        metrics.record("op", 1.5)
        metrics.export_metrics()
        assert (tmp_path / "metrics" / "current.json").exists()
