"""
Unit tests for index snapshots and startup recovery.

Run with: pytest notespine/test_recovery.py -v
"""

import json

import pytest

from notespine.errors import IndexCorruption
from notespine.inverted_index import InvertedIndex
from notespine.record_store import RecordStore
from notespine.recovery import IndexRecovery, verify_consistency
from notespine.snapshots import SnapshotManager


@pytest.fixture
def store(tmp_path):
    store = RecordStore(tmp_path / "notes.db")
    yield store
    store.close()


@pytest.fixture
def snapshots(tmp_path):
    return SnapshotManager(tmp_path / "snapshots", max_snapshots=3)


def build_index(store):
    return InvertedIndex.build(store.iter_records())


class TestSnapshotManager:

    def test_create_and_load(self, store, snapshots):
        store.append("src", "alpha beta", ["x"])
        index = build_index(store)

        path = snapshots.create_snapshot(index)
        assert path is not None and path.exists()
        assert path.with_suffix(".meta.json").exists()

        loaded, metadata = snapshots.load_latest()
        assert loaded.term_postings("alpha") == index.term_postings("alpha")
        assert metadata.last_record_id == index.last_record_id
        assert metadata.record_count == 1

    def test_checksum_mismatch_invalidates(self, store, snapshots):
        store.append("src", "alpha")
        path = snapshots.create_snapshot(build_index(store))

        path.write_text("{}")
        assert not snapshots.validate_snapshot(path)
        assert snapshots.load_latest() is None

    def test_missing_metadata_invalidates(self, store, snapshots):
        store.append("src", "alpha")
        path = snapshots.create_snapshot(build_index(store))

        path.with_suffix(".meta.json").unlink()
        assert not snapshots.validate_snapshot(path)

    def test_prunes_old_snapshots(self, store, snapshots):
        store.append("src", "alpha")
        index = build_index(store)
        for _ in range(5):
            snapshots.create_snapshot(index)

        stats = snapshots.get_stats()
        assert stats["snapshot_count"] == 3
        assert len(list(snapshots.snapshot_dir.glob("*.meta.json"))) == 3


class TestVerifyConsistency:

    def test_consistent_index_passes(self, store):
        store.append("src", "alpha")
        verify_consistency(build_index(store), store)

    def test_missing_record_raises(self, store):
        record_id = store.append("src", "alpha").id
        index = build_index(store)
        store.delete(record_id)
        store.purge_deleted()

        with pytest.raises(IndexCorruption) as excinfo:
            verify_consistency(index, store)
        assert excinfo.value.missing_ids == [record_id]

    def test_unindexed_live_record_raises(self, store):
        alpha = store.append("src", "alpha")
        store.append("src", "beta")
        gamma = store.append("src", "gamma")

        index = InvertedIndex()
        index.index(alpha)
        index.index(gamma)

        with pytest.raises(IndexCorruption):
            verify_consistency(index, store)

    def test_live_record_past_index_high_water_raises(self, store):
        alpha = store.append("src", "alpha")
        store.append("src", "beta")

        index = InvertedIndex()
        index.index(alpha)

        verify_consistency(index, store)
        with pytest.raises(IndexCorruption):
            verify_consistency(index, store, through_id=store.max_id())


class TestIndexRecovery:

    def test_fresh_store(self, store, snapshots):
        result = IndexRecovery(store, snapshots).recover()
        assert result.method == "fresh"
        assert result.record_count == 0

    def test_full_rebuild_without_snapshot(self, store):
        store.append("src", "alpha")
        gone = store.append("src", "beta").id
        store.delete(gone)

        result = IndexRecovery(store).recover()
        assert result.method == "full_rebuild"
        assert result.index.term_postings("alpha") != []
        assert result.index.term_postings("beta") == []

    def test_snapshot_used_when_current(self, store, snapshots):
        store.append("src", "alpha")
        snapshots.create_snapshot(build_index(store))

        result = IndexRecovery(store, snapshots).recover()
        assert result.method == "snapshot"
        assert result.records_replayed == 0
        assert result.snapshot_used is not None

    def test_catch_up_after_snapshot(self, store, snapshots):
        first = store.append("src", "alpha").id
        snapshots.create_snapshot(build_index(store))
        later = store.append("src", "alpha again").id
        store.delete(first)

        result = IndexRecovery(store, snapshots).recover()
        assert result.method == "catch_up"
        assert result.records_replayed == 1
        assert result.index.referenced_ids() == {later}

    def test_metadata_ahead_of_payload_still_catches_up(self, store, snapshots):
        store.append("src", "alpha")
        path = snapshots.create_snapshot(build_index(store))
        later = store.append("Go", "channels are simple to learn", ["go"]).id

        # Metadata claims coverage of a record the payload never saw
        meta_path = path.with_suffix(".meta.json")
        meta = json.loads(meta_path.read_text())
        meta["last_record_id"] = later
        meta_path.write_text(json.dumps(meta))

        result = IndexRecovery(store, snapshots).recover()
        assert result.method == "catch_up"
        assert result.index.term_postings("channels") == [later]
        assert result.index.tag_postings("go") == [later]

    def test_stale_snapshot_falls_back_to_rebuild(self, store, snapshots):
        first = store.append("src", "alpha").id
        second = store.append("src", "beta").id
        snapshots.create_snapshot(build_index(store))
        store.delete(first)
        store.purge_deleted()
        # Snapshot still lists `first`, but tombstone info is gone with the row
        result = IndexRecovery(store, snapshots).recover()

        assert result.method == "full_rebuild"
        assert result.errors
        assert result.index.referenced_ids() == {second}

    def test_recovery_status(self, store, snapshots):
        store.append("src", "alpha")
        recovery = IndexRecovery(store, snapshots)
        assert recovery.get_recovery_status()["snapshot_available"] is False

        snapshots.create_snapshot(build_index(store))
        store.append("src", "beta")
        status = recovery.get_recovery_status()
        assert status["snapshot_available"] is True
        assert status["records_since_snapshot"] == 1
