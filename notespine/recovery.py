"""
NoteSpine Index Recovery
Rebuilds the in-memory index at startup.

- Load latest valid snapshot
- Catch up on records appended after the snapshot
- Re-apply tombstones written after the snapshot
- Verify consistency with the record store
- Fallback to full rebuild from the store if anything is off
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Set
from dataclasses import dataclass, field

from .errors import IndexCorruption
from .inverted_index import InvertedIndex
from .record_store import RecordStore
from .snapshots import SnapshotManager

logger = logging.getLogger(__name__)


@dataclass
class RecoveryResult:
    """Result of a recovery operation."""
    index: InvertedIndex
    method: str  # "snapshot", "catch_up", "full_rebuild", "fresh"
    snapshot_used: Optional[str]
    records_replayed: int
    record_count: int
    duration_seconds: float
    errors: List[str] = field(default_factory=list)


def find_missing_ids(index: InvertedIndex, store: RecordStore) -> Set[int]:
    """Ids the index references that the store no longer holds."""
    return index.referenced_ids() - store.all_ids()


def verify_consistency(index: InvertedIndex, store: RecordStore, through_id: Optional[int] = None):
    """
    Raise IndexCorruption unless the index and the store agree.

    Every referenced id must exist in the store, and every live record up to
    through_id (default: the index's last record id) must be referenced.
    """
    missing = find_missing_ids(index, store)
    if missing:
        raise IndexCorruption(
            f"index references {len(missing)} records missing from the store",
            missing_ids=missing,
        )

    upper = index.last_record_id if through_id is None else max(through_id, index.last_record_id)
    referenced = index.referenced_ids()
    tombstoned = store.deleted_ids()
    unindexed = [
        record_id for record_id in store.all_ids()
        if record_id <= upper
        and record_id not in tombstoned
        and record_id not in referenced
    ]
    if unindexed:
        raise IndexCorruption(f"{len(unindexed)} live records are missing from the index")


class IndexRecovery:
    """
    Coordinates index recovery for NoteSpine.

    The record store is authoritative, so recovery can always fall back to
    a full rebuild; snapshots only make startup faster.

    Usage:
        recovery = IndexRecovery(store, snapshots)
        result = recovery.recover()
        index_ref.swap(result.index)
    """

    def __init__(self, store: RecordStore, snapshots: Optional[SnapshotManager] = None):
        self.store = store
        self.snapshots = snapshots

    def recover(self) -> RecoveryResult:
        """Execute recovery, returning a consistent index."""
        start_time = datetime.now(timezone.utc)
        errors: List[str] = []

        logger.info("[Recovery] Starting index recovery...")

        loaded = self.snapshots.load_latest() if self.snapshots else None
        if loaded:
            index, metadata = loaded
            # Catch up from the lower of the two high-water marks
            from_id = min(metadata.last_record_id, index.last_record_id)
            replayed = self._catch_up(index, from_id)
            self._apply_tombstones(index)

            try:
                verify_consistency(
                    index, self.store, through_id=max(metadata.last_record_id, self.store.max_id())
                )
                logger.info(f"[Recovery] Snapshot {metadata.timestamp} consistent "
                            f"({index.record_count} records, {replayed} replayed)")
                return RecoveryResult(
                    index=index,
                    method="snapshot" if replayed == 0 else "catch_up",
                    snapshot_used=metadata.timestamp,
                    records_replayed=replayed,
                    record_count=index.record_count,
                    duration_seconds=self._elapsed(start_time),
                    errors=errors,
                )
            except IndexCorruption as e:
                errors.append(str(e))
                logger.warning(f"[Recovery] {e}, attempting full rebuild...")
        else:
            logger.info("[Recovery] No valid snapshot found")

        index = self.full_rebuild()
        method = "full_rebuild" if index.record_count else "fresh"
        if self.snapshots and index.record_count:
            self.snapshots.create_snapshot(index, created_by="recovery")

        return RecoveryResult(
            index=index,
            method=method,
            snapshot_used=None,
            records_replayed=0,
            record_count=index.record_count,
            duration_seconds=self._elapsed(start_time),
            errors=errors,
        )

    @staticmethod
    def _elapsed(start_time: datetime) -> float:
        return (datetime.now(timezone.utc) - start_time).total_seconds()

    def _catch_up(self, index: InvertedIndex, from_id: int) -> int:
        """Index live records appended after from_id. Returns how many."""
        replayed = 0
        for record in self.store.iter_records(min_id=from_id + 1):
            index.index(record)
            replayed += 1

        if replayed:
            logger.info(f"[Recovery] Caught up on {replayed} records after id {from_id}")
        return replayed

    def _apply_tombstones(self, index: InvertedIndex):
        for record_id in self.store.deleted_ids():
            index.unindex(record_id)

    def full_rebuild(self) -> InvertedIndex:
        """Rebuild the index from scratch using the record store."""
        logger.info("[Recovery] Starting full index rebuild...")
        index = InvertedIndex.build(self.store.iter_records())
        logger.info(f"[Recovery] Rebuild complete: {index.record_count} records")
        return index

    def get_recovery_status(self) -> Dict[str, Any]:
        """Get current recovery-related status."""
        latest = self.snapshots.get_latest_snapshot() if self.snapshots else None
        latest_meta = latest[1] if latest else None

        return {
            "snapshot_available": latest is not None,
            "latest_snapshot": latest[0].name if latest else None,
            "records_since_snapshot": max(
                self.store.max_id() - (latest_meta.last_record_id if latest_meta else 0), 0
            ),
            "snapshot_count": self.snapshots.get_stats()["snapshot_count"] if self.snapshots else 0,
        }
