"""
NoteSpine Compaction
Drops tombstoned records from the index and the store.

A run scans the record store, builds a fresh index without tombstoned
records, catches up on writes that landed during the scan, swaps the new
index in, then purges the tombstoned rows. Anything that fails before the
swap leaves the previous index in place.
"""

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field

from .inverted_index import IndexRef, InvertedIndex
from .record_store import RecordStore
from .recovery import find_missing_ids
from .snapshots import SnapshotManager

logger = logging.getLogger(__name__)


@dataclass
class CompactionResult:
    """Outcome of one compaction run."""
    started_at: datetime
    completed_at: datetime
    records_before: int
    records_after: int
    records_removed: int
    stale_dropped: int
    corrupt_ids: List[int] = field(default_factory=list)
    snapshot: Optional[Path] = None

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "records_before": self.records_before,
            "records_after": self.records_after,
            "records_removed": self.records_removed,
            "stale_dropped": self.stale_dropped,
            "corrupt_ids": self.corrupt_ids,
            "snapshot": str(self.snapshot) if self.snapshot else None,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class Compactor:
    """
    Rebuilds the index without tombstones and reclaims tombstoned rows.

    Only the catch-up, the swap and the snapshot copy run under the writer
    lock; the full scan does not block appends or deletes.
    """

    def __init__(
        self,
        store: RecordStore,
        index_ref: IndexRef,
        write_lock: threading.RLock,
        snapshots: Optional[SnapshotManager] = None,
        tombstone_ratio: float = 0.2,
        min_tombstones: int = 1,
    ):
        self.store = store
        self.index_ref = index_ref
        self.write_lock = write_lock
        self.snapshots = snapshots
        self.threshold = tombstone_ratio
        self.min_tombstones = min_tombstones
        self._run_lock = threading.Lock()
        self.last_result: Optional[CompactionResult] = None

    def tombstone_ratio(self) -> float:
        total = len(self.store.all_ids())
        if total == 0:
            return 0.0
        return self.store.tombstone_count() / total

    def should_compact(self) -> bool:
        tombstones = self.store.tombstone_count()
        if tombstones < max(self.min_tombstones, 1):
            return False
        return self.tombstone_ratio() >= self.threshold

    def maybe_compact(self) -> Optional[CompactionResult]:
        """Compact only when the tombstone ratio crosses the threshold."""
        if not self.should_compact():
            return None
        return self.compact()

    def compact(self) -> CompactionResult:
        """Run one compaction. Only one run at a time; callers queue up."""
        with self._run_lock:
            return self._compact()

    def _compact(self) -> CompactionResult:
        started_at = datetime.now(timezone.utc)
        old_index = self.index_ref.current
        records_before = len(self.store.all_ids())

        logger.info(f"[Compaction] Starting: {records_before} records, "
                    f"{self.store.tombstone_count()} tombstoned, {old_index.stale_count} stale")

        corrupt = sorted(find_missing_ids(old_index, self.store))
        if corrupt:
            logger.warning(f"[Compaction] Index corruption: {len(corrupt)} ids reference missing "
                           f"records, rebuilding from the record store")

        try:
            high_water = self.store.max_id()
            new_index = InvertedIndex.build(self.store.iter_records(max_id=high_water))

            with self.write_lock:
                # Writes that landed while the scan ran
                for record in self.store.iter_records(min_id=high_water + 1):
                    new_index.index(record)
                for record_id in self.store.deleted_ids():
                    new_index.unindex(record_id)
                self.index_ref.swap(new_index)
        except Exception as e:
            logger.error(f"[Compaction] Failed, previous index kept: {e}")
            raise

        removed = self.store.purge_deleted()
        completed_at = datetime.now(timezone.utc)
        records_after = len(self.store.all_ids())

        self.store.log_compaction(
            started_at=started_at,
            completed_at=completed_at,
            records_before=records_before,
            records_after=records_after,
            records_removed=removed,
            corrupt_ids=len(corrupt),
        )

        snapshot = None
        if self.snapshots:
            snapshot = self.snapshots.create_snapshot(
                new_index, created_by="compaction", write_lock=self.write_lock
            )

        result = CompactionResult(
            started_at=started_at,
            completed_at=completed_at,
            records_before=records_before,
            records_after=records_after,
            records_removed=removed,
            stale_dropped=old_index.stale_count,
            corrupt_ids=corrupt,
            snapshot=snapshot,
        )
        self.last_result = result

        logger.info(f"[Compaction] Complete: removed {removed} records, "
                    f"{records_after} remain ({result.duration_seconds:.2f}s)")
        return result


class CompactionWorker(threading.Thread):
    """Background thread that calls maybe_compact() every interval seconds."""

    def __init__(self, compactor: Compactor, interval: float):
        super().__init__(name="notespine-compaction", daemon=True)
        self.compactor = compactor
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self):
        logger.info(f"[Compaction] Background worker started (every {self.interval}s)")
        while not self._stop_event.wait(self.interval):
            try:
                self.compactor.maybe_compact()
            except Exception as e:
                logger.error(f"[Compaction] Background run failed: {e}")

    def stop(self, timeout: Optional[float] = None):
        self._stop_event.set()
        self.join(timeout)
