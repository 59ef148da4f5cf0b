"""
NoteSpine - reading-notes store with term and tag search

Owns the record store, the live index, the query engine and the compactor,
and is the single writer for all of them: appends, deletes and the
compaction swap are serialized through one lock, queries never take it.

Usage:
    from notespine import NoteSpine, SpineConfig

    spine = NoteSpine(SpineConfig(data_dir=Path("data")))
    note_id = spine.ingest("Effective Python", "Prefer generators to lists", ["python"])
    hits = spine.query("generators AND tag:python")
    spine.delete(note_id)
    spine.compact()
"""

import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .compaction import CompactionResult, CompactionWorker, Compactor
from .config import SpineConfig, load_config
from .inverted_index import IndexRef
from .metrics import MetricsCollector
from .query import CancellationToken, QueryEngine, QueryHit, QueryInput, RANK_RECENCY
from .record_store import Record, RecordStore
from .recovery import IndexRecovery
from .snapshots import SnapshotManager

logger = logging.getLogger(__name__)


class NoteSpine:
    """Single-writer facade over the note store and its index."""

    def __init__(self, config: Optional[SpineConfig] = None, metrics: Optional[MetricsCollector] = None):
        self.config = config or load_config()
        self.metrics = metrics or MetricsCollector(metrics_dir=self.config.metrics_dir)

        self.store = RecordStore(self.config.db_path, max_records=self.config.max_records)
        self.snapshots: Optional[SnapshotManager] = None
        if self.config.snapshots_enabled:
            self.snapshots = SnapshotManager(self.config.snapshot_dir, self.config.max_snapshots)

        self.recovery = IndexRecovery(self.store, self.snapshots).recover()
        self.index_ref = IndexRef(self.recovery.index)
        logger.info(f"[NoteSpine] Index ready via {self.recovery.method}: "
                    f"{self.recovery.record_count} records")

        self._write_lock = threading.RLock()
        self.engine = QueryEngine(self.store, self.index_ref)
        self.compactor = Compactor(
            self.store,
            self.index_ref,
            self._write_lock,
            snapshots=self.snapshots,
            tombstone_ratio=self.config.compact_tombstone_ratio,
            min_tombstones=self.config.compact_min_tombstones,
        )

        self._worker: Optional[CompactionWorker] = None
        if self.config.compact_interval_seconds > 0:
            self.start_background_compaction(self.config.compact_interval_seconds)

    # ---------------------------------------------------------------------------
    # Writes
    # ---------------------------------------------------------------------------

    def ingest(self, source: str, body: str, tags: Optional[Iterable[str]] = None) -> int:
        """Append a note durably and index it. Returns the new record id."""
        with self.metrics.timer("note_append"):
            with self._write_lock:
                record = self.store.append(source, body, tags)
                self.index_ref.current.index(record)
        return record.id

    def delete(self, record_id: int) -> None:
        """Tombstone a note. Raises NotFound for missing or already-deleted ids."""
        with self.metrics.timer("note_delete"):
            with self._write_lock:
                self.store.delete(record_id)
                self.index_ref.current.unindex(record_id)

    # ---------------------------------------------------------------------------
    # Reads
    # ---------------------------------------------------------------------------

    def get(self, record_id: int) -> Record:
        return self.store.get(record_id)

    def query(
        self,
        query: QueryInput,
        limit: Optional[int] = None,
        rank: str = RANK_RECENCY,
        cancel: Optional[CancellationToken] = None,
    ) -> List[QueryHit]:
        """Matching notes, newest first (or by relevance), with their bodies."""
        with self.metrics.timer("note_query"):
            return self.engine.search(query, limit=limit, rank=rank, cancel=cancel)

    def query_ids(
        self,
        query: QueryInput,
        limit: Optional[int] = None,
        rank: str = RANK_RECENCY,
        cancel: Optional[CancellationToken] = None,
    ) -> List[int]:
        with self.metrics.timer("note_query"):
            return self.engine.query_ids(query, limit=limit, rank=rank, cancel=cancel)

    # ---------------------------------------------------------------------------
    # Maintenance
    # ---------------------------------------------------------------------------

    def compact(self) -> CompactionResult:
        with self.metrics.timer("compaction"):
            return self.compactor.compact()

    def maybe_compact(self) -> Optional[CompactionResult]:
        return self.compactor.maybe_compact()

    def snapshot(self) -> Optional[Path]:
        """Snapshot the live index now. None when snapshots are disabled or the write failed."""
        if not self.snapshots:
            return None
        return self.snapshots.create_snapshot(
            self.index_ref.current, created_by="spine", write_lock=self._write_lock
        )

    def start_background_compaction(self, interval: float):
        if self._worker and self._worker.is_alive():
            return
        self._worker = CompactionWorker(self.compactor, interval)
        self._worker.start()

    def stop_background_compaction(self):
        if self._worker:
            self._worker.stop(timeout=5)
            self._worker = None

    def stats(self) -> Dict[str, Any]:
        last = self.compactor.last_result
        return {
            "store": self.store.get_stats(),
            "index": self.index_ref.current.stats(),
            "index_generation": self.index_ref.generation,
            "tombstone_ratio": round(self.compactor.tombstone_ratio(), 4),
            "recovery": {
                "method": self.recovery.method,
                "snapshot_used": self.recovery.snapshot_used,
                "records_replayed": self.recovery.records_replayed,
                "errors": self.recovery.errors,
            },
            "last_compaction": last.to_dict() if last else None,
            "snapshots": self.snapshots.get_stats() if self.snapshots else None,
            "background_compaction": bool(self._worker and self._worker.is_alive()),
        }

    def health(self) -> Dict[str, Any]:
        index = self.index_ref.current
        return {
            "status": "healthy",
            "records": self.store.count(),
            "indexed": index.record_count,
            "tombstones": self.store.tombstone_count(),
            "stale": index.stale_count,
        }

    def close(self):
        """Stop background work, snapshot the index, close the store."""
        self.stop_background_compaction()
        if self.snapshots and self.store.count():
            self.snapshot()
        self.store.close()
        logger.info("[NoteSpine] Closed")

    def __enter__(self) -> "NoteSpine":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
