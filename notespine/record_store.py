"""
NoteSpine Record Store
SQLite-backed append-only log of note records.

- Append is durable before it returns (commit with synchronous=FULL)
- Records are never mutated in place, only tombstoned
- Ids come from AUTOINCREMENT: strictly increasing, never reused
- Physical reclamation happens only through purge_deleted() (compaction)
"""

import json
import sqlite3
import logging
import threading
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Optional, Set, Tuple
from dataclasses import dataclass

from .errors import NotFound, StorageFull

logger = logging.getLogger(__name__)

SCAN_BATCH_SIZE = 500


@dataclass
class Record:
    """A single note record."""
    id: int
    source: str
    body: str
    tags: FrozenSet[str]
    created_at: datetime
    deleted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "body": self.body,
            "tags": sorted(self.tags),
            "created_at": self.created_at.isoformat(),
            "deleted": self.deleted,
        }


def _is_storage_full(error: sqlite3.Error) -> bool:
    """True when SQLite refused the write for lack of space."""
    if getattr(error, "sqlite_errorname", None) == "SQLITE_FULL":
        return True
    return "database or disk is full" in str(error).lower()


def _normalize_tags(tags: Optional[Iterable[str]]) -> FrozenSet[str]:
    """Strip surrounding whitespace and drop blank tags; case is kept."""
    if tags is None:
        return frozenset()
    if isinstance(tags, str):
        tags = [tags]
    result = set()
    for tag in tags:
        if not isinstance(tag, str):
            raise TypeError(f"tags must be strings, got {type(tag).__name__}")
        tag = tag.strip()
        if tag:
            result.add(tag)
    return frozenset(result)


class RecordStore:
    """
    Durable note log for NoteSpine.

    Writes go through one connection guarded by a lock. Liveness and
    creation-time lookups are answered from an in-memory directory so the
    query path never touches SQLite for its validity check.
    """

    DB_VERSION = 1  # Bump when schema changes

    def __init__(self, db_path: Path, max_records: int = 0):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.max_records = max_records

        self._lock = threading.Lock()
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=FULL")

        # id -> (created_at, deleted)
        self._directory: Dict[int, Tuple[datetime, bool]] = {}

        self._init_schema()
        self._load_directory()
        logger.info(f"[RecordStore] Initialized: {self.db_path} ({len(self._directory)} records)")

    def _init_schema(self):
        """Create tables if not exist."""
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source TEXT NOT NULL,
                body TEXT NOT NULL,
                tags TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL,
                deleted INTEGER DEFAULT 0,
                deleted_at TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS compaction_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                started_at TEXT,
                completed_at TEXT,
                records_before INTEGER,
                records_after INTEGER,
                records_removed INTEGER,
                corrupt_ids INTEGER DEFAULT 0,
                duration_seconds REAL
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_record_deleted ON records(deleted)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_record_source ON records(source)")

        cursor.execute("SELECT MAX(version) FROM schema_version")
        row = cursor.fetchone()
        current_version = row[0] if row[0] else 0

        if current_version < self.DB_VERSION:
            cursor.execute("INSERT INTO schema_version (version) VALUES (?)", (self.DB_VERSION,))
            logger.info(f"[RecordStore] Schema upgraded to v{self.DB_VERSION}")

        self.conn.commit()

    def _load_directory(self):
        cursor = self.conn.cursor()
        cursor.execute("SELECT id, created_at, deleted FROM records")
        for row in cursor.fetchall():
            self._directory[row["id"]] = (
                datetime.fromisoformat(row["created_at"]),
                bool(row["deleted"]),
            )

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> Record:
        return Record(
            id=row["id"],
            source=row["source"],
            body=row["body"],
            tags=frozenset(json.loads(row["tags"])),
            created_at=datetime.fromisoformat(row["created_at"]),
            deleted=bool(row["deleted"]),
        )

    def append(self, source: str, body: str, tags: Optional[Iterable[str]] = None) -> Record:
        """
        Append a new record. Durable before returning.

        Raises:
            StorageFull: the quota is reached or SQLite is out of space
        """
        if not isinstance(source, str):
            raise TypeError("source must be a string")
        if not isinstance(body, str):
            raise TypeError("body must be a string")
        tag_set = _normalize_tags(tags)
        created_at = datetime.now(timezone.utc)

        with self._lock:
            if self.max_records and len(self._directory) >= self.max_records:
                raise StorageFull(f"record quota of {self.max_records} reached")

            try:
                cursor = self.conn.cursor()
                cursor.execute("""
                    INSERT INTO records (source, body, tags, created_at)
                    VALUES (?, ?, ?, ?)
                """, (source, body, json.dumps(sorted(tag_set)), created_at.isoformat()))
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                if _is_storage_full(e):
                    logger.error(f"[RecordStore] Append rejected, storage full: {e}")
                    raise StorageFull(str(e)) from e
                raise

            record_id = cursor.lastrowid
            self._directory[record_id] = (created_at, False)

        return Record(
            id=record_id,
            source=source,
            body=body,
            tags=tag_set,
            created_at=created_at,
        )

    def get(self, record_id: int) -> Record:
        """Get a live record. Raises NotFound for missing or tombstoned ids."""
        if not self.is_live(record_id):
            raise NotFound(record_id)

        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("""
                SELECT id, source, body, tags, created_at, deleted
                FROM records WHERE id = ? AND deleted = 0
            """, (record_id,))
            row = cursor.fetchone()

        if not row:
            raise NotFound(record_id)
        return self._row_to_record(row)

    def get_many(self, record_ids: List[int]) -> Dict[int, Record]:
        """Fetch several live records at once. Missing ids are left out."""
        if not record_ids:
            return {}

        found: Dict[int, Record] = {}
        with self._lock:
            cursor = self.conn.cursor()
            for start in range(0, len(record_ids), SCAN_BATCH_SIZE):
                batch = record_ids[start:start + SCAN_BATCH_SIZE]
                placeholders = ",".join("?" * len(batch))
                cursor.execute(f"""
                    SELECT id, source, body, tags, created_at, deleted
                    FROM records WHERE deleted = 0 AND id IN ({placeholders})
                """, batch)
                for row in cursor.fetchall():
                    found[row["id"]] = self._row_to_record(row)
        return found

    def delete(self, record_id: int) -> None:
        """Tombstone a record. Raises NotFound for missing or already-deleted ids."""
        with self._lock:
            entry = self._directory.get(record_id)
            if entry is None or entry[1]:
                raise NotFound(record_id)

            cursor = self.conn.cursor()
            cursor.execute("""
                UPDATE records SET deleted = 1, deleted_at = ?
                WHERE id = ? AND deleted = 0
            """, (datetime.now(timezone.utc).isoformat(), record_id))
            self.conn.commit()

            if cursor.rowcount == 0:
                raise NotFound(record_id)
            self._directory[record_id] = (entry[0], True)

    def is_live(self, record_id: int) -> bool:
        entry = self._directory.get(record_id)
        return entry is not None and not entry[1]

    def created_at(self, record_id: int) -> Optional[datetime]:
        entry = self._directory.get(record_id)
        return entry[0] if entry else None

    def iter_records(
        self,
        min_id: int = 0,
        max_id: Optional[int] = None,
        include_deleted: bool = False,
    ) -> Iterator[Record]:
        """
        Scan records in id order, from min_id (inclusive) to max_id (inclusive).

        Pages through the table so the lock is only held per batch.
        """
        last_id = min_id - 1
        while True:
            clauses = ["id > ?"]
            params: List[Any] = [last_id]
            if max_id is not None:
                clauses.append("id <= ?")
                params.append(max_id)
            if not include_deleted:
                clauses.append("deleted = 0")
            params.append(SCAN_BATCH_SIZE)

            with self._lock:
                cursor = self.conn.cursor()
                cursor.execute(f"""
                    SELECT id, source, body, tags, created_at, deleted
                    FROM records WHERE {" AND ".join(clauses)}
                    ORDER BY id ASC LIMIT ?
                """, params)
                rows = cursor.fetchall()

            if not rows:
                return
            for row in rows:
                yield self._row_to_record(row)
            last_id = rows[-1]["id"]

    def all_ids(self) -> Set[int]:
        return set(self._directory)

    def deleted_ids(self) -> Set[int]:
        return {record_id for record_id, (_, deleted) in list(self._directory.items()) if deleted}

    def max_id(self) -> int:
        return max(list(self._directory), default=0)

    def count(self) -> int:
        """Number of live records."""
        return len(self._directory) - self.tombstone_count()

    def tombstone_count(self) -> int:
        return sum(1 for _, deleted in list(self._directory.values()) if deleted)

    def purge_deleted(self) -> int:
        """Hard delete all tombstoned records. Call only from compaction."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT id FROM records WHERE deleted = 1")
            deleted_ids = [row["id"] for row in cursor.fetchall()]
            if not deleted_ids:
                return 0

            cursor.execute("DELETE FROM records WHERE deleted = 1")
            self.conn.commit()
            for record_id in deleted_ids:
                self._directory.pop(record_id, None)

            # VACUUM to reclaim space
            self.conn.execute("VACUUM")

        logger.info(f"[RecordStore] Purged {len(deleted_ids)} tombstoned records")
        return len(deleted_ids)

    def log_compaction(
        self,
        started_at: datetime,
        completed_at: datetime,
        records_before: int,
        records_after: int,
        records_removed: int,
        corrupt_ids: int = 0,
    ):
        """Log a compaction run."""
        duration = (completed_at - started_at).total_seconds()
        with self._lock:
            self.conn.execute("""
                INSERT INTO compaction_log (started_at, completed_at, records_before, records_after,
                                            records_removed, corrupt_ids, duration_seconds)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (started_at.isoformat(), completed_at.isoformat(), records_before,
                  records_after, records_removed, corrupt_ids, duration))
            self.conn.commit()

    def get_stats(self) -> Dict[str, Any]:
        """Get record store statistics."""
        with self._lock:
            cursor = self.conn.cursor()

            cursor.execute("""
                SELECT source, COUNT(*) as count
                FROM records WHERE deleted = 0
                GROUP BY source
            """)
            by_source = {row["source"]: row["count"] for row in cursor.fetchall()}

            cursor.execute("SELECT COUNT(*) as runs, MAX(completed_at) as last FROM compaction_log")
            row = cursor.fetchone()
            compactions = row["runs"]
            last_compaction = row["last"]

        tombstones = self.tombstone_count()
        return {
            "total_records": len(self._directory),
            "live_records": len(self._directory) - tombstones,
            "deleted_records": tombstones,
            "by_source": by_source,
            "compactions": compactions,
            "last_compaction": last_compaction,
            "max_records": self.max_records,
            "db_path": str(self.db_path),
        }

    def close(self):
        """Close database connection."""
        with self._lock:
            self.conn.close()
