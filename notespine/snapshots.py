"""
NoteSpine Snapshots
On-disk copies of the inverted index, so startup does not rescan the store.

Each snapshot is a pair of files:

    index-<last id>-<utc timestamp>-<seq>.snap       JSON index payload
    index-<last id>-<utc timestamp>-<seq>.meta.json  coverage, counts, sha256

Names sort by coverage first, so the newest snapshot is the last one by
name. Both files are written to a temp name, fsynced and renamed into
place; the metadata lands first, so a .snap that is visible always has its
checksum next to it.
"""

import os
import json
import hashlib
import logging
from contextlib import nullcontext
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, ContextManager, Dict, List, Optional, Tuple

from .inverted_index import InvertedIndex

logger = logging.getLogger(__name__)

SNAPSHOT_GLOB = "index-*.snap"
META_SUFFIX = ".meta.json"


@dataclass
class SnapshotMetadata:
    timestamp: str
    record_count: int
    last_record_id: int
    term_count: int
    tag_count: int
    stale_count: int
    content_hash: str
    created_by: str = "spine"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SnapshotMetadata":
        known = {f.name for f in fields(cls)}
        missing = known - set(data) - {"created_by"}
        if missing:
            raise ValueError(f"snapshot metadata lacks {sorted(missing)}")
        return cls(**{key: value for key, value in data.items() if key in known})


def _meta_path(snapshot_path: Path) -> Path:
    return snapshot_path.with_suffix(META_SUFFIX)


def _write_atomic(path: Path, data: bytes):
    temp_path = path.with_name(path.name + ".tmp")
    try:
        with open(temp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    finally:
        if temp_path.exists():
            temp_path.unlink()


class SnapshotManager:
    """
    Writes, validates, loads and prunes index snapshots.

    Usage:
        snapshots = SnapshotManager(Path("data/snapshots"), max_snapshots=5)
        snapshots.create_snapshot(index_ref.current)

        loaded = snapshots.load_latest()
        if loaded:
            index, metadata = loaded
    """

    def __init__(self, snapshot_dir: Path, max_snapshots: int = 5):
        self.snapshot_dir = Path(snapshot_dir)
        self.max_snapshots = max(1, max_snapshots)
        self.snapshot_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"[Snapshots] Using {self.snapshot_dir} (keep {self.max_snapshots})")

    # ---------------------------------------------------------------------------
    # Write
    # ---------------------------------------------------------------------------

    def _next_path(self, last_record_id: int, timestamp: str) -> Path:
        for seq in range(1000):
            path = self.snapshot_dir / f"index-{last_record_id:012d}-{timestamp}-{seq:03d}.snap"
            if not path.exists():
                return path
        raise OSError(f"no free snapshot name for {timestamp}")

    def create_snapshot(
        self,
        index: InvertedIndex,
        created_by: str = "spine",
        write_lock: Optional[ContextManager] = None,
    ) -> Optional[Path]:
        """
        Snapshot the index. Returns the .snap path, or None if the write failed.

        Pass the writer lock when the index is live: the copy is taken under
        it, and the metadata is derived from that copy alone.
        """
        with write_lock if write_lock is not None else nullcontext():
            state = index.to_dict()

        payload = json.dumps(state, sort_keys=True).encode("utf-8")
        metadata = SnapshotMetadata(
            timestamp=datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f"),
            record_count=len(set(state["indexed"]) - set(state["stale"])),
            last_record_id=state["last_record_id"],
            term_count=len(state["terms"]),
            tag_count=len(state["tags"]),
            stale_count=len(state["stale"]),
            content_hash=hashlib.sha256(payload).hexdigest(),
            created_by=created_by,
        )

        snapshot_path = None
        try:
            snapshot_path = self._next_path(metadata.last_record_id, metadata.timestamp)
            _write_atomic(_meta_path(snapshot_path), json.dumps(asdict(metadata), indent=2).encode("utf-8"))
            _write_atomic(snapshot_path, payload)
        except OSError as e:
            logger.error(f"[Snapshots] Failed to write snapshot: {e}")
            if snapshot_path is not None:
                _meta_path(snapshot_path).unlink(missing_ok=True)
            return None

        logger.info(f"[Snapshots] Wrote {snapshot_path.name}: {metadata.record_count} records, "
                    f"{metadata.term_count} terms, {metadata.tag_count} tags")
        self._prune_old_snapshots()
        return snapshot_path

    # ---------------------------------------------------------------------------
    # Read
    # ---------------------------------------------------------------------------

    def _read_metadata(self, path: Path) -> Optional[SnapshotMetadata]:
        meta_path = _meta_path(path)
        if not meta_path.exists():
            return None
        try:
            return SnapshotMetadata.from_dict(json.loads(meta_path.read_text(encoding="utf-8")))
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"[Snapshots] Unreadable metadata {meta_path.name}: {e}")
            return None

    def _read_verified(self, path: Path) -> Optional[Tuple[bytes, SnapshotMetadata]]:
        """Payload bytes and metadata, or None if either is missing or the checksum is off."""
        metadata = self._read_metadata(path)
        if metadata is None:
            logger.warning(f"[Snapshots] No metadata for {path.name}")
            return None
        try:
            payload = path.read_bytes()
        except OSError as e:
            logger.warning(f"[Snapshots] Cannot read {path.name}: {e}")
            return None
        if hashlib.sha256(payload).hexdigest() != metadata.content_hash:
            logger.warning(f"[Snapshots] Checksum mismatch: {path.name}")
            return None
        return payload, metadata

    def get_snapshots(self) -> List[Tuple[Path, Optional[SnapshotMetadata]]]:
        """All snapshots, newest first."""
        paths = sorted(self.snapshot_dir.glob(SNAPSHOT_GLOB), reverse=True)
        return [(path, self._read_metadata(path)) for path in paths]

    def validate_snapshot(self, path: Path) -> bool:
        return path.exists() and self._read_verified(path) is not None

    def get_latest_snapshot(self) -> Optional[Tuple[Path, SnapshotMetadata]]:
        """Newest snapshot whose checksum matches."""
        for path, metadata in self.get_snapshots():
            if metadata is not None and self.validate_snapshot(path):
                return path, metadata
        return None

    def load_snapshot(self, path: Path) -> Optional[Tuple[InvertedIndex, SnapshotMetadata]]:
        verified = self._read_verified(path)
        if verified is None:
            return None

        payload, metadata = verified
        try:
            index = InvertedIndex.from_dict(json.loads(payload))
        except (ValueError, TypeError, AttributeError) as e:
            logger.error(f"[Snapshots] Corrupt payload in {path.name}: {e}")
            return None

        logger.info(f"[Snapshots] Loaded {path.name}: {index.record_count} records")
        return index, metadata

    def load_latest(self) -> Optional[Tuple[InvertedIndex, SnapshotMetadata]]:
        """Newest snapshot that validates and parses. Older ones are tried in turn."""
        for path, metadata in self.get_snapshots():
            if metadata is None:
                continue
            loaded = self.load_snapshot(path)
            if loaded is not None:
                return loaded
        return None

    # ---------------------------------------------------------------------------
    # Housekeeping
    # ---------------------------------------------------------------------------

    def _prune_old_snapshots(self):
        for path, _ in self.get_snapshots()[self.max_snapshots:]:
            if self.delete_snapshot(path):
                logger.info(f"[Snapshots] Pruned {path.name}")

    def delete_snapshot(self, path: Path) -> bool:
        try:
            path.unlink(missing_ok=True)
            _meta_path(path).unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"[Snapshots] Could not delete {path.name}: {e}")
            return False
        return True

    def get_stats(self) -> Dict[str, Any]:
        snapshots = self.get_snapshots()
        newest = snapshots[0][1] if snapshots else None
        return {
            "snapshot_count": len(snapshots),
            "max_snapshots": self.max_snapshots,
            "total_size_mb": round(sum(p.stat().st_size for p, _ in snapshots if p.exists()) / (1024 * 1024), 2),
            "latest": newest.timestamp if newest else None,
            "latest_last_record_id": newest.last_record_id if newest else None,
            "snapshot_dir": str(self.snapshot_dir),
        }
