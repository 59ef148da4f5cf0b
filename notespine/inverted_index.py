"""
NoteSpine Inverted Index
========================

Term and tag posting lists over note records.

- Posting lists hold record ids sorted ascending, so AND/OR are linear merges
- unindex() is lazy: the id is marked stale and filtered at read time,
  compaction drops it for good
- The index is derived data, rebuildable from the RecordStore at any time

Usage:
    from notespine.inverted_index import InvertedIndex

    index = InvertedIndex.build(store.iter_records())
    ids = index.term_postings("channels")
"""

import re
import bisect
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from .record_store import Record

logger = logging.getLogger(__name__)

_SPLIT_RE = re.compile(r"[\W_]+")


def tokenize(text: str) -> List[str]:
    """Lowercase, split on non-alphanumeric, drop empty tokens."""
    return [token for token in _SPLIT_RE.split(text.lower()) if token]


def normalize_tag(tag: str) -> str:
    return tag.strip().lower()


def _insert_sorted(postings: List[int], record_id: int):
    # Ids arrive in increasing order on the append path
    if not postings or postings[-1] < record_id:
        postings.append(record_id)
        return
    pos = bisect.bisect_left(postings, record_id)
    if pos == len(postings) or postings[pos] != record_id:
        postings.insert(pos, record_id)


class InvertedIndex:
    """
    Posting lists keyed by body term and by tag.

    Mutated only by the single writer (NoteSpine or the compactor building a
    fresh copy). Readers get copies of posting lists, so a concurrent append
    is either fully visible or not at all for that list.
    """

    def __init__(self):
        self._terms: Dict[str, List[int]] = {}
        self._tags: Dict[str, List[int]] = {}
        self._stale: Set[int] = set()
        self._indexed: Set[int] = set()
        self._last_record_id = 0

    @classmethod
    def build(cls, records: Iterable[Record]) -> "InvertedIndex":
        """Build a fresh index, skipping tombstoned records."""
        index = cls()
        for record in records:
            if not record.deleted:
                index.index(record)
        return index

    def index(self, record: Record):
        """Insert record.id into every term and tag posting it belongs to."""
        for term in set(tokenize(record.body)):
            _insert_sorted(self._terms.setdefault(term, []), record.id)

        for tag in record.tags:
            key = normalize_tag(tag)
            if key:
                _insert_sorted(self._tags.setdefault(key, []), record.id)

        self._indexed.add(record.id)
        self._stale.discard(record.id)
        if record.id > self._last_record_id:
            self._last_record_id = record.id

    def unindex(self, record_id: int):
        """Lazily remove a record: mark it stale, posting lists are left as is."""
        if record_id in self._indexed:
            self._stale.add(record_id)

    def is_stale(self, record_id: int) -> bool:
        return record_id in self._stale

    def term_postings(self, term: str) -> List[int]:
        return list(self._terms.get(term, ()))

    def tag_postings(self, tag: str) -> List[int]:
        return list(self._tags.get(normalize_tag(tag), ()))

    def referenced_ids(self) -> Set[int]:
        """Ids present in posting lists and not marked stale."""
        return set(self._indexed) - set(self._stale)

    @property
    def last_record_id(self) -> int:
        """Highest record id this index has seen."""
        return self._last_record_id

    @property
    def stale_count(self) -> int:
        return len(self._stale)

    @property
    def record_count(self) -> int:
        return len(self._indexed) - len(self._stale)

    def stats(self) -> Dict[str, Any]:
        return {
            "records": self.record_count,
            "stale": self.stale_count,
            "terms": len(self._terms),
            "tags": len(self._tags),
            "postings": sum(len(p) for p in self._terms.values()) + sum(len(p) for p in self._tags.values()),
            "last_record_id": self._last_record_id,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Detached, serializable copy for snapshots. Take it under the writer lock."""
        return {
            "terms": {term: list(ids) for term, ids in self._terms.items()},
            "tags": {tag: list(ids) for tag, ids in self._tags.items()},
            "stale": sorted(self._stale),
            "indexed": sorted(self._indexed),
            "last_record_id": self._last_record_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InvertedIndex":
        index = cls()
        index._terms = {term: sorted(ids) for term, ids in data.get("terms", {}).items()}
        index._tags = {tag: sorted(ids) for tag, ids in data.get("tags", {}).items()}
        index._stale = set(data.get("stale", []))
        index._indexed = set(data.get("indexed", []))
        index._last_record_id = data.get("last_record_id", 0)
        return index


class IndexRef:
    """
    Holder for the live index.

    swap() is a single attribute assignment, so readers always see either
    the old or the new index, never a mix. Callers hold the writer lock.
    """

    def __init__(self, index: Optional[InvertedIndex] = None):
        self._index = index or InvertedIndex()
        self.generation = 0

    @property
    def current(self) -> InvertedIndex:
        return self._index

    def swap(self, new_index: InvertedIndex) -> InvertedIndex:
        """Install new_index, return the one it replaced."""
        old = self._index
        self._index = new_index
        self.generation += 1
        logger.debug(f"[IndexRef] Swapped index (generation {self.generation})")
        return old
