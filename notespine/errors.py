"""
NoteSpine errors.

Every error raised by the store, the index or the query engine derives from
NoteSpineError so callers (the HTTP layer in particular) can map them in one
place.
"""

from typing import Iterable, Optional


class NoteSpineError(Exception):
    """Base class for NoteSpine errors."""


class NotFound(NoteSpineError, KeyError):
    """Record does not exist or is tombstoned."""

    def __init__(self, record_id: int):
        self.record_id = record_id
        super().__init__(record_id)

    def __str__(self) -> str:
        return f"record {self.record_id} not found"


class StorageFull(NoteSpineError):
    """The durable medium rejected an append. Retry after freeing space."""


class IndexCorruption(NoteSpineError):
    """Posting lists reference records the store does not hold."""

    def __init__(self, message: str, missing_ids: Optional[Iterable[int]] = None):
        super().__init__(message)
        self.missing_ids = sorted(missing_ids or [])


class QueryCancelled(NoteSpineError):
    """A query was aborted through its cancellation token."""


class QuerySyntaxError(NoteSpineError, ValueError):
    """Malformed query text or query dict."""
