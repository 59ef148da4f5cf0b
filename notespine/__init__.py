"""
NoteSpine - durable reading-notes store
=======================================

NoteSpine keeps reading notes, quotes and summaries taken from books as
immutable records, indexes them by body term and by tag, and answers
boolean AND/OR queries over both.

Architecture:
    record_store.py    - SQLite append-only record log (tombstones, purge)
    inverted_index.py  - Term/tag posting lists, lazy unindex
    query.py           - Query parsing and merge-based evaluation
    compaction.py      - Tombstone GC with atomic index swap
    snapshots.py       - On-disk index snapshots
    recovery.py        - Startup: snapshot + catch-up, or full rebuild
    spine.py           - NoteSpine facade (single writer)
    server.py          - HTTP API server (port 7790)

Usage:
    from notespine import NoteSpine

    spine = NoteSpine()
    note_id = spine.ingest("Concurrency in Go", "channels are simple to learn", ["go"])
    hits = spine.query("channels AND tag:go")
"""

from .config import SpineConfig, load_config
from .errors import (
    IndexCorruption,
    NoteSpineError,
    NotFound,
    QueryCancelled,
    QuerySyntaxError,
    StorageFull,
)
from .query import And, CancellationToken, Or, Tag, Term, parse_query
from .record_store import Record
from .spine import NoteSpine

__all__ = [
    "NoteSpine",
    "SpineConfig",
    "load_config",
    "Record",
    "Term",
    "Tag",
    "And",
    "Or",
    "parse_query",
    "CancellationToken",
    "NoteSpineError",
    "NotFound",
    "StorageFull",
    "IndexCorruption",
    "QueryCancelled",
    "QuerySyntaxError",
    "__version__",
]
__version__ = "1.0.0"
