"""
NoteSpine Server - FastAPI ingestion and query API

Port: 7790 (NOTESPINE_PORT)
Test: curl http://127.0.0.1:7790/query -d '{"query": "channels AND tag:go"}' -H 'Content-Type: application/json'
"""

import time
import atexit
import logging
from typing import List, Dict, Any, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from . import __version__
from .config import load_config
from .errors import NotFound, QueryCancelled, QuerySyntaxError, StorageFull
from .query import CancellationToken, RANK_MODES, RANK_RECENCY
from .spine import NoteSpine

logger = logging.getLogger(__name__)

MAX_LIMIT = 200

app = FastAPI(title="NoteSpine", version=__version__)

_spine: Optional[NoteSpine] = None
_startup_time = time.time()


def get_spine() -> NoteSpine:
    """Get or create the NoteSpine singleton."""
    global _spine
    if _spine is None:
        logger.info("[NoteSpine] Initializing instance...")
        _spine = NoteSpine(load_config())
    return _spine


# Request models
class NoteRequest(BaseModel):
    source: str
    body: str
    tags: List[str] = Field(default_factory=list)


class QueryRequest(BaseModel):
    query: Optional[str] = None              # Text form: "channels AND tag:go"
    expr: Optional[Dict[str, Any]] = None    # Dict form: {"and": [{"term": ...}, {"tag": ...}]}
    limit: int = 20
    rank: str = RANK_RECENCY
    timeout_ms: Optional[float] = None


@app.get("/")
def root() -> Dict[str, Any]:
    """Root endpoint."""
    return {"service": "NoteSpine", "version": __version__}


@app.get("/health")
def health() -> Dict[str, Any]:
    """Health check endpoint."""
    spine = get_spine()
    return {
        **spine.health(),
        "uptime": round(time.time() - _startup_time, 2),
        "version": __version__,
    }


@app.get("/stats")
def stats() -> Dict[str, Any]:
    """Store, index, snapshot and compaction statistics."""
    return get_spine().stats()


@app.get("/metrics")
def get_metrics() -> Dict[str, Any]:
    """Latency percentiles for note_append, note_delete, note_query and compaction."""
    return get_spine().metrics.get_all_metrics()


@app.post("/metrics/export")
def export_metrics() -> Dict[str, Any]:
    """Export metrics to file and return snapshot."""
    return get_spine().metrics.export_metrics()


@app.post("/notes")
def ingest_note(request: NoteRequest) -> Dict[str, Any]:
    """Append a note. Durable before the response is sent."""
    spine = get_spine()
    try:
        record_id = spine.ingest(request.source, request.body, request.tags)
    except StorageFull as e:
        raise HTTPException(status_code=507, detail=f"Storage full: {e}")
    return {"success": True, "id": record_id}


@app.get("/notes/{record_id}")
def get_note(record_id: int) -> Dict[str, Any]:
    try:
        return get_spine().get(record_id).to_dict()
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.delete("/notes/{record_id}")
def delete_note(record_id: int) -> Dict[str, Any]:
    try:
        get_spine().delete(record_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, "id": record_id}


@app.post("/query")
def query(request: QueryRequest) -> Dict[str, Any]:
    """Boolean term/tag query. Returns ids plus bodies, newest first by default."""
    if request.query is not None and request.expr is not None:
        raise HTTPException(status_code=400, detail="Send either query or expr, not both")
    if request.rank not in RANK_MODES:
        raise HTTPException(status_code=400, detail=f"rank must be one of {list(RANK_MODES)}")

    limit = max(0, min(request.limit, MAX_LIMIT))
    cancel = None
    if request.timeout_ms is not None:
        cancel = CancellationToken(timeout=request.timeout_ms / 1000)

    start = time.time()
    spine = get_spine()
    try:
        hits = spine.query(
            request.expr if request.expr is not None else request.query,
            limit=limit,
            rank=request.rank,
            cancel=cancel,
        )
    except QuerySyntaxError as e:
        raise HTTPException(status_code=400, detail=f"Bad query: {e}")
    except QueryCancelled:
        raise HTTPException(status_code=408, detail="Query cancelled (timeout)")
    elapsed = (time.time() - start) * 1000

    return {
        "success": True,
        "query": request.query if request.query is not None else request.expr,
        "ids": [hit.id for hit in hits],
        "results": [hit.to_dict() for hit in hits],
        "count": len(hits),
        "elapsed_ms": round(elapsed, 2),
    }


@app.post("/compact")
def compact(force: bool = True) -> Dict[str, Any]:
    """Run compaction now, or only past the tombstone threshold when force=false."""
    spine = get_spine()
    result = spine.compact() if force else spine.maybe_compact()
    if result is None:
        return {"success": True, "compacted": False, "tombstone_ratio": spine.compactor.tombstone_ratio()}
    return {"success": True, "compacted": True, **result.to_dict()}


@app.post("/snapshot")
def snapshot() -> Dict[str, Any]:
    path = get_spine().snapshot()
    return {"success": path is not None, "snapshot": str(path) if path else None}


def _graceful_shutdown():
    """Snapshot and close the spine before exit."""
    global _spine
    if _spine is None:
        return
    logger.info("[NoteSpine] Graceful shutdown initiated...")
    _spine.close()
    _spine = None


def main():
    config = load_config()
    logging.basicConfig(level=config.log_level, format='[%(asctime)s] %(message)s')

    global _spine
    _spine = NoteSpine(config)
    atexit.register(_graceful_shutdown)

    logger.info(f"[NoteSpine] Serving on {config.host}:{config.port}")
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
