"""
NoteSpine Metrics
Per-operation latency windows for appends, deletes, queries and compactions.

Usage:
    from notespine.metrics import MetricsCollector

    metrics = MetricsCollector(metrics_dir=Path("data/metrics"))

    with metrics.timer("note_query"):
        hits = engine.search(...)

    metrics.get_percentiles("note_query")
    # {"p50": 0.4, "p95": 1.2, "p99": 3.1, "count": 500, ...}
"""

import json
import time
import logging
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

SLOW_OPERATION_MS = 250.0


def _nearest_rank(ordered: List[float], pct: float) -> float:
    """Nearest-rank percentile of an ascending list."""
    rank = max(int(round(pct / 100 * len(ordered))) - 1, 0)
    return ordered[min(rank, len(ordered) - 1)]


@dataclass
class OperationWindow:
    """Most recent latencies of one operation plus its lifetime counters."""
    samples: Deque[float]
    calls: int = 0
    errors: int = 0
    slow: int = 0
    last_error: Optional[str] = None
    last_seen: Optional[datetime] = field(default=None)

    def summary(self) -> Dict[str, Any]:
        ordered = sorted(self.samples)
        if not ordered:
            return {"p50": 0, "p95": 0, "p99": 0, "count": 0, "avg": 0}
        return {
            "p50": round(_nearest_rank(ordered, 50), 2),
            "p95": round(_nearest_rank(ordered, 95), 2),
            "p99": round(_nearest_rank(ordered, 99), 2),
            "count": len(ordered),
            "avg": round(sum(ordered) / len(ordered), 2),
            "min": round(ordered[0], 2),
            "max": round(ordered[-1], 2),
        }


class MetricsCollector:
    """Thread-safe latency and error tracking for NoteSpine operations."""

    def __init__(self, window_size: int = 1000, metrics_dir: Optional[Path] = None,
                 slow_ms: float = SLOW_OPERATION_MS):
        self.window_size = window_size
        self.metrics_dir = Path(metrics_dir) if metrics_dir else None
        self.slow_ms = slow_ms
        self._ops: Dict[str, OperationWindow] = {}
        self._lock = threading.Lock()
        self._started = time.monotonic()

    def _window(self, operation: str) -> OperationWindow:
        window = self._ops.get(operation)
        if window is None:
            window = self._ops[operation] = OperationWindow(samples=deque(maxlen=self.window_size))
        return window

    def record(self, operation: str, latency_ms: float) -> None:
        with self._lock:
            window = self._window(operation)
            window.samples.append(latency_ms)
            window.calls += 1
            window.last_seen = datetime.now(timezone.utc)
            if latency_ms >= self.slow_ms:
                window.slow += 1
        if latency_ms >= self.slow_ms:
            logger.debug(f"[Metrics] Slow {operation}: {latency_ms:.1f}ms")

    def record_error(self, operation: str, error: Optional[BaseException] = None) -> None:
        with self._lock:
            window = self._window(operation)
            window.errors += 1
            if error is not None:
                window.last_error = f"{type(error).__name__}: {error}"

    @contextmanager
    def timer(self, operation: str):
        """Time the block. Errors are counted against the operation and re-raised."""
        start = time.perf_counter()
        try:
            yield
        except Exception as e:
            self.record_error(operation, e)
            raise
        finally:
            self.record(operation, (time.perf_counter() - start) * 1000)

    def get_percentiles(self, operation: str) -> Dict[str, Any]:
        with self._lock:
            window = self._ops.get(operation)
            samples = list(window.samples) if window else []
        return OperationWindow(samples=deque(samples)).summary()

    def get_all_metrics(self) -> Dict[str, Any]:
        uptime = time.monotonic() - self._started
        with self._lock:
            names = sorted(self._ops)
            calls = {name: self._ops[name].calls for name in names}
            errors = {name: self._ops[name].errors for name in names if self._ops[name].errors}
            slow = {name: self._ops[name].slow for name in names if self._ops[name].slow}
            last_errors = {name: self._ops[name].last_error for name in names if self._ops[name].last_error}

        total_calls = sum(calls.values())
        total_errors = sum(errors.values())
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(uptime, 1),
            "latency": {name: self.get_percentiles(name) for name in names},
            "calls": calls,
            "slow_operations": slow,
            "throughput": {
                "total_requests": total_calls,
                "requests_per_minute": round(total_calls / (uptime / 60), 2) if uptime > 0 else 0,
            },
            "errors": {
                "total": total_errors,
                "by_operation": errors,
                "last": last_errors,
                "error_rate_pct": round(total_errors / total_calls * 100, 3) if total_calls else 0,
            },
        }

    def export_metrics(self) -> Dict[str, Any]:
        """Write the current metrics to <metrics_dir>/current.json and return them."""
        snapshot = self.get_all_metrics()
        if self.metrics_dir is not None:
            self.metrics_dir.mkdir(parents=True, exist_ok=True)
            target = self.metrics_dir / "current.json"
            target.write_text(json.dumps(snapshot, indent=2))
            logger.info(f"[Metrics] Exported to {target}")
        return snapshot
