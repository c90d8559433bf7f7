"""
Per-operation metrics collector.

Tracks latency, outcome and process memory for ingestion, quiz generation and
session sweeps. Each recorded operation is appended to <log_dir>/metrics.jsonl.
"""
from __future__ import annotations

import json
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path

import psutil

from .config import METRICS_DIR


class _OperationStats:
    __slots__ = ("count", "errors", "total_ms", "min_ms", "max_ms")

    def __init__(self):
        self.count = 0
        self.errors = 0
        self.total_ms = 0.0
        self.min_ms = float("inf")
        self.max_ms = 0.0


class MetricsCollector:
    """Thread-safe operation metrics tracker with JSONL file logging."""

    def __init__(self, log_dir: str | Path = METRICS_DIR):
        self._lock = threading.Lock()
        self._start_time: float = time.time()
        self._operations: dict[str, _OperationStats] = {}

        self._log_dir = Path(log_dir)
        self._log_dir.mkdir(parents=True, exist_ok=True)
        self._log_path = self._log_dir / "metrics.jsonl"

        # Process handle for memory tracking.
        self._process = psutil.Process(os.getpid())

    @property
    def log_path(self) -> Path:
        return self._log_path

    def record(self, operation: str, latency_ms: float, success: bool, **fields) -> None:
        """Records one operation outcome and appends it to the JSONL log."""
        entry = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "operation": operation,
            "latency_ms": round(latency_ms, 2),
            "success": success,
            "rss_mb": round(self._process.memory_info().rss / (1024 * 1024), 1),
            **fields,
        }

        with self._lock:
            stats = self._operations.setdefault(operation, _OperationStats())
            stats.count += 1
            stats.total_ms += latency_ms
            stats.min_ms = min(stats.min_ms, latency_ms)
            stats.max_ms = max(stats.max_ms, latency_ms)
            if not success:
                stats.errors += 1

        # Append to JSONL file outside the lock.
        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=True, default=str) + "\n")
        except OSError:
            pass

    @contextmanager
    def track(self, operation: str, **fields):
        """Times the enclosed block; an exception marks it failed and is re-raised."""
        started = time.perf_counter()
        success = True
        try:
            yield
        except Exception:
            success = False
            raise
        finally:
            self.record(operation, (time.perf_counter() - started) * 1000.0, success, **fields)

    def get_summary(self) -> dict:
        """Returns a snapshot per operation plus process memory and uptime."""
        with self._lock:
            operations = {
                name: {
                    "count": stats.count,
                    "errors": stats.errors,
                    "avg_ms": round(stats.total_ms / stats.count, 2) if stats.count else 0.0,
                    "min_ms": round(stats.min_ms, 2) if stats.count else 0.0,
                    "max_ms": round(stats.max_ms, 2),
                    "error_rate_percent": round(stats.errors / stats.count * 100, 2) if stats.count else 0.0,
                }
                for name, stats in sorted(self._operations.items())
            }

        mem_info = self._process.memory_info()
        return {
            "operations": operations,
            "memory": {
                "rss_mb": round(mem_info.rss / (1024 * 1024), 1),
                "vms_mb": round(mem_info.vms / (1024 * 1024), 1),
            },
            "uptime_seconds": round(time.time() - self._start_time, 1),
        }
