"""
Thread-safe in-memory metrics for the worker.

  counters   jobs started/completed/failed, vendor calls per capability
  latency    last 100 samples per operation (ms)
  gauges     active jobs, queue depth
  errors     last 50 failures, message truncated

Everything resets on restart.
"""

import threading
import time
from collections import defaultdict
from typing import Dict, List

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)
_latency_samples: Dict[str, List[float]] = defaultdict(list)
_gauges: Dict[str, float] = {}
_recent_errors: List[dict] = []

MAX_SAMPLES = 100
MAX_ERRORS = 50


def inc_counter(name: str, amount: int = 1):
    with _lock:
        _counters[name] += amount


def record_latency(operation: str, duration_ms: float):
    with _lock:
        samples = _latency_samples[operation]
        samples.append(duration_ms)
        if len(samples) > MAX_SAMPLES:
            del samples[:-MAX_SAMPLES]


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_error(operation: str, error_type: str, message: str, job_id: str = ""):
    """Remember a failure for the /metrics error panel. Never pass credentials."""
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "operation": operation,
            "error_type": error_type,
            "message": message[:300],
            "job_id": job_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def _percentiles(samples: List[float]) -> dict:
    ordered = sorted(samples)
    n = len(ordered)
    return {
        "p50": ordered[n // 2],
        "p95": ordered[min(n - 1, int(n * 0.95))],
        "avg": round(sum(ordered) / n, 2),
        "count": n,
    }


def get_snapshot() -> dict:
    now = time.time()
    with _lock:
        errors_by_type: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            errors_by_type[f"{err['operation']}:{err['error_type']}"] += 1

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": {op: _percentiles(s) for op, s in _latency_samples.items() if s},
            "recent_errors": list(_recent_errors[-10:]),
            "error_patterns": dict(errors_by_type),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }


def reset():
    """Clear everything. Used by tests."""
    with _lock:
        _counters.clear()
        _latency_samples.clear()
        _gauges.clear()
        _recent_errors.clear()
