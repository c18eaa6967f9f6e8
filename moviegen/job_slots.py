"""
In-process concurrency guard for orchestrator runs.

Used when Redis is not configured and jobs run as asyncio tasks inside the
API process. Bounds how many movies generate at once so a burst of start
requests cannot flood the vendors.
"""

import threading

MAX_CONCURRENT_JOBS = 3

_lock = threading.Lock()
_limit = MAX_CONCURRENT_JOBS
_active: set[str] = set()


def configure(max_jobs: int):
    global _limit
    with _lock:
        _limit = max(1, max_jobs)


def acquire(job_id: str) -> bool:
    """Claim a slot for `job_id`. False when at capacity or already running."""
    with _lock:
        if job_id in _active or len(_active) >= _limit:
            return False
        _active.add(job_id)
        return True


def release(job_id: str):
    with _lock:
        _active.discard(job_id)


def is_active(job_id: str) -> bool:
    with _lock:
        return job_id in _active


def active_count() -> int:
    with _lock:
        return len(_active)


def reset():
    """Forget every slot. Tests only."""
    global _limit
    with _lock:
        _active.clear()
        _limit = MAX_CONCURRENT_JOBS
