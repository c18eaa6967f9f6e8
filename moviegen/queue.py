"""
Redis reliable FIFO queue for movie generation tasks.

A task is always in exactly one list, so a crashed worker never loses it:

  enqueue   LPUSH   → moviegen:queue:pending
  dequeue   BLMOVE  pending → moviegen:queue:processing
  ack       LREM from processing
  nack      LREM, then back to pending or, after MAX_DELIVERIES,
            → moviegen:queue:dead_letter

Per-task metadata lives in the hash `moviegen:queue:meta:{job_id}` (TTL 24h).
Re-delivering a movie task is safe: the orchestrator resumes from the job's
last persisted status.
"""

import json
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

PENDING_KEY = "moviegen:queue:pending"
PROCESSING_KEY = "moviegen:queue:processing"
DEAD_LETTER_KEY = "moviegen:queue:dead_letter"
META_PREFIX = "moviegen:queue:meta:"
META_TTL = 86400

TASK_MOVIE_GENERATE = "movie_generate"

MAX_DELIVERIES = 3
# A movie takes many minutes; anything in flight longer than this is orphaned.
STALE_AFTER_SECONDS = 3 * 3600
SECONDS_PER_MOVIE = 600


def _text(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class TaskQueue:
    def __init__(self, redis_client):
        self.redis = redis_client

    def _meta_key(self, job_id: str) -> str:
        return f"{META_PREFIX}{job_id}"

    # ── Producer ─────────────────────────────────────────────────────────

    def enqueue(self, job_id: str, task_type: str = TASK_MOVIE_GENERATE, payload: Optional[dict] = None) -> int:
        """Append a task. Returns its 1-based position in the pending list."""
        meta_key = self._meta_key(job_id)
        pipe = self.redis.pipeline(transaction=True)
        pipe.hset(meta_key, mapping={
            "job_id": job_id,
            "task_type": task_type,
            "payload": json.dumps(payload or {}),
            "enqueued_at": str(time.time()),
            "status": "queued",
            "deliveries": "0",
        })
        pipe.expire(meta_key, META_TTL)
        pipe.lpush(PENDING_KEY, job_id)
        pipe.execute()

        position = self.redis.llen(PENDING_KEY)
        logger.info(f"[{job_id}] Enqueued {task_type} at position {position}")
        return position

    # ── Consumer ─────────────────────────────────────────────────────────

    def dequeue(self, timeout: int = 5) -> Optional[str]:
        """Block up to `timeout` seconds for the next task; it moves to processing."""
        result = self.redis.blmove(PENDING_KEY, PROCESSING_KEY, timeout, "RIGHT", "LEFT")
        if result is None:
            return None
        job_id = _text(result)
        self.redis.hset(self._meta_key(job_id), mapping={
            "status": "processing",
            "processing_started_at": str(time.time()),
        })
        logger.info(f"[{job_id}] Dequeued for processing")
        return job_id

    def ack(self, job_id: str):
        self.redis.lrem(PROCESSING_KEY, 1, job_id)
        self.set_status(job_id, "completed")
        logger.info(f"[{job_id}] Task acknowledged")

    def nack(self, job_id: str, error: str = "") -> bool:
        """
        Return a task that crashed its worker.

        Returns:
            True if it was requeued, False if it went to the dead-letter list.
        """
        meta_key = self._meta_key(job_id)
        deliveries = int(self.redis.hget(meta_key, "deliveries") or 0) + 1
        fields = {"deliveries": str(deliveries)}
        if error:
            fields["last_error"] = error[:500]
        self.redis.hset(meta_key, mapping=fields)
        self.redis.lrem(PROCESSING_KEY, 1, job_id)

        if deliveries < MAX_DELIVERIES:
            self.redis.lpush(PENDING_KEY, job_id)
            self.set_status(job_id, "queued")
            logger.warning(f"[{job_id}] Task requeued (delivery {deliveries}/{MAX_DELIVERIES}): {error}")
            return True

        self.redis.lpush(DEAD_LETTER_KEY, job_id)
        self.set_status(job_id, "dead_letter")
        logger.error(f"[{job_id}] Task dead-lettered after {deliveries} deliveries: {error}")
        return False

    def recover_stale(self, now: Optional[float] = None) -> int:
        """Move tasks stuck in processing back to pending. Run at startup."""
        now = now or time.time()
        recovered = 0
        for item in self.redis.lrange(PROCESSING_KEY, 0, -1):
            job_id = _text(item)
            meta = self.get_meta(job_id)
            if meta is None:
                self.redis.lrem(PROCESSING_KEY, 1, job_id)
                logger.warning(f"[{job_id}] Dropped orphaned task without metadata")
                continue
            started = float(meta.get("processing_started_at") or 0)
            if started and now - started > STALE_AFTER_SECONDS:
                self.redis.lrem(PROCESSING_KEY, 1, job_id)
                self.redis.lpush(PENDING_KEY, job_id)
                self.set_status(job_id, "queued")
                recovered += 1
                logger.warning(f"[{job_id}] Recovered stale task (in flight {int(now - started)}s)")
        if recovered:
            logger.info(f"Recovered {recovered} stale task(s)")
        return recovered

    # ── Inspection ───────────────────────────────────────────────────────

    def get_meta(self, job_id: str) -> Optional[dict]:
        data = self.redis.hgetall(self._meta_key(job_id))
        if not data:
            return None
        return {_text(k): _text(v) for k, v in data.items()}

    def set_status(self, job_id: str, status: str):
        self.redis.hset(self._meta_key(job_id), "status", status)

    def position(self, job_id: str) -> Optional[int]:
        """1-based position among pending tasks (1 = next), None if not pending."""
        items = [_text(i) for i in self.redis.lrange(PENDING_KEY, 0, -1)]
        if job_id not in items:
            return None
        # popped from the right
        return len(items) - items.index(job_id)

    def pending_count(self) -> int:
        return self.redis.llen(PENDING_KEY)

    def processing_count(self) -> int:
        return self.redis.llen(PROCESSING_KEY)

    def is_queued_or_processing(self, job_id: str) -> bool:
        meta = self.get_meta(job_id)
        return bool(meta) and meta.get("status") in ("queued", "processing")

    def status(self, job_id: str) -> dict:
        meta = self.get_meta(job_id) or {}
        position = self.position(job_id)
        return {
            "job_id": job_id,
            "status": meta.get("status", "unknown"),
            "queue_position": position,
            "estimated_wait_seconds": (position - 1) * SECONDS_PER_MOVIE if position else 0,
            "pending": self.pending_count(),
            "processing": self.processing_count(),
        }
