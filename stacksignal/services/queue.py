from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from stacksignal.services.records import QUEUE_JOB_STATUSES, QueueJobRecord
from stacksignal.services.store import Store

logger = logging.getLogger(__name__)

MIN_PRIORITY = 0
MAX_PRIORITY = 100
CANCELLED_ERROR = "cancelled"


class QueueFullError(Exception):
    """Raised when the queue holds too many active jobs to accept another."""


class QueueManager:
    def __init__(
        self,
        store: Store,
        *,
        default_priority: int = 50,
        default_max_attempts: int = 3,
        max_size: int = 1000,
    ) -> None:
        self.store = store
        self.default_priority = _clamp_priority(default_priority)
        self.default_max_attempts = max(1, default_max_attempts)
        self.max_size = max_size

    async def add_job(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        *,
        priority: int | None = None,
        max_attempts: int | None = None,
    ) -> str:
        if not isinstance(job_type, str) or not job_type.strip():
            raise ValueError("job type must be a non-empty string")
        attempts_limit = self.default_max_attempts if max_attempts is None else max_attempts
        if attempts_limit < 1:
            raise ValueError("max_attempts must be at least 1")

        counts = await self.store.count_queue_jobs()
        active = counts["pending"] + counts["processing"]
        if active >= self.max_size:
            raise QueueFullError(f"queue is full ({active}/{self.max_size} active jobs)")

        job = QueueJobRecord(
            id=str(uuid4()),
            type=job_type.strip(),
            status="pending",
            priority=_clamp_priority(self.default_priority if priority is None else priority),
            attempts=0,
            max_attempts=attempts_limit,
            created_at=_now(),
            payload=dict(payload or {}),
        )
        await self.store.insert_queue_job(job)
        logger.info("Queued job_id=%s type=%s priority=%s", job.id, job.type, job.priority)
        return job.id

    async def get_job(self, job_id: str) -> QueueJobRecord | None:
        return await self.store.get_queue_job(job_id)

    async def get_jobs_by_status(self, status: str | None = None, limit: int = 100) -> list[QueueJobRecord]:
        if status is not None and status not in QUEUE_JOB_STATUSES:
            raise ValueError(f"unknown queue job status: {status}")
        return await self.store.list_queue_jobs(status=status, limit=limit)

    async def claim_next_job(self) -> QueueJobRecord | None:
        return await self.store.claim_next_queue_job()

    async def complete_job(self, job_id: str, result: dict[str, Any] | None = None) -> bool:
        updated = await self.store.update_queue_job(
            job_id,
            expected_status="processing",
            changes={"status": "completed", "result": result, "completed_at": _now()},
        )
        return updated is not None

    async def fail_job(self, job_id: str, error: str) -> bool:
        updated = await self.store.update_queue_job(
            job_id,
            expected_status="processing",
            changes={"status": "failed", "last_error": error, "completed_at": _now()},
        )
        if updated is not None:
            logger.warning(
                "Queue job failed job_id=%s type=%s attempts=%s/%s error=%s",
                updated.id,
                updated.type,
                updated.attempts,
                updated.max_attempts,
                error,
            )
        return updated is not None

    async def retry_job(self, job_id: str) -> bool:
        job = await self.store.get_queue_job(job_id)
        if job is None or not job.can_retry:
            return False
        updated = await self.store.update_queue_job(
            job_id,
            expected_status="failed",
            changes={
                "status": "pending",
                "attempts": job.attempts + 1,
                "last_error": None,
                "started_at": None,
                "completed_at": None,
            },
        )
        if updated is not None:
            logger.info("Retrying job_id=%s attempt=%s/%s", job_id, updated.attempts, updated.max_attempts)
        return updated is not None

    async def cancel_job(self, job_id: str) -> bool:
        job = await self.store.get_queue_job(job_id)
        if job is None or job.status not in {"pending", "failed"} or job.is_dead:
            return False
        updated = await self.store.update_queue_job(
            job_id,
            expected_status=job.status,
            changes={
                "status": "failed",
                "attempts": job.max_attempts,
                "last_error": CANCELLED_ERROR,
                "completed_at": _now(),
            },
        )
        if updated is not None:
            logger.info("Cancelled job_id=%s from status=%s", job_id, job.status)
        return updated is not None

    async def clear_failed_jobs(self) -> int:
        removed = await self.store.delete_dead_queue_jobs()
        if removed:
            logger.info("Cleared %s dead queue jobs", removed)
        return removed

    async def get_queue_stats(self) -> dict[str, int]:
        counts = await self.store.count_queue_jobs()
        return {
            "pending": counts["pending"],
            "processing": counts["processing"],
            "completed": counts["completed"],
            "failed": counts["failed"],
            "retryable": counts["failed"] - counts["dead"],
            "dead": counts["dead"],
            "total": counts["pending"] + counts["processing"] + counts["completed"] + counts["failed"],
        }


def _clamp_priority(value: int) -> int:
    return max(MIN_PRIORITY, min(MAX_PRIORITY, int(value)))


def _now() -> datetime:
    return datetime.now(timezone.utc)
