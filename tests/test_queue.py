from __future__ import annotations

import asyncio

import pytest

from stacksignal.services.queue import QueueFullError, QueueManager
from stacksignal.services.records import QueueJobRecord
from stacksignal.services.store import InMemoryStore


def test_add_job_starts_pending_with_defaults_and_clamped_priority() -> None:
    async def run() -> list[QueueJobRecord | None]:
        queue = QueueManager(InMemoryStore())
        default_id = await queue.add_job("analyze_posting", {"job_id": "job-1"})
        high_id = await queue.add_job("analyze_posting", priority=150, max_attempts=5)
        low_id = await queue.add_job("analyze_posting", priority=-5)
        return [await queue.get_job(job_id) for job_id in (default_id, high_id, low_id)]

    default, high, low = asyncio.run(run())
    assert default is not None and high is not None and low is not None
    assert default.status == "pending"
    assert default.attempts == 0
    assert default.priority == 50
    assert default.max_attempts == 3
    assert default.payload == {"job_id": "job-1"}
    assert high.priority == 100
    assert high.max_attempts == 5
    assert low.priority == 0


def test_add_job_rejects_invalid_input_and_full_queue() -> None:
    async def run() -> None:
        queue = QueueManager(InMemoryStore(), max_size=2)
        with pytest.raises(ValueError):
            await queue.add_job("  ")
        with pytest.raises(ValueError):
            await queue.add_job("process_batch", max_attempts=0)

        await queue.add_job("process_batch")
        await queue.add_job("process_batch")
        with pytest.raises(QueueFullError):
            await queue.add_job("process_batch")

        claimed = await queue.claim_next_job()
        assert claimed is not None
        assert await queue.complete_job(claimed.id, {"ok": True}) is True
        await queue.add_job("process_batch")

    asyncio.run(run())


def test_jobs_are_listed_and_claimed_by_priority_then_age() -> None:
    async def run() -> tuple[list[str], list[str], QueueJobRecord | None]:
        queue = QueueManager(InMemoryStore())
        low = await queue.add_job("t", {"name": "low"}, priority=10)
        first_high = await queue.add_job("t", {"name": "first_high"}, priority=90)
        second_high = await queue.add_job("t", {"name": "second_high"}, priority=90)
        listed = [job.id for job in await queue.get_jobs_by_status("pending")]
        claimed = await queue.claim_next_job()
        return listed, [first_high, second_high, low], claimed

    listed, expected, claimed = asyncio.run(run())
    assert listed == expected
    assert claimed is not None
    assert claimed.id == expected[0]
    assert claimed.status == "processing"
    assert claimed.started_at is not None


def test_get_jobs_by_status_rejects_unknown_status() -> None:
    with pytest.raises(ValueError):
        asyncio.run(QueueManager(InMemoryStore()).get_jobs_by_status("queued"))


def test_complete_and_fail_only_apply_to_processing_jobs() -> None:
    async def run() -> tuple[bool, bool, bool, QueueJobRecord | None, QueueJobRecord | None]:
        queue = QueueManager(InMemoryStore())
        done_id = await queue.add_job("t")
        failed_id = await queue.add_job("t")
        premature = await queue.complete_job(done_id, {"ok": True})

        await queue.claim_next_job()
        completed = await queue.complete_job(done_id, {"ok": True})
        await queue.claim_next_job()
        failed = await queue.fail_job(failed_id, "boom")
        return premature, completed, failed, await queue.get_job(done_id), await queue.get_job(failed_id)

    premature, completed, failed, done_job, failed_job = asyncio.run(run())
    assert premature is False
    assert completed is True
    assert failed is True
    assert done_job is not None and done_job.status == "completed"
    assert done_job.result == {"ok": True}
    assert done_job.completed_at is not None
    assert failed_job is not None and failed_job.status == "failed"
    assert failed_job.last_error == "boom"
    assert failed_job.can_retry is True


def test_retry_job_requeues_until_attempts_are_exhausted() -> None:
    async def run() -> tuple[bool, QueueJobRecord | None, bool, QueueJobRecord | None]:
        queue = QueueManager(InMemoryStore())
        job_id = await queue.add_job("t", max_attempts=1)
        await queue.claim_next_job()
        await queue.fail_job(job_id, "first failure")

        first_retry = await queue.retry_job(job_id)
        requeued = await queue.get_job(job_id)

        await queue.claim_next_job()
        await queue.fail_job(job_id, "second failure")
        second_retry = await queue.retry_job(job_id)
        return first_retry, requeued, second_retry, await queue.get_job(job_id)

    first_retry, requeued, second_retry, final = asyncio.run(run())
    assert first_retry is True
    assert requeued is not None
    assert requeued.status == "pending"
    assert requeued.attempts == 1
    assert requeued.last_error is None
    assert requeued.started_at is None
    assert requeued.completed_at is None
    assert second_retry is False
    assert final is not None
    assert final.status == "failed"
    assert final.attempts == final.max_attempts
    assert final.is_dead is True


def test_retry_job_rejects_non_failed_and_unknown_jobs() -> None:
    async def run() -> tuple[bool, bool]:
        queue = QueueManager(InMemoryStore())
        job_id = await queue.add_job("t")
        return await queue.retry_job(job_id), await queue.retry_job("missing")

    assert asyncio.run(run()) == (False, False)


def test_cancel_job_marks_pending_job_dead_and_refuses_processing() -> None:
    async def run() -> tuple[bool, bool, bool, QueueJobRecord | None]:
        queue = QueueManager(InMemoryStore())
        processing_id = await queue.add_job("t", priority=90)
        pending_id = await queue.add_job("t", priority=10)
        await queue.claim_next_job()

        cancelled_processing = await queue.cancel_job(processing_id)
        cancelled_pending = await queue.cancel_job(pending_id)
        cancelled_again = await queue.cancel_job(pending_id)
        return cancelled_processing, cancelled_pending, cancelled_again, await queue.get_job(pending_id)

    cancelled_processing, cancelled_pending, cancelled_again, cancelled = asyncio.run(run())
    assert cancelled_processing is False
    assert cancelled_pending is True
    assert cancelled_again is False
    assert cancelled is not None
    assert cancelled.status == "failed"
    assert cancelled.last_error == "cancelled"
    assert cancelled.is_dead is True


def test_clear_failed_jobs_removes_only_dead_jobs_and_stats_reflect_states() -> None:
    async def run() -> tuple[dict[str, int], int, dict[str, int], QueueJobRecord | None]:
        queue = QueueManager(InMemoryStore())
        retryable_id = await queue.add_job("t", priority=100)
        await queue.claim_next_job()
        await queue.fail_job(retryable_id, "transient")

        dead_id = await queue.add_job("t", priority=100)
        await queue.cancel_job(dead_id)

        completed_id = await queue.add_job("t", priority=100)
        await queue.claim_next_job()
        await queue.complete_job(completed_id)

        await queue.add_job("t", priority=1)
        before = await queue.get_queue_stats()
        removed = await queue.clear_failed_jobs()
        after = await queue.get_queue_stats()
        return before, removed, after, await queue.get_job(retryable_id)

    before, removed, after, retryable = asyncio.run(run())
    assert before == {
        "pending": 1,
        "processing": 0,
        "completed": 1,
        "failed": 2,
        "retryable": 1,
        "dead": 1,
        "total": 4,
    }
    assert removed == 1
    assert after["failed"] == 1
    assert after["dead"] == 0
    assert after["total"] == 3
    assert retryable is not None and retryable.status == "failed"
