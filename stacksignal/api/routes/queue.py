from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, status

from stacksignal.api.deps import get_queue
from stacksignal.schemas.queue import (
    QueueActionOut,
    QueueClearOut,
    QueueJobCreate,
    QueueJobCreated,
    QueueJobOut,
    QueueJobStatus,
    QueueStatsOut,
)
from stacksignal.services.queue import QueueFullError, QueueManager
from stacksignal.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.post("/jobs", response_model=QueueJobCreated, status_code=status.HTTP_201_CREATED)
async def add_job(payload: QueueJobCreate, queue: QueueManager = Depends(get_queue)) -> QueueJobCreated:
    try:
        job_id = await queue.add_job(
            payload.type,
            payload.payload,
            priority=payload.priority,
            max_attempts=payload.max_attempts,
        )
    except QueueFullError as exc:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return QueueJobCreated(success=True, id=job_id, message="job queued")


@router.get("/jobs", response_model=list[QueueJobOut])
async def list_jobs(
    queue: QueueManager = Depends(get_queue),
    status_filter: QueueJobStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[QueueJobOut]:
    try:
        jobs = await queue.get_jobs_by_status(status_filter, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [QueueJobOut(**asdict(job)) for job in jobs]


@router.get("/jobs/{job_id}", response_model=QueueJobOut)
async def get_job(job_id: str, queue: QueueManager = Depends(get_queue)) -> QueueJobOut:
    try:
        job = await queue.get_job(job_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="queue job not found")
    return QueueJobOut(**asdict(job))


@router.post("/jobs/{job_id}/retry", response_model=QueueActionOut)
async def retry_job(job_id: str, queue: QueueManager = Depends(get_queue)) -> QueueActionOut:
    try:
        retried = await queue.retry_job(job_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if retried:
        return QueueActionOut(success=True, message="job requeued")
    return QueueActionOut(success=False, message="job is not retryable")


@router.post("/jobs/{job_id}/cancel", response_model=QueueActionOut)
async def cancel_job(job_id: str, queue: QueueManager = Depends(get_queue)) -> QueueActionOut:
    try:
        cancelled = await queue.cancel_job(job_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if cancelled:
        return QueueActionOut(success=True, message="job cancelled")
    return QueueActionOut(success=False, message="job cannot be cancelled from its current state")


@router.post("/clear", response_model=QueueClearOut)
async def clear_failed_jobs(queue: QueueManager = Depends(get_queue)) -> QueueClearOut:
    try:
        removed = await queue.clear_failed_jobs()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return QueueClearOut(success=True, removed=removed, message=f"removed {removed} dead jobs")


@router.get("/stats", response_model=QueueStatsOut)
async def get_stats(queue: QueueManager = Depends(get_queue)) -> QueueStatsOut:
    try:
        stats = await queue.get_queue_stats()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return QueueStatsOut(**stats)
