from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Response, status

from stacksignal.api.deps import get_processor
from stacksignal.schemas.processor import (
    BatchRequest,
    BatchSummaryOut,
    ItemResultOut,
    ProcessorStatusOut,
    StopOut,
)
from stacksignal.services.processor import BatchProcessor
from stacksignal.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.post("/batch", response_model=BatchSummaryOut)
async def run_batch(
    response: Response,
    payload: BatchRequest | None = None,
    processor: BatchProcessor = Depends(get_processor),
) -> BatchSummaryOut:
    limit = payload.limit if payload is not None else None
    try:
        summary = await processor.process_batch(limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if summary.busy:
        response.status_code = status.HTTP_409_CONFLICT
    return BatchSummaryOut(**asdict(summary))


@router.post("/jobs/{job_id}", response_model=ItemResultOut)
async def run_single_job(job_id: str, processor: BatchProcessor = Depends(get_processor)) -> ItemResultOut:
    try:
        result = await processor.process_single_job(job_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if result.busy:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.error)
    if result.not_found:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.error)
    return ItemResultOut(**asdict(result))


@router.get("/status", response_model=ProcessorStatusOut)
async def get_status(processor: BatchProcessor = Depends(get_processor)) -> ProcessorStatusOut:
    return ProcessorStatusOut(**asdict(processor.get_status()))


@router.post("/stop", response_model=StopOut)
async def stop(processor: BatchProcessor = Depends(get_processor)) -> StopOut:
    if processor.request_stop():
        return StopOut(success=True, message="stop requested; the run halts after the current item")
    return StopOut(success=False, message="processor is not running")
