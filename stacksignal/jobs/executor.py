from __future__ import annotations

from dataclasses import asdict
from typing import Any

from stacksignal.services.container import ServiceContainer
from stacksignal.services.records import QueueJobRecord

ANALYZE_POSTING = "analyze_posting"
PROCESS_BATCH = "process_batch"
MERGE_COMPANIES = "merge_companies"
SUPPORTED_JOB_TYPES = (ANALYZE_POSTING, PROCESS_BATCH, MERGE_COMPANIES)


class JobExecutionError(Exception):
    """Raised when a queue job cannot be executed; the worker records it as the job's error."""


async def execute_job(job: QueueJobRecord, services: ServiceContainer) -> dict[str, Any]:
    if job.type == ANALYZE_POSTING:
        return await _execute_analyze_posting(job, services)
    if job.type == PROCESS_BATCH:
        return await _execute_process_batch(job, services)
    if job.type == MERGE_COMPANIES:
        return await _execute_merge_companies(job, services)
    raise JobExecutionError(f"unsupported queue job type: {job.type}")


async def _execute_analyze_posting(job: QueueJobRecord, services: ServiceContainer) -> dict[str, Any]:
    posting_id = _as_text(job.payload.get("job_id"))
    if not posting_id:
        raise JobExecutionError("payload.job_id is required")

    result = await services.processor.process_single_job(posting_id)
    if result.busy:
        raise JobExecutionError("processor is busy")
    if not result.success:
        raise JobExecutionError(result.error or "analysis failed")
    return {
        "handled": True,
        "type": job.type,
        "job_id": result.job_id,
        "uses_tool": result.uses_tool,
        "tool_detected": result.tool_detected,
        "company_id": result.company_id,
    }


async def _execute_process_batch(job: QueueJobRecord, services: ServiceContainer) -> dict[str, Any]:
    limit = _bounded_int(
        job.payload.get("limit"),
        default=services.settings.batch_default_limit,
        minimum=1,
        maximum=services.settings.batch_max_limit,
    )
    summary = await services.processor.process_batch(limit)
    if summary.busy:
        raise JobExecutionError("processor is busy")
    return {
        "handled": True,
        "type": job.type,
        "jobs_processed": summary.jobs_processed,
        "tools_detected": summary.tools_detected,
        "skipped_already_identified": summary.skipped_already_identified,
        "errors": summary.errors,
        "remaining_unprocessed": summary.remaining_unprocessed,
        "stopped": summary.stopped,
    }


async def _execute_merge_companies(job: QueueJobRecord, services: ServiceContainer) -> dict[str, Any]:
    primary_id = _as_text(job.payload.get("primary_id"))
    raw_duplicates = job.payload.get("duplicate_ids")
    duplicate_ids = [str(item) for item in raw_duplicates] if isinstance(raw_duplicates, list) else []
    if not primary_id or not duplicate_ids:
        raise JobExecutionError("payload.primary_id and payload.duplicate_ids are required")

    result = await services.deduplicator.merge_duplicates(primary_id, duplicate_ids)
    return {"handled": True, "type": job.type, **asdict(result)}


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def _bounded_int(value: Any, *, default: int, minimum: int, maximum: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        parsed = default
    return max(minimum, min(maximum, parsed))
