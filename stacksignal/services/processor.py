from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

from opentelemetry import trace

from stacksignal.services.analysis import AnalysisEngine, AnalysisError, AnalysisVerdict
from stacksignal.services.dedupe import Deduplicator, normalize
from stacksignal.services.records import JobPostingRecord
from stacksignal.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)
from stacksignal.services.store import Store

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

RunKind = Literal["batch", "single"]
BUSY_MESSAGE = "processor is already running"


@dataclass(slots=True)
class ProcessingRun:
    is_running: bool = False
    kind: RunKind | None = None
    started_at: datetime | None = None
    total: int = 0
    processed: int = 0
    tools_detected: int = 0
    errors: int = 0
    stop_requested: bool = False


@dataclass(slots=True)
class ProcessorTotals:
    total_analyzed: int = 0
    tools_detected: int = 0
    errors: int = 0
    skipped_already_identified: int = 0
    batches_run: int = 0


@dataclass(slots=True)
class ProcessorStatus:
    is_running: bool
    current_run: ProcessingRun | None
    totals: ProcessorTotals


@dataclass(slots=True)
class BatchSummary:
    success: bool
    busy: bool = False
    stopped: bool = False
    jobs_processed: int = 0
    tools_detected: int = 0
    skipped_already_identified: int = 0
    errors: list[str] = field(default_factory=list)
    remaining_unprocessed: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    message: str = ""


@dataclass(slots=True)
class ItemResult:
    job_id: str
    success: bool
    processed: bool
    uses_tool: bool = False
    tool_detected: str = "None"
    company_id: str | None = None
    verdict: AnalysisVerdict | None = None
    error: str | None = None
    busy: bool = False
    skipped: bool = False
    not_found: bool = False


class BatchProcessor:
    def __init__(
        self,
        store: Store,
        engine: AnalysisEngine,
        deduplicator: Deduplicator,
        *,
        default_limit: int = 100,
        max_limit: int = 500,
        delay_seconds: float = 1.0,
        skip_identified_companies: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.engine = engine
        self.deduplicator = deduplicator
        self.max_limit = max(1, max_limit)
        self.default_limit = self._bounded_limit(default_limit)
        self.delay_seconds = max(0.0, delay_seconds)
        self.skip_identified_companies = skip_identified_companies
        self.run = ProcessingRun()
        self.totals = ProcessorTotals()
        self._sleep = sleep

    async def process_batch(self, limit: int | None = None) -> BatchSummary:
        if self.run.is_running:
            return BatchSummary(success=False, busy=True, message=BUSY_MESSAGE)

        self._begin("batch")
        try:
            with tracer.start_as_current_span("processor.batch") as span:
                bounded = self._bounded_limit(self.default_limit if limit is None else limit)
                span.set_attribute("processor.limit", bounded)
                summary = await self._run_batch(bounded)
                span.set_attribute("processor.jobs_processed", summary.jobs_processed)
                span.set_attribute("processor.tools_detected", summary.tools_detected)
                span.set_attribute("processor.errors", len(summary.errors))
                return summary
        finally:
            self._release()

    async def process_single_job(self, job_id: str) -> ItemResult:
        if self.run.is_running:
            return ItemResult(job_id=job_id, success=False, processed=False, busy=True, error=BUSY_MESSAGE)

        self._begin("single")
        try:
            posting = await self.store.get_posting(job_id)
            if posting is None:
                return ItemResult(
                    job_id=job_id, success=False, processed=False, not_found=True, error="posting not found"
                )
            self.run.total = 1
            with tracer.start_as_current_span("processor.item") as span:
                span.set_attribute("job.id", job_id)
                result = await self._process_posting(posting, allow_skip=False)
            self._record(result)
            return result
        finally:
            self._release()

    def get_status(self) -> ProcessorStatus:
        return ProcessorStatus(
            is_running=self.run.is_running,
            current_run=copy.copy(self.run) if self.run.is_running else None,
            totals=copy.copy(self.totals),
        )

    def request_stop(self) -> bool:
        if not self.run.is_running:
            return False
        self.run.stop_requested = True
        logger.info("Stop requested for running %s", self.run.kind)
        return True

    async def _run_batch(self, limit: int) -> BatchSummary:
        started_at = self.run.started_at
        postings = await self.store.fetch_unprocessed_postings(limit)
        self.run.total = len(postings)
        if not postings:
            logger.info("No unprocessed job postings")
            return BatchSummary(
                success=True,
                remaining_unprocessed=0,
                started_at=started_at,
                finished_at=_now(),
                message="No unprocessed jobs",
            )

        logger.info("Processing batch of %s job postings", len(postings))
        summary = BatchSummary(success=True, started_at=started_at)
        for posting in postings:
            if self.run.stop_requested:
                summary.stopped = True
                logger.info("Batch stopped after %s of %s postings", self.run.processed, len(postings))
                break
            with tracer.start_as_current_span("processor.item") as span:
                span.set_attribute("job.id", posting.id)
                result = await self._process_posting(posting, allow_skip=True)
            self._record(result)
            if result.skipped:
                summary.skipped_already_identified += 1
                continue
            if result.processed:
                summary.jobs_processed += 1
            if result.uses_tool and result.company_id is not None:
                summary.tools_detected += 1
            if result.error is not None:
                summary.errors.append(f"{posting.id}: {result.error}")

        summary.remaining_unprocessed = await self.store.count_unprocessed()
        summary.finished_at = _now()
        self.totals.batches_run += 1
        summary.message = (
            f"Processed {summary.jobs_processed} jobs, found {summary.tools_detected} companies using tools"
            f"{' (stopped)' if summary.stopped else ''}"
        )
        logger.info(
            "Batch finished processed=%s tools=%s skipped=%s errors=%s remaining=%s",
            summary.jobs_processed,
            summary.tools_detected,
            summary.skipped_already_identified,
            len(summary.errors),
            summary.remaining_unprocessed,
        )
        return summary

    async def _process_posting(self, posting: JobPostingRecord, *, allow_skip: bool) -> ItemResult:
        if allow_skip and self.skip_identified_companies and await self._already_identified(posting):
            await self.store.mark_processed(posting.id, _now())
            logger.info("Skipped job_id=%s for already identified company %r", posting.id, posting.company)
            return ItemResult(job_id=posting.id, success=True, processed=True, skipped=True)

        verdict: AnalysisVerdict | None = None
        error: str | None = None
        try:
            verdict = await self.engine.analyze(posting)
        except AnalysisError as exc:
            error = str(exc)
            logger.warning("Analysis failed for job_id=%s: %s", posting.id, exc)
        except RepositoryUnavailableError:
            raise
        except Exception as exc:
            error = f"analysis crashed: {exc}"
            logger.exception("Analysis crashed for job_id=%s", posting.id)
        if self.delay_seconds > 0:
            await self._sleep(self.delay_seconds)

        company_id: str | None = None
        if verdict is not None and verdict.uses_tool:
            try:
                company = await self.deduplicator.record_detection(posting, verdict)
            except (RepositoryConflictError, RepositoryNotFoundError) as exc:
                error = str(exc)
                logger.warning("Could not record detection for job_id=%s: %s", posting.id, exc)
            else:
                company_id = company.id

        processed = True
        try:
            await self.store.mark_processed(posting.id, _now())
        except RepositoryNotFoundError as exc:
            processed = False
            error = error or str(exc)

        return ItemResult(
            job_id=posting.id,
            success=error is None,
            processed=processed,
            uses_tool=bool(verdict and verdict.uses_tool),
            tool_detected=verdict.tool_detected if verdict is not None else "None",
            company_id=company_id,
            verdict=verdict,
            error=error,
        )

    async def _already_identified(self, posting: JobPostingRecord) -> bool:
        normalized = normalize(posting.company)
        if not normalized:
            return False
        return bool(await self.store.find_companies_by_normalized_name(normalized))

    def _record(self, result: ItemResult) -> None:
        if result.skipped:
            self.totals.skipped_already_identified += 1
            return
        if result.processed:
            self.run.processed += 1
            self.totals.total_analyzed += 1
        if result.uses_tool and result.company_id is not None:
            self.run.tools_detected += 1
            self.totals.tools_detected += 1
        if result.error is not None:
            self.run.errors += 1
            self.totals.errors += 1

    def _begin(self, kind: RunKind) -> None:
        self.run = ProcessingRun(is_running=True, kind=kind, started_at=_now())

    def _release(self) -> None:
        self.run.is_running = False
        self.run.stop_requested = False

    def _bounded_limit(self, value: int) -> int:
        return max(1, min(self.max_limit, int(value)))


def _now() -> datetime:
    return datetime.now(timezone.utc)
