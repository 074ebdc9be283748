from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from stacksignal.services.analysis import AnalysisVerdict


class BatchRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1)


class BatchSummaryOut(BaseModel):
    success: bool
    busy: bool = False
    stopped: bool = False
    jobs_processed: int = 0
    tools_detected: int = 0
    skipped_already_identified: int = 0
    errors: list[str] = Field(default_factory=list)
    remaining_unprocessed: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    message: str = ""


class ItemResultOut(BaseModel):
    job_id: str
    success: bool
    processed: bool
    uses_tool: bool = False
    tool_detected: str = "None"
    company_id: str | None = None
    verdict: AnalysisVerdict | None = None
    error: str | None = None
    skipped: bool = False


class ProcessingRunOut(BaseModel):
    kind: Literal["batch", "single"] | None = None
    started_at: datetime | None = None
    total: int = 0
    processed: int = 0
    tools_detected: int = 0
    errors: int = 0
    stop_requested: bool = False


class ProcessorTotalsOut(BaseModel):
    total_analyzed: int = 0
    tools_detected: int = 0
    errors: int = 0
    skipped_already_identified: int = 0
    batches_run: int = 0


class ProcessorStatusOut(BaseModel):
    is_running: bool
    current_run: ProcessingRunOut | None = None
    totals: ProcessorTotalsOut


class StopOut(BaseModel):
    success: bool
    message: str
