from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

QUEUE_JOB_STATUSES = ("pending", "processing", "completed", "failed")
TOOL_VALUES = ("Outreach.io", "SalesLoft", "Both", "None")
CONFIDENCE_RANK = {"low": 0, "medium": 1, "high": 2}


@dataclass(slots=True)
class JobPostingRecord:
    id: str
    company: str
    title: str
    description: str
    scraped_at: datetime
    url: str | None = None
    processed: bool = False
    analyzed_at: datetime | None = None


@dataclass(slots=True)
class CompanyRecord:
    id: str
    raw_name: str
    normalized_name: str
    tool_detected: str
    signal_type: str
    confidence: str
    context: str
    source_job_id: str | None
    identified_at: datetime
    leads_generated: bool = False
    leads_generated_at: datetime | None = None
    leads_generated_by: str | None = None
    merged_into: str | None = None

    @property
    def is_active(self) -> bool:
        return self.merged_into is None


@dataclass(slots=True)
class CompanyNoteRecord:
    id: str
    company_id: str
    body: str
    author: str | None
    created_at: datetime


@dataclass(slots=True)
class QueueJobRecord:
    id: str
    type: str
    status: str
    priority: int
    attempts: int
    max_attempts: int
    created_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    last_error: str | None = None
    result: dict[str, Any] | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_dead(self) -> bool:
        return self.status == "failed" and self.attempts >= self.max_attempts

    @property
    def can_retry(self) -> bool:
        return self.status == "failed" and self.attempts < self.max_attempts
