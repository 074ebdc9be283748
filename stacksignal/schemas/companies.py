from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class DeduplicateRequest(BaseModel):
    name: str = Field(min_length=1)


class DeduplicateOut(BaseModel):
    is_duplicate: bool
    match_type: Literal["exact", "fuzzy", "none"]
    normalized_name: str
    matched_id: str | None = None
    score: float | None = None


class SimilarCompanyOut(BaseModel):
    id: str
    name: str
    normalized_name: str
    score: float


class MergeRequest(BaseModel):
    primary_id: str = Field(min_length=1)
    duplicate_ids: list[str] = Field(min_length=1)


class MergeItemOut(BaseModel):
    duplicate_id: str
    success: bool
    error: str | None = None


class MergeResultOut(BaseModel):
    primary_id: str
    success: bool
    results: list[MergeItemOut] = Field(default_factory=list)


class DedupStatsOut(BaseModel):
    total_active: int
    total_merged: int
    dedup_rate: float


class LeadStatusRequest(BaseModel):
    leads_generated: bool
    generated_by: str | None = None
    notes: str | None = None


class CompanyOut(BaseModel):
    id: str
    raw_name: str
    normalized_name: str
    tool_detected: str
    signal_type: str
    confidence: str
    context: str
    source_job_id: str | None = None
    identified_at: datetime
    leads_generated: bool = False
    leads_generated_at: datetime | None = None
    leads_generated_by: str | None = None
    merged_into: str | None = None


class CompanyNoteOut(BaseModel):
    id: str
    body: str
    author: str | None = None
    created_at: datetime


class CompanyDetailOut(CompanyOut):
    source_job_ids: list[str] = Field(default_factory=list)
    notes: list[CompanyNoteOut] = Field(default_factory=list)
