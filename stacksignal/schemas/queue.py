from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

QueueJobStatus = Literal["pending", "processing", "completed", "failed"]


class QueueJobCreate(BaseModel):
    type: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int | None = None
    max_attempts: int | None = Field(default=None, ge=1)


class QueueJobCreated(BaseModel):
    success: bool
    id: str
    message: str


class QueueJobOut(BaseModel):
    id: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: QueueJobStatus
    priority: int
    attempts: int
    max_attempts: int
    last_error: str | None = None
    result: dict[str, Any] | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class QueueActionOut(BaseModel):
    success: bool
    message: str


class QueueClearOut(BaseModel):
    success: bool
    removed: int
    message: str


class QueueStatsOut(BaseModel):
    pending: int
    processing: int
    completed: int
    failed: int
    retryable: int
    dead: int
    total: int
