from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import Field

from adspulse.models.base import ApiModel


SyncFrequency = Literal["hourly", "daily"]
SyncJobStatus = Literal["active", "paused"]
SyncRunStatus = Literal["success", "retry_scheduled", "dead_letter"]


class SyncJob(ApiModel):
    id: str
    provider_key: str
    brand_id: str
    frequency: SyncFrequency
    status: SyncJobStatus = "active"
    cursor: str | None = None
    retry_count: int = 0
    max_retries: int
    base_backoff_ms: int
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime
    version: int = 1


class SyncDeadLetterEvent(ApiModel):
    id: str
    job_id: str
    provider_key: str
    failed_at: datetime
    reason: str
    retry_count: int


class SyncRunResult(ApiModel):
    job_id: str
    run_id: str
    status: SyncRunStatus
    attempt: int
    rate_limited: bool
    started_at: datetime
    finished_at: datetime
    duration_ms: int
    processed_records: int
    cursor: str | None = None
    next_retry_at: datetime | None = None
    next_scheduled_run_at: datetime | None = None


class CreateSyncJobRequest(ApiModel):
    provider_key: str = Field(min_length=1, max_length=80, pattern=r"^[a-z0-9][a-z0-9_.-]*$")
    brand_id: str = Field(min_length=1, max_length=128)
    frequency: SyncFrequency
    status: SyncJobStatus | None = None
    cursor: str | None = Field(default=None, max_length=256)
    max_retries: int | None = Field(default=None, ge=0, le=10)
    base_backoff_ms: int | None = Field(default=None, ge=100, le=60_000)


class RunSyncJobRequest(ApiModel):
    simulate_rate_limit: bool | None = None


class SyncJobListResponse(ApiModel):
    items: list[SyncJob]
    count: int
    filters: dict[str, str | int | None]


class SyncDeadLetterListResponse(ApiModel):
    items: list[SyncDeadLetterEvent]
    count: int
    filters: dict[str, str | int | None]


class ScheduledRunError(ApiModel):
    job_id: str
    code: str
    message: str


class ScheduledRunResponse(ApiModel):
    started_at: datetime
    finished_at: datetime
    due: int
    results: list[SyncRunResult]
    errors: list[ScheduledRunError] = []
