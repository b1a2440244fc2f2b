from __future__ import annotations

from pydantic import Field

from adspulse.models.base import ApiModel


class MetricsSnapshotResponse(ApiModel):
    counters: dict[str, int]
    counter_count: int


class MetricsSnapshotFlushRequest(ApiModel):
    source: str = Field(default="manual_flush", min_length=1, max_length=80)
    reset_after_persist: bool = False


class MetricsSnapshotFlushResponse(ApiModel):
    persisted: bool
    source: str
    counter_count: int
    reset_after_persist: bool
