from __future__ import annotations

from fastapi import APIRouter, Body, Depends, Request

from adspulse.auth import Principal, require_admin
from adspulse.config import settings
from adspulse.db import get_supabase, uses_supabase
from adspulse.envelope import resolve_request_id, success_response
from adspulse.models.observability import (
    MetricsSnapshotFlushRequest,
    MetricsSnapshotFlushResponse,
    MetricsSnapshotResponse,
)
from adspulse.observability import metrics_snapshot, persist_metrics_snapshot


router = APIRouter(prefix="/api/v1/observability", tags=["observability"])


@router.get("/metrics")
async def get_metrics(request: Request, _principal: Principal = Depends(require_admin)):
    counters = metrics_snapshot()
    return success_response(request, MetricsSnapshotResponse(counters=counters, counter_count=len(counters)))


@router.post("/metrics/flush")
def flush_metrics(
    request: Request,
    data: MetricsSnapshotFlushRequest | None = Body(default=None),
    _principal: Principal = Depends(require_admin),
):
    data = data or MetricsSnapshotFlushRequest()
    counter_count = len(metrics_snapshot())
    persisted = persist_metrics_snapshot(
        supabase_client=get_supabase() if uses_supabase() else None,
        source=data.source,
        request_id=resolve_request_id(request),
        reset_after_persist=data.reset_after_persist,
        export_url=settings.observability_export_url,
        export_bearer_token=settings.observability_export_bearer_token,
        export_timeout_seconds=settings.observability_export_timeout_seconds,
    )
    return success_response(
        request,
        MetricsSnapshotFlushResponse(
            persisted=persisted,
            source=data.source,
            counter_count=counter_count,
            reset_after_persist=data.reset_after_persist,
        ),
    )
