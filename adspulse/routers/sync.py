from __future__ import annotations

from fastapi import APIRouter, Body, Depends, Query, Request

from adspulse.auth import Principal, assert_tenant_access, get_current_principal, require_admin, require_scheduler_secret
from adspulse.domain.sync_engine import resume_sync_job, run_due_jobs, run_sync_job
from adspulse.domain.sync_store import get_sync_store, job_not_found
from adspulse.envelope import resolve_request_id, success_response
from adspulse.models.sync import (
    CreateSyncJobRequest,
    RunSyncJobRequest,
    SyncDeadLetterListResponse,
    SyncJob,
    SyncJobListResponse,
    SyncJobStatus,
)
from adspulse.observability import incr_metric, log_event


router = APIRouter(prefix="/api/v1/sync", tags=["sync"])


def _get_job_for_principal(job_id: str, principal: Principal) -> SyncJob:
    job = get_sync_store().get_job(job_id)
    if job is None:
        raise job_not_found(job_id)
    assert_tenant_access(principal, job.brand_id)
    return job


@router.get("/jobs")
async def list_sync_jobs(
    request: Request,
    provider_key: str | None = Query(default=None, alias="providerKey", max_length=80),
    brand_id: str | None = Query(default=None, alias="brandId", max_length=128),
    status: SyncJobStatus | None = None,
    limit: int = Query(default=100, ge=1, le=200),
    principal: Principal = Depends(get_current_principal),
):
    # Tokens scoped to a tenant only ever see that tenant's jobs.
    if brand_id:
        assert_tenant_access(principal, brand_id)
    elif principal.tenant_id:
        brand_id = principal.tenant_id
    items = get_sync_store().list_jobs(provider_key=provider_key, brand_id=brand_id, status=status, limit=limit)
    return success_response(
        request,
        SyncJobListResponse(
            items=items,
            count=len(items),
            filters={"providerKey": provider_key, "brandId": brand_id, "status": status, "limit": limit},
        ),
    )


@router.post("/jobs", status_code=201)
async def create_sync_job(
    data: CreateSyncJobRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
):
    assert_tenant_access(principal, data.brand_id)
    job = get_sync_store().create_job(**data.model_dump())
    incr_metric("sync.jobs.created", provider_key=job.provider_key)
    log_event(
        "sync_job_created",
        request_id=resolve_request_id(request),
        job_id=job.id,
        provider_key=job.provider_key,
        brand_id=job.brand_id,
        frequency=job.frequency,
        user_id=principal.user_id,
    )
    return success_response(request, job, status_code=201)


@router.get("/jobs/{job_id}")
async def get_sync_job(
    job_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
):
    return success_response(request, _get_job_for_principal(job_id, principal))


@router.post("/jobs/{job_id}/run")
def run_job(
    job_id: str,
    request: Request,
    data: RunSyncJobRequest | None = Body(default=None),
    principal: Principal = Depends(get_current_principal),
):
    _get_job_for_principal(job_id, principal)
    simulate_rate_limit = data.simulate_rate_limit if data else None
    result = run_sync_job(job_id, simulate_rate_limit, request_id=resolve_request_id(request))
    return success_response(request, result)


@router.post("/jobs/{job_id}/resume")
async def resume_job(
    job_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
):
    _get_job_for_principal(job_id, principal)
    job = resume_sync_job(job_id)
    log_event("sync_job_resumed", request_id=resolve_request_id(request), job_id=job_id, user_id=principal.user_id)
    return success_response(request, job)


@router.post("/run-scheduled")
def run_scheduled_jobs(
    request: Request,
    _: None = Depends(require_scheduler_secret),
):
    return success_response(request, run_due_jobs(request_id=resolve_request_id(request)))


@router.get("/dead-letters")
async def list_sync_dead_letters(
    request: Request,
    job_id: str | None = Query(default=None, alias="jobId"),
    provider_key: str | None = Query(default=None, alias="providerKey", max_length=80),
    limit: int = Query(default=100, ge=1, le=200),
    _principal: Principal = Depends(require_admin),
):
    items = get_sync_store().list_dead_letters(job_id=job_id, provider_key=provider_key, limit=limit)
    return success_response(
        request,
        SyncDeadLetterListResponse(
            items=items,
            count=len(items),
            filters={"jobId": job_id, "providerKey": provider_key, "limit": limit},
        ),
    )
