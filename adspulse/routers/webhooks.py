from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from adspulse.auth import Principal, require_admin
from adspulse.domain.ingestion import WebhookDelivery, ingest_webhook
from adspulse.domain.webhook_routes import read_first_header, resolve_webhook_route
from adspulse.domain.webhook_store import get_webhook_store
from adspulse.envelope import resolve_request_id, success_response
from adspulse.models.webhooks import (
    WebhookDeadLetterListResponse,
    WebhookEventListResponse,
    WebhookEventStatus,
    WebhookProvider,
)
from adspulse.observability import log_event


router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


async def _ingest(request: Request, family: str, segment: str):
    route = resolve_webhook_route(family, segment)
    raw_body = await request.body()
    delivery = WebhookDelivery(
        route=route,
        signature=read_first_header(request.headers, (route.signature.header,)),
        source_id=read_first_header(request.headers, route.source_id_headers),
        raw_body=raw_body,
    )
    result = ingest_webhook(delivery, request_id=resolve_request_id(request))
    return success_response(request, result)


@router.post("/conversions/{provider}")
async def ingest_conversion_webhook(provider: str, request: Request):
    return await _ingest(request, "conversions", provider)


@router.post("/crm/{provider}")
async def ingest_crm_webhook(provider: str, request: Request):
    return await _ingest(request, "crm", provider)


@router.post("/shopify/{topic}")
async def ingest_shopify_webhook(topic: str, request: Request):
    return await _ingest(request, "shopify", topic)


@router.get("/events")
async def list_webhook_events(
    request: Request,
    provider: WebhookProvider | None = None,
    status: WebhookEventStatus | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    _principal: Principal = Depends(require_admin),
):
    items = get_webhook_store().list_events(provider=provider, status=status, limit=limit)
    log_event(
        "webhook_events_listed",
        request_id=resolve_request_id(request),
        provider=provider,
        status=status,
        returned=len(items),
        limit=limit,
    )
    return success_response(
        request,
        WebhookEventListResponse(
            items=items,
            count=len(items),
            filters={"provider": provider, "status": status, "limit": limit},
        ),
    )


@router.get("/dead-letters")
async def list_webhook_dead_letters(
    request: Request,
    provider: WebhookProvider | None = None,
    reason: str | None = Query(default=None, max_length=80),
    limit: int = Query(default=100, ge=1, le=500),
    _principal: Principal = Depends(require_admin),
):
    items = get_webhook_store().list_dead_letters(provider=provider, reason=reason, limit=limit)
    log_event(
        "webhook_dead_letters_listed",
        request_id=resolve_request_id(request),
        provider=provider,
        reason=reason,
        returned=len(items),
        limit=limit,
    )
    return success_response(
        request,
        WebhookDeadLetterListResponse(
            items=items,
            count=len(items),
            filters={"provider": provider, "reason": reason, "limit": limit},
        ),
    )
