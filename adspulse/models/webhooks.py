from __future__ import annotations

from datetime import datetime
from typing import Literal

from adspulse.models.base import ApiModel


WebhookProvider = Literal["shopify", "hubspot", "salesforce", "meta", "google"]
WebhookEventStatus = Literal["accepted", "rejected"]


class WebhookEvent(ApiModel):
    id: str
    provider: WebhookProvider
    event_type: str
    source_id: str | None = None
    received_at: datetime
    payload_hash: str
    payload_size: int
    status: WebhookEventStatus
    reason: str | None = None


class WebhookDeadLetterEvent(ApiModel):
    id: str
    provider: WebhookProvider
    event_type: str
    received_at: datetime
    reason: str
    payload_snippet: str


class WebhookIngestionResponse(ApiModel):
    accepted: bool
    provider: WebhookProvider
    topic: str | None = None
    event: WebhookEvent
    payload_type: str


class WebhookEventListResponse(ApiModel):
    items: list[WebhookEvent]
    count: int
    filters: dict[str, str | int | None]


class WebhookDeadLetterListResponse(ApiModel):
    items: list[WebhookDeadLetterEvent]
    count: int
    filters: dict[str, str | int | None]
