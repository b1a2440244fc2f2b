from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping
from urllib.parse import unquote

from adspulse.domain.errors import ApiError
from adspulse.domain.signatures import ProviderSignature, provider_signature


@dataclass(frozen=True)
class WebhookFamily:
    name: str
    allowed: frozenset[str]
    source_id_headers: tuple[str, ...]
    unsupported_code: str
    label: str


@dataclass(frozen=True)
class WebhookRoute:
    family: str
    provider: str
    event_type: str
    topic: str | None
    signature: ProviderSignature
    source_id_headers: tuple[str, ...]


WEBHOOK_FAMILIES: dict[str, WebhookFamily] = {
    "conversions": WebhookFamily(
        name="conversions",
        allowed=frozenset({"meta", "google"}),
        source_id_headers=("x-event-id", "x-meta-event-id", "x-goog-request-id"),
        unsupported_code="WEBHOOK_PROVIDER_UNSUPPORTED",
        label="conversion webhook provider",
    ),
    "crm": WebhookFamily(
        name="crm",
        allowed=frozenset({"hubspot", "salesforce"}),
        source_id_headers=("x-event-id", "x-hubspot-event-id", "x-salesforce-event-id"),
        unsupported_code="WEBHOOK_PROVIDER_UNSUPPORTED",
        label="CRM webhook provider",
    ),
    "shopify": WebhookFamily(
        name="shopify",
        allowed=frozenset({"orders", "refunds", "products"}),
        source_id_headers=("x-shopify-webhook-id", "x-shopify-order-id", "x-shopify-shop-domain"),
        unsupported_code="WEBHOOK_TOPIC_UNSUPPORTED",
        label="Shopify webhook topic",
    ),
}


def _normalize_segment(segment: str) -> str:
    return unquote(segment or "").strip().lower()


def resolve_webhook_route(family_name: str, segment: str) -> WebhookRoute:
    family = WEBHOOK_FAMILIES[family_name]
    value = _normalize_segment(segment)
    if not value:
        raise ApiError(
            status_code=400,
            code="VALIDATION_ERROR",
            message=f"Could not resolve {family.label} from webhook path.",
        )
    if value not in family.allowed:
        raise ApiError(
            status_code=400,
            code=family.unsupported_code,
            message=f"Unsupported {family.label} '{value}'.",
            details={"supported": sorted(family.allowed)},
        )

    if family.name == "shopify":
        return WebhookRoute(
            family=family.name,
            provider="shopify",
            event_type=f"shopify.{value}",
            topic=value,
            signature=provider_signature("shopify"),
            source_id_headers=family.source_id_headers,
        )
    suffix = "conversion_event" if family.name == "conversions" else "crm_event"
    return WebhookRoute(
        family=family.name,
        provider=value,
        event_type=f"{value}.{suffix}",
        topic=None,
        signature=provider_signature(value),
        source_id_headers=family.source_id_headers,
    )


def read_first_header(headers: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    for name in names:
        value = (headers.get(name) or "").strip()
        if value:
            return value
    return None
