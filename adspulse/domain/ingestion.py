from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from adspulse.domain.errors import ApiError
from adspulse.domain.replay import ReplayGuard, build_replay_key, get_replay_guard
from adspulse.domain.signatures import verify_signature
from adspulse.domain.webhook_routes import WebhookRoute
from adspulse.domain.webhook_store import WebhookStore, get_webhook_store
from adspulse.models.webhooks import WebhookIngestionResponse
from adspulse.observability import incr_metric, log_event


SIGNATURE_INVALID = "WEBHOOK_SIGNATURE_INVALID"
REPLAY_DETECTED = "WEBHOOK_REPLAY_DETECTED"


@dataclass(frozen=True)
class WebhookDelivery:
    route: WebhookRoute
    signature: str | None
    source_id: str | None
    raw_body: bytes


def json_type_tag(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


def _reject_constant(token: str) -> Any:
    raise ValueError(f"non-standard JSON constant: {token}")


def parse_webhook_json(raw_body: bytes) -> Any:
    """Strict RFC 8259 parse; NaN and Infinity are not JSON."""
    try:
        return json.loads(raw_body.decode("utf-8"), parse_constant=_reject_constant)
    except ValueError as exc:
        raise ApiError(
            status_code=400,
            code="INVALID_JSON",
            message="Webhook payload must be valid JSON.",
        ) from exc


class WebhookIngestionCoordinator:
    """Signature check, replay check, parse, record.

    Every delivery that reaches the coordinator is recorded exactly once.
    Failures after authenticity and freshness checks are also dead-lettered.
    """

    def __init__(self, store: WebhookStore | None = None, guard: ReplayGuard | None = None) -> None:
        self._store = store
        self._guard = guard

    @property
    def store(self) -> WebhookStore:
        return self._store or get_webhook_store()

    @property
    def guard(self) -> ReplayGuard:
        return self._guard or get_replay_guard()

    def ingest(self, delivery: WebhookDelivery, *, request_id: str | None = None) -> WebhookIngestionResponse:
        route = delivery.route
        incr_metric("webhook.events.received", provider=route.provider, event_type=route.event_type)

        if not delivery.signature:
            self._reject(delivery, reason="signature_header_missing", request_id=request_id)
            raise ApiError(
                status_code=401,
                code=SIGNATURE_INVALID,
                message=f"Required webhook header '{route.signature.header}' is missing.",
                details={"reason": "signature_header_missing", "header": route.signature.header},
            )

        verification = verify_signature(route.provider, delivery.raw_body, delivery.signature)
        if not verification.verified:
            self._reject(delivery, reason="signature_verification_failed", request_id=request_id)
            raise ApiError(
                status_code=401,
                code=SIGNATURE_INVALID,
                message="Webhook signature verification failed.",
                details={"scheme": verification.scheme.value},
            )

        replay_key = build_replay_key(route.provider, route.event_type, delivery.source_id)
        registration = self.guard.register(replay_key)
        if registration.duplicate:
            self._reject(delivery, reason="replay_detected", request_id=request_id)
            raise ApiError(
                status_code=409,
                code=REPLAY_DETECTED,
                message="Duplicate webhook replay detected.",
                details={"expiresAtMs": registration.expires_at_ms},
            )

        try:
            payload = parse_webhook_json(delivery.raw_body)
            event = self.store.record_event(
                provider=route.provider,
                event_type=route.event_type,
                source_id=delivery.source_id,
                payload=delivery.raw_body,
                status="accepted",
            )
        except ApiError as exc:
            self._dead_letter(delivery, reason=exc.code, request_id=request_id)
            raise
        except Exception as exc:
            self._dead_letter(delivery, reason="INTERNAL_ERROR", request_id=request_id, error=str(exc))
            raise

        incr_metric("webhook.events.accepted", provider=route.provider, event_type=route.event_type)
        log_event(
            "webhook_accepted",
            request_id=request_id,
            provider=route.provider,
            event_type=route.event_type,
            source_id=delivery.source_id,
            event_id=event.id,
            scheme=verification.scheme.value,
        )
        return WebhookIngestionResponse(
            accepted=True,
            provider=route.provider,
            topic=route.topic,
            event=event,
            payload_type=json_type_tag(payload),
        )

    def _reject(self, delivery: WebhookDelivery, *, reason: str, request_id: str | None) -> None:
        route = delivery.route
        self.store.record_event(
            provider=route.provider,
            event_type=route.event_type,
            source_id=delivery.source_id,
            payload=delivery.raw_body,
            status="rejected",
            reason=reason,
        )
        incr_metric("webhook.events.rejected", provider=route.provider, reason=reason)
        log_event(
            "webhook_rejected",
            level=logging.WARNING,
            request_id=request_id,
            provider=route.provider,
            event_type=route.event_type,
            source_id=delivery.source_id,
            reason=reason,
        )

    def _dead_letter(
        self,
        delivery: WebhookDelivery,
        *,
        reason: str,
        request_id: str | None,
        error: str | None = None,
    ) -> None:
        route = delivery.route
        try:
            self._reject(delivery, reason=reason, request_id=request_id)
            self.store.record_dead_letter(
                provider=route.provider,
                event_type=route.event_type,
                reason=reason,
                payload=delivery.raw_body,
            )
        except Exception as dead_letter_exc:
            log_event(
                "webhook_dead_letter_persist_failed",
                level=logging.ERROR,
                request_id=request_id,
                provider=route.provider,
                event_type=route.event_type,
                reason=reason,
                error=str(dead_letter_exc),
            )
            return
        incr_metric("webhook.dead_letter.created", provider=route.provider, reason=reason)
        log_event(
            "webhook_dead_letter_recorded",
            level=logging.WARNING,
            request_id=request_id,
            provider=route.provider,
            event_type=route.event_type,
            reason=reason,
            error=error,
        )


def ingest_webhook(delivery: WebhookDelivery, *, request_id: str | None = None) -> WebhookIngestionResponse:
    return WebhookIngestionCoordinator().ingest(delivery, request_id=request_id)
