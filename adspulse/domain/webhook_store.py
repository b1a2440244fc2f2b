from __future__ import annotations

import hashlib
from collections import deque
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Protocol
from uuid import uuid4

from adspulse.config import settings
from adspulse.db import get_supabase, uses_supabase
from adspulse.models.webhooks import WebhookDeadLetterEvent, WebhookEvent


EVENTS_TABLE = "webhook_events"
DEAD_LETTERS_TABLE = "webhook_dead_letters"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_bytes(payload: bytes | str) -> bytes:
    return payload if isinstance(payload, bytes) else payload.encode("utf-8")


def _as_text(payload: bytes | str) -> str:
    return payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload


def build_webhook_event(
    *,
    provider: str,
    event_type: str,
    source_id: str | None,
    payload: bytes | str,
    status: str,
    reason: str | None = None,
) -> WebhookEvent:
    raw = _as_bytes(payload)
    return WebhookEvent(
        id=f"webhook_{uuid4().hex}",
        provider=provider,
        event_type=event_type,
        source_id=source_id,
        received_at=_now_utc(),
        payload_hash=hashlib.sha256(raw).hexdigest(),
        payload_size=len(raw),
        status=status,
        reason=reason,
    )


def build_dead_letter(
    *,
    provider: str,
    event_type: str,
    reason: str,
    payload: bytes | str,
    snippet_chars: int | None = None,
) -> WebhookDeadLetterEvent:
    limit = settings.webhook_dead_letter_snippet_chars if snippet_chars is None else snippet_chars
    return WebhookDeadLetterEvent(
        id=f"webhook_dead_{uuid4().hex}",
        provider=provider,
        event_type=event_type,
        received_at=_now_utc(),
        reason=reason,
        payload_snippet=_as_text(payload)[: max(0, limit)],
    )


class WebhookStore(Protocol):
    def record_event(
        self,
        *,
        provider: str,
        event_type: str,
        source_id: str | None,
        payload: bytes | str,
        status: str,
        reason: str | None = None,
    ) -> WebhookEvent: ...

    def list_events(
        self,
        *,
        provider: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[WebhookEvent]: ...

    def record_dead_letter(
        self,
        *,
        provider: str,
        event_type: str,
        reason: str,
        payload: bytes | str,
    ) -> WebhookDeadLetterEvent: ...

    def list_dead_letters(
        self,
        *,
        provider: str | None = None,
        reason: str | None = None,
        limit: int = 100,
    ) -> list[WebhookDeadLetterEvent]: ...

    def clear(self) -> None: ...


class InMemoryWebhookStore:
    """Bounded, most-recent-first event log and dead-letter ledger."""

    def __init__(self, max_events: int | None = None, max_dead_letters: int | None = None) -> None:
        self._lock = Lock()
        self._events: deque[WebhookEvent] = deque(maxlen=max_events or settings.webhook_event_retention)
        self._dead_letters: deque[WebhookDeadLetterEvent] = deque(
            maxlen=max_dead_letters or settings.webhook_dead_letter_retention
        )

    def record_event(self, *, provider, event_type, source_id, payload, status, reason=None) -> WebhookEvent:
        event = build_webhook_event(
            provider=provider,
            event_type=event_type,
            source_id=source_id,
            payload=payload,
            status=status,
            reason=reason,
        )
        with self._lock:
            self._events.appendleft(event)
        return event

    def list_events(self, *, provider=None, status=None, limit=100) -> list[WebhookEvent]:
        with self._lock:
            rows = list(self._events)
        matched = [
            event
            for event in rows
            if (not provider or event.provider == provider) and (not status or event.status == status)
        ]
        return matched[: max(0, limit)]

    def record_dead_letter(self, *, provider, event_type, reason, payload) -> WebhookDeadLetterEvent:
        dead_letter = build_dead_letter(provider=provider, event_type=event_type, reason=reason, payload=payload)
        with self._lock:
            self._dead_letters.appendleft(dead_letter)
        return dead_letter

    def list_dead_letters(self, *, provider=None, reason=None, limit=100) -> list[WebhookDeadLetterEvent]:
        with self._lock:
            rows = list(self._dead_letters)
        matched = [
            row
            for row in rows
            if (not provider or row.provider == provider) and (not reason or row.reason == reason)
        ]
        return matched[: max(0, limit)]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
            self._dead_letters.clear()


class SupabaseWebhookStore:
    def __init__(self, client: Any) -> None:
        self._client = client

    def record_event(self, *, provider, event_type, source_id, payload, status, reason=None) -> WebhookEvent:
        event = build_webhook_event(
            provider=provider,
            event_type=event_type,
            source_id=source_id,
            payload=payload,
            status=status,
            reason=reason,
        )
        self._client.table(EVENTS_TABLE).insert(event.model_dump(mode="json")).execute()
        return event

    def list_events(self, *, provider=None, status=None, limit=100) -> list[WebhookEvent]:
        query = self._client.table(EVENTS_TABLE).select(
            "id, provider, event_type, source_id, received_at, payload_hash, payload_size, status, reason"
        )
        if provider:
            query = query.eq("provider", provider)
        if status:
            query = query.eq("status", status)
        rows = query.execute().data or []
        rows = sorted(rows, key=lambda row: row.get("received_at") or "", reverse=True)
        return [WebhookEvent.model_validate(row) for row in rows[: max(0, limit)]]

    def record_dead_letter(self, *, provider, event_type, reason, payload) -> WebhookDeadLetterEvent:
        dead_letter = build_dead_letter(provider=provider, event_type=event_type, reason=reason, payload=payload)
        self._client.table(DEAD_LETTERS_TABLE).insert(dead_letter.model_dump(mode="json")).execute()
        return dead_letter

    def list_dead_letters(self, *, provider=None, reason=None, limit=100) -> list[WebhookDeadLetterEvent]:
        query = self._client.table(DEAD_LETTERS_TABLE).select(
            "id, provider, event_type, received_at, reason, payload_snippet"
        )
        if provider:
            query = query.eq("provider", provider)
        if reason:
            query = query.eq("reason", reason)
        rows = query.execute().data or []
        rows = sorted(rows, key=lambda row: row.get("received_at") or "", reverse=True)
        return [WebhookDeadLetterEvent.model_validate(row) for row in rows[: max(0, limit)]]

    def clear(self) -> None:
        self._client.table(EVENTS_TABLE).delete().neq("id", "").execute()
        self._client.table(DEAD_LETTERS_TABLE).delete().neq("id", "").execute()


_store: WebhookStore | None = None


def get_webhook_store() -> WebhookStore:
    global _store
    if _store is None:
        _store = SupabaseWebhookStore(get_supabase()) if uses_supabase() else InMemoryWebhookStore()
    return _store


def set_webhook_store(store: WebhookStore | None) -> None:
    global _store
    _store = store
