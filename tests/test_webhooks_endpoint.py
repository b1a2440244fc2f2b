import json

import pytest
from fastapi.testclient import TestClient

from adspulse.auth import Principal, get_current_principal
from adspulse.config import settings
from adspulse.domain.errors import ApiError
from adspulse.domain.ingestion import parse_webhook_json
from adspulse.domain.replay import clear_replay_keys
from adspulse.domain.signatures import compute_signature
from adspulse.domain.webhook_store import InMemoryWebhookStore, get_webhook_store, set_webhook_store
from adspulse.main import app


SECRETS = {
    "shopify": "shopify-secret",
    "meta": "meta-secret",
    "google": "google-secret",
    "hubspot": "hubspot-secret",
    "salesforce": "salesforce-secret",
}


def _configure(monkeypatch, store=None):
    for provider, secret in SECRETS.items():
        monkeypatch.setattr(settings, f"webhook_secret_{provider}", secret)
    set_webhook_store(store or InMemoryWebhookStore())
    clear_replay_keys()


def _set_admin():
    async def _override():
        return Principal(user_id="user-1", tenant_id=None, roles=("admin",))

    app.dependency_overrides[get_current_principal] = _override


def _clear_overrides():
    app.dependency_overrides.clear()
    set_webhook_store(None)
    clear_replay_keys()


def _signed(provider: str, body: bytes, **extra_headers) -> dict:
    header = {
        "shopify": "x-shopify-hmac-sha256",
        "meta": "x-hub-signature-256",
        "google": "x-goog-signature",
        "hubspot": "x-hubspot-signature",
        "salesforce": "x-salesforce-signature",
    }[provider]
    headers = {header: compute_signature(provider, body, SECRETS[provider]), "content-type": "application/json"}
    headers.update(extra_headers)
    return headers


def test_shopify_webhook_with_valid_signature_is_accepted(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)
    body = json.dumps({"id": 820982911946154500, "total_price": "19.99"}).encode()

    response = client.post(
        "/api/v1/webhooks/shopify/orders",
        content=body,
        headers=_signed("shopify", body, **{"x-shopify-webhook-id": "wh-1", "X-Request-ID": "req-abc"}),
    )

    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "req-abc"
    envelope = response.json()
    assert envelope["ok"] is True
    assert envelope["requestId"] == "req-abc"
    assert "durationMs" in envelope["meta"]
    data = envelope["data"]
    assert data["accepted"] is True
    assert data["provider"] == "shopify"
    assert data["topic"] == "orders"
    assert data["payloadType"] == "object"
    assert data["event"]["eventType"] == "shopify.orders"
    assert data["event"]["sourceId"] == "wh-1"
    assert data["event"]["status"] == "accepted"
    assert data["event"]["payloadSize"] == len(body)
    _clear_overrides()


def test_shopify_webhook_with_wrong_signature_is_rejected_without_dead_letter(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)
    body = b'{"id":1}'
    headers = _signed("shopify", b'{"id":2}', **{"x-shopify-webhook-id": "wh-2"})

    response = client.post("/api/v1/webhooks/shopify/orders", content=body, headers=headers)

    assert response.status_code == 401
    error = response.json()["error"]
    assert error["code"] == "WEBHOOK_SIGNATURE_INVALID"
    assert error["details"] == {"scheme": "base64-hmac-sha256"}
    store = get_webhook_store()
    events = store.list_events()
    assert len(events) == 1
    assert events[0].status == "rejected"
    assert events[0].reason == "signature_verification_failed"
    assert store.list_dead_letters() == []
    _clear_overrides()


def test_missing_signature_header_is_rejected_and_recorded(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)

    response = client.post("/api/v1/webhooks/crm/hubspot", content=b'{"objectId":1}')

    assert response.status_code == 401
    error = response.json()["error"]
    assert error["code"] == "WEBHOOK_SIGNATURE_INVALID"
    assert error["details"]["header"] == "x-hubspot-signature"
    events = get_webhook_store().list_events()
    assert [event.reason for event in events] == ["signature_header_missing"]
    assert get_webhook_store().list_dead_letters() == []
    _clear_overrides()


def test_unconfigured_provider_secret_rejects_delivery(monkeypatch):
    _configure(monkeypatch)
    monkeypatch.setattr(settings, "webhook_secret_google", None)
    client = TestClient(app)
    body = b'{"conversion":"purchase"}'

    response = client.post("/api/v1/webhooks/conversions/google", content=body, headers=_signed("google", body))

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "WEBHOOK_SIGNATURE_INVALID"
    _clear_overrides()


def test_duplicate_delivery_within_window_is_replay(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)
    body = b'{"event_name":"Purchase"}'
    headers = _signed("meta", body, **{"x-event-id": "evt-77"})

    first = client.post("/api/v1/webhooks/conversions/meta", content=body, headers=headers)
    second = client.post("/api/v1/webhooks/conversions/meta", content=body, headers=headers)

    assert first.status_code == 200
    assert second.status_code == 409
    error = second.json()["error"]
    assert error["code"] == "WEBHOOK_REPLAY_DETECTED"
    assert isinstance(error["details"]["expiresAtMs"], int)
    store = get_webhook_store()
    assert [event.status for event in store.list_events()] == ["rejected", "accepted"]
    assert store.list_events(status="rejected")[0].reason == "replay_detected"
    assert store.list_dead_letters() == []
    _clear_overrides()


def test_different_source_ids_are_not_replays(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)
    body = b'{"event_name":"Lead"}'

    first = client.post(
        "/api/v1/webhooks/conversions/meta",
        content=body,
        headers=_signed("meta", body, **{"x-meta-event-id": "a"}),
    )
    second = client.post(
        "/api/v1/webhooks/conversions/meta",
        content=body,
        headers=_signed("meta", body, **{"x-meta-event-id": "b"}),
    )

    assert first.status_code == 200
    assert second.status_code == 200
    _clear_overrides()


def test_delivery_without_source_id_uses_provider_and_event_type_as_key(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)
    first_body = b'{"objectId":1}'
    second_body = b'{"objectId":2}'

    first = client.post("/api/v1/webhooks/crm/salesforce", content=first_body, headers=_signed("salesforce", first_body))
    second = client.post("/api/v1/webhooks/crm/salesforce", content=second_body, headers=_signed("salesforce", second_body))

    assert first.status_code == 200
    assert second.status_code == 409
    _clear_overrides()


def test_malformed_json_is_rejected_and_dead_lettered(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)
    body = b'{"broken": '

    response = client.post(
        "/api/v1/webhooks/shopify/refunds",
        content=body,
        headers=_signed("shopify", body, **{"x-shopify-webhook-id": "wh-bad"}),
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_JSON"
    store = get_webhook_store()
    events = store.list_events()
    assert len(events) == 1
    assert events[0].status == "rejected"
    assert events[0].reason == "INVALID_JSON"
    dead_letters = store.list_dead_letters()
    assert len(dead_letters) == 1
    assert dead_letters[0].reason == "INVALID_JSON"
    assert dead_letters[0].event_type == "shopify.refunds"
    assert dead_letters[0].payload_snippet == '{"broken": '
    _clear_overrides()


def test_non_standard_json_constants_are_rejected_and_dead_lettered(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)
    body = b'{"total": NaN, "x": Infinity}'

    response = client.post(
        "/api/v1/webhooks/shopify/orders",
        content=body,
        headers=_signed("shopify", body, **{"x-shopify-webhook-id": "wh-nan"}),
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_JSON"
    store = get_webhook_store()
    assert [event.reason for event in store.list_events()] == ["INVALID_JSON"]
    assert len(store.list_dead_letters()) == 1
    _clear_overrides()


def test_invalid_utf8_is_treated_as_invalid_json(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)
    body = b"\xff\xfe\x00"

    response = client.post("/api/v1/webhooks/crm/hubspot", content=body, headers=_signed("hubspot", body))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_JSON"
    assert len(get_webhook_store().list_dead_letters()) == 1
    _clear_overrides()


def test_unexpected_failure_after_verification_is_masked_and_dead_lettered(monkeypatch):
    class FlakyStore(InMemoryWebhookStore):
        def record_event(self, *, provider, event_type, source_id, payload, status, reason=None):
            if status == "accepted":
                raise RuntimeError("events table unavailable")
            return super().record_event(
                provider=provider,
                event_type=event_type,
                source_id=source_id,
                payload=payload,
                status=status,
                reason=reason,
            )

    store = FlakyStore()
    _configure(monkeypatch, store)
    client = TestClient(app, raise_server_exceptions=False)
    body = b'{"ok":true}'

    response = client.post("/api/v1/webhooks/conversions/google", content=body, headers=_signed("google", body))

    assert response.status_code == 500
    error = response.json()["error"]
    assert error["code"] == "INTERNAL_ERROR"
    assert error["message"] == "Unexpected server error."
    assert "details" not in error
    assert [event.reason for event in store.list_events()] == ["INTERNAL_ERROR"]
    assert [row.reason for row in store.list_dead_letters()] == ["INTERNAL_ERROR"]
    _clear_overrides()


def test_unsupported_provider_or_topic_is_not_recorded(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)

    provider_resp = client.post("/api/v1/webhooks/conversions/tiktok", content=b"{}")
    crm_resp = client.post("/api/v1/webhooks/crm/meta", content=b"{}")
    topic_resp = client.post("/api/v1/webhooks/shopify/customers", content=b"{}")

    assert provider_resp.status_code == 400
    assert provider_resp.json()["error"]["code"] == "WEBHOOK_PROVIDER_UNSUPPORTED"
    assert provider_resp.json()["error"]["details"]["supported"] == ["google", "meta"]
    assert crm_resp.json()["error"]["code"] == "WEBHOOK_PROVIDER_UNSUPPORTED"
    assert topic_resp.status_code == 400
    assert topic_resp.json()["error"]["code"] == "WEBHOOK_TOPIC_UNSUPPORTED"
    assert get_webhook_store().list_events() == []
    _clear_overrides()


def test_path_segment_is_normalized(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)
    body = b"[1, 2, 3]"

    response = client.post("/api/v1/webhooks/shopify/%20Products%20", content=body, headers=_signed("shopify", body))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["topic"] == "products"
    assert data["payloadType"] == "array"
    _clear_overrides()


def test_payload_type_tags(monkeypatch):
    _configure(monkeypatch)
    client = TestClient(app)
    cases = {b'"hello"': "string", b"12.5": "number", b"true": "boolean", b"null": "null"}

    for index, (body, expected) in enumerate(cases.items()):
        response = client.post(
            "/api/v1/webhooks/crm/hubspot",
            content=body,
            headers=_signed("hubspot", body, **{"x-hubspot-event-id": f"evt-{index}"}),
        )
        assert response.status_code == 200
        assert response.json()["data"]["payloadType"] == expected
    _clear_overrides()


def test_admin_can_list_events_and_dead_letters_with_filters(monkeypatch):
    _configure(monkeypatch)
    _set_admin()
    client = TestClient(app)
    good = b'{"a":1}'
    bad = b"{"
    client.post("/api/v1/webhooks/shopify/orders", content=good, headers=_signed("shopify", good, **{"x-shopify-order-id": "1"}))
    client.post("/api/v1/webhooks/shopify/orders", content=bad, headers=_signed("shopify", bad, **{"x-shopify-order-id": "2"}))
    client.post("/api/v1/webhooks/crm/hubspot", content=good, headers={"x-hubspot-signature": "nope"})

    events = client.get("/api/v1/webhooks/events", params={"provider": "shopify", "status": "rejected"})
    assert events.status_code == 200
    data = events.json()["data"]
    assert data["count"] == 1
    assert data["items"][0]["reason"] == "INVALID_JSON"
    assert data["filters"] == {"provider": "shopify", "status": "rejected", "limit": 100}

    all_events = client.get("/api/v1/webhooks/events", params={"limit": 2}).json()["data"]
    assert all_events["count"] == 2
    assert all_events["items"][0]["provider"] == "hubspot"

    dead_letters = client.get("/api/v1/webhooks/dead-letters", params={"reason": "INVALID_JSON"})
    assert dead_letters.status_code == 200
    assert dead_letters.json()["data"]["count"] == 1
    assert dead_letters.json()["data"]["items"][0]["payloadSnippet"] == "{"
    _clear_overrides()


def test_list_filters_are_validated(monkeypatch):
    _configure(monkeypatch)
    _set_admin()
    client = TestClient(app)

    bad_provider = client.get("/api/v1/webhooks/events", params={"provider": "tiktok"})
    bad_limit = client.get("/api/v1/webhooks/dead-letters", params={"limit": 0})

    assert bad_provider.status_code == 400
    assert bad_provider.json()["error"]["code"] == "VALIDATION_ERROR"
    assert bad_limit.status_code == 400
    _clear_overrides()


@pytest.mark.parametrize("body", [b"-Infinity", b"[1, NaN]", b'{"a": Infinity}'])
def test_parse_webhook_json_rejects_non_standard_constants(body):
    with pytest.raises(ApiError) as exc_info:
        parse_webhook_json(body)
    assert exc_info.value.code == "INVALID_JSON"
