from datetime import datetime, timezone

import httpx
import pytest

from adspulse.config import settings
from adspulse.domain.errors import ApiError
from adspulse.domain.provider_errors import SyncProviderError, SyncRateLimitedError
from adspulse.domain.sync_engine import run_sync_job
from adspulse.domain.sync_store import InMemorySyncStore
from adspulse.models.sync import SyncJob
from adspulse.providers import sync_source
from adspulse.providers.sync_source import (
    HttpSyncSource,
    SimulatedSyncSource,
    get_sync_source,
    next_cursor,
)


def _job(cursor=None) -> SyncJob:
    now = datetime.now(timezone.utc)
    return SyncJob(
        id="sync_job_1",
        provider_key="meta_ads",
        brand_id="brand-1",
        frequency="hourly",
        cursor=cursor,
        max_retries=3,
        base_backoff_ms=1000,
        created_at=now,
        updated_at=now,
    )


class FakeHttpResponse:
    def __init__(self, status_code: int, payload=None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def _install_fake_client(monkeypatch, response=None, exc=None):
    calls = []

    class FakeClient:
        def __init__(self, timeout: float):
            self.timeout = timeout

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc_value, tb):
            return False

        def get(self, url: str, headers: dict, params: dict):
            calls.append({"url": url, "headers": headers, "params": params, "timeout": self.timeout})
            if exc is not None:
                raise exc
            return response

    monkeypatch.setattr(sync_source.httpx, "Client", FakeClient)
    return calls


def test_next_cursor_sorts_after_previous():
    first = next_cursor(None)
    second = next_cursor(first)
    third = next_cursor(second)
    assert first.startswith("cursor-0000000001-")
    assert first < second < third
    assert next_cursor("opaque-upstream-token").startswith("cursor-0000000001-")


def test_simulated_source_always_returns_records():
    batch = SimulatedSyncSource().pull(_job("cursor-0000000041-deadbeef"))
    assert 100 <= batch.processed_records <= 999
    assert batch.cursor.startswith("cursor-0000000042-")


def test_http_source_pulls_changes(monkeypatch):
    calls = _install_fake_client(
        monkeypatch,
        FakeHttpResponse(200, {"records": [{"id": 1}, {"id": 2}], "next_cursor": "upstream-2"}),
    )
    source = HttpSyncSource("https://sync.example.com/", api_key="key-1", timeout_seconds=4.0)

    batch = source.pull(_job("upstream-1"))

    assert batch.processed_records == 2
    assert batch.cursor == "upstream-2"
    assert calls[0]["url"] == "https://sync.example.com/sync/meta_ads/changes"
    assert calls[0]["params"] == {"brand_id": "brand-1", "cursor": "upstream-1"}
    assert calls[0]["headers"]["Authorization"] == "Bearer key-1"
    assert calls[0]["timeout"] == 4.0


def test_http_source_accepts_count_payload_without_cursor(monkeypatch):
    _install_fake_client(monkeypatch, FakeHttpResponse(200, {"processed_records": "17"}))
    batch = HttpSyncSource("https://sync.example.com").pull(_job())
    assert batch.processed_records == 17
    assert batch.cursor.startswith("cursor-0000000001-")


@pytest.mark.parametrize("payload", [{"records": [], "next_cursor": None}, {"processed_records": 0}, {}])
def test_http_source_treats_empty_page_as_failed_pull(monkeypatch, payload):
    _install_fake_client(monkeypatch, FakeHttpResponse(200, payload))
    with pytest.raises(SyncProviderError) as exc_info:
        HttpSyncSource("https://sync.example.com").pull(_job("upstream-1"))
    assert exc_info.value.category == "invalid_response"


def test_empty_page_does_not_advance_job(monkeypatch):
    _install_fake_client(monkeypatch, FakeHttpResponse(200, {"records": [], "next_cursor": None}))
    store = InMemorySyncStore()
    job = store.create_job(provider_key="meta_ads", brand_id="brand-1", frequency="hourly", cursor="upstream-1")

    result = run_sync_job(job.id, store=store, source=HttpSyncSource("https://sync.example.com"))

    assert result.status == "retry_scheduled"
    assert result.processed_records == 0
    updated = store.get_job(job.id)
    assert updated.cursor == "upstream-1"
    assert updated.retry_count == 1


def test_http_source_maps_429_to_rate_limit(monkeypatch):
    _install_fake_client(monkeypatch, FakeHttpResponse(429, text="slow down"))
    with pytest.raises(SyncRateLimitedError) as exc_info:
        HttpSyncSource("https://sync.example.com").pull(_job())
    assert exc_info.value.rate_limited is True


@pytest.mark.parametrize(
    "status_code, category, retryable",
    [(503, "upstream_unavailable", True), (400, "upstream_rejected", False)],
)
def test_http_source_maps_error_statuses(monkeypatch, status_code, category, retryable):
    _install_fake_client(monkeypatch, FakeHttpResponse(status_code, text="nope"))
    with pytest.raises(SyncProviderError) as exc_info:
        HttpSyncSource("https://sync.example.com").pull(_job())
    assert exc_info.value.category == category
    assert exc_info.value.retryable is retryable
    assert exc_info.value.rate_limited is False


def test_http_source_maps_timeouts_and_transport_errors(monkeypatch):
    _install_fake_client(monkeypatch, exc=httpx.ReadTimeout("timed out"))
    with pytest.raises(SyncProviderError) as timeout:
        HttpSyncSource("https://sync.example.com").pull(_job())
    assert timeout.value.category == "timeout"

    _install_fake_client(monkeypatch, exc=httpx.ConnectError("refused"))
    with pytest.raises(SyncProviderError) as transport:
        HttpSyncSource("https://sync.example.com").pull(_job())
    assert transport.value.category == "transport"


def test_http_source_rejects_non_json(monkeypatch):
    _install_fake_client(monkeypatch, FakeHttpResponse(200, None, text="<html>"))
    with pytest.raises(SyncProviderError) as exc_info:
        HttpSyncSource("https://sync.example.com").pull(_job())
    assert exc_info.value.category == "invalid_response"


def test_get_sync_source_by_mode(monkeypatch):
    monkeypatch.setattr(settings, "sync_source_mode", "simulated")
    assert isinstance(get_sync_source(), SimulatedSyncSource)

    monkeypatch.setattr(settings, "sync_source_mode", "http")
    monkeypatch.setattr(settings, "sync_source_base_url", "https://sync.example.com")
    assert isinstance(get_sync_source(), HttpSyncSource)

    monkeypatch.setattr(settings, "sync_source_base_url", None)
    with pytest.raises(ApiError) as exc_info:
        get_sync_source()
    assert exc_info.value.code == "SYNC_SOURCE_NOT_CONFIGURED"
    assert exc_info.value.expose is False
