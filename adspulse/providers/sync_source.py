from __future__ import annotations

import random
import re
import secrets
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from adspulse.config import settings
from adspulse.domain.errors import ApiError
from adspulse.domain.provider_errors import SyncProviderError, SyncRateLimitedError
from adspulse.models.sync import SyncJob


_CURSOR_PATTERN = re.compile(r"^cursor-(\d{10})-")


@dataclass(frozen=True)
class SyncBatch:
    processed_records: int
    cursor: str


class SyncSource(Protocol):
    def pull(self, job: SyncJob) -> SyncBatch: ...


def next_cursor(previous: str | None) -> str:
    """Opaque cursor whose sequence part sorts after the previous one."""
    sequence = 0
    if previous:
        matched = _CURSOR_PATTERN.match(previous)
        if matched:
            sequence = int(matched.group(1))
    return f"cursor-{sequence + 1:010d}-{secrets.token_hex(4)}"


class SimulatedSyncSource:
    """Stand-in upstream feed that always succeeds with a non-empty page."""

    def __init__(self, min_records: int = 100, max_records: int = 999) -> None:
        self.min_records = max(1, min_records)
        self.max_records = max(self.min_records, max_records)

    def pull(self, job: SyncJob) -> SyncBatch:
        return SyncBatch(
            processed_records=random.randint(self.min_records, self.max_records),
            cursor=next_cursor(job.cursor),
        )


class HttpSyncSource:
    def __init__(self, base_url: str, api_key: str | None = None, timeout_seconds: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def pull(self, job: SyncJob) -> SyncBatch:
        url = f"{self.base_url}/sync/{job.provider_key}/changes"
        params = {"brand_id": job.brand_id}
        if job.cursor:
            params["cursor"] = job.cursor
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.get(url, headers=self._headers(), params=params)
        except httpx.TimeoutException as exc:
            raise SyncProviderError(
                f"Upstream sync pull timed out after {self.timeout_seconds}s",
                category="timeout",
            ) from exc
        except httpx.HTTPError as exc:
            raise SyncProviderError(f"Upstream sync connectivity error: {exc}", category="transport") from exc

        if response.status_code == 429:
            raise SyncRateLimitedError()
        if response.status_code >= 500:
            raise SyncProviderError(
                f"Upstream sync returned HTTP {response.status_code}: {response.text[:200]}",
                category="upstream_unavailable",
            )
        if response.status_code >= 400:
            raise SyncProviderError(
                f"Upstream sync rejected request with HTTP {response.status_code}: {response.text[:200]}",
                category="upstream_rejected",
                retryable=False,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise SyncProviderError("Upstream sync returned non-JSON response", category="invalid_response") from exc
        return _batch_from_payload(payload, job)


def _batch_from_payload(payload: Any, job: SyncJob) -> SyncBatch:
    if not isinstance(payload, dict):
        raise SyncProviderError("Unexpected upstream sync response shape", category="invalid_response")
    if isinstance(payload.get("records"), list):
        processed = len(payload["records"])
    else:
        try:
            processed = int(payload.get("processed_records") or payload.get("count") or 0)
        except (TypeError, ValueError):
            processed = 0
    if processed <= 0:
        # An empty page is a failed attempt; the cursor stays put.
        raise SyncProviderError("Upstream sync returned no records", category="invalid_response")
    cursor = payload.get("next_cursor") or payload.get("cursor")
    return SyncBatch(
        processed_records=processed,
        cursor=str(cursor) if cursor else next_cursor(job.cursor),
    )


def get_sync_source() -> SyncSource:
    mode = (settings.sync_source_mode or "simulated").strip().lower()
    if mode == "http":
        if not settings.sync_source_base_url:
            raise ApiError(
                status_code=503,
                code="SYNC_SOURCE_NOT_CONFIGURED",
                message="SYNC_SOURCE_BASE_URL is required when SYNC_SOURCE_MODE=http",
                expose=False,
            )
        return HttpSyncSource(
            base_url=settings.sync_source_base_url,
            api_key=settings.sync_source_api_key,
            timeout_seconds=settings.sync_source_timeout_seconds,
        )
    return SimulatedSyncSource()
