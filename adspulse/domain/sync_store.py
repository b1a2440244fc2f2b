from __future__ import annotations

from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Protocol
from uuid import uuid4

from adspulse.config import settings
from adspulse.db import get_supabase, uses_supabase
from adspulse.domain.errors import ApiError
from adspulse.models.sync import SyncDeadLetterEvent, SyncJob


JOBS_TABLE = "sync_jobs"
DEAD_LETTERS_TABLE = "sync_dead_letters"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def next_run_from_frequency(frequency: str, start: datetime | None = None) -> datetime:
    base = start or _now_utc()
    if frequency == "hourly":
        return base + timedelta(hours=1)
    return base + timedelta(days=1)


def job_not_found(job_id: str) -> ApiError:
    return ApiError(
        status_code=404,
        code="SYNC_JOB_NOT_FOUND",
        message=f"Sync job '{job_id}' not found.",
    )


def job_conflict(job_id: str) -> ApiError:
    return ApiError(
        status_code=409,
        code="SYNC_JOB_CONFLICT",
        message=f"Sync job '{job_id}' was modified concurrently.",
    )


def build_sync_job(
    *,
    provider_key: str,
    brand_id: str,
    frequency: str,
    status: str | None = None,
    cursor: str | None = None,
    max_retries: int | None = None,
    base_backoff_ms: int | None = None,
) -> SyncJob:
    created_at = _now_utc()
    return SyncJob(
        id=f"sync_job_{uuid4().hex}",
        provider_key=provider_key,
        brand_id=brand_id,
        frequency=frequency,
        status=status or "active",
        cursor=cursor,
        retry_count=0,
        max_retries=settings.sync_default_max_retries if max_retries is None else max_retries,
        base_backoff_ms=settings.sync_default_base_backoff_ms if base_backoff_ms is None else base_backoff_ms,
        last_run_at=None,
        next_run_at=next_run_from_frequency(frequency, created_at),
        last_error=None,
        created_at=created_at,
        updated_at=created_at,
        version=1,
    )


def _apply_changes(job: SyncJob, changes: dict[str, Any]) -> SyncJob:
    return job.model_copy(
        update={
            **changes,
            "updated_at": _now_utc(),
            "version": job.version + 1,
        }
    )


class SyncStore(Protocol):
    def create_job(self, **fields: Any) -> SyncJob: ...

    def get_job(self, job_id: str) -> SyncJob | None: ...

    def list_jobs(
        self,
        *,
        provider_key: str | None = None,
        brand_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[SyncJob]: ...

    def list_due_jobs(self, now: datetime, limit: int) -> list[SyncJob]: ...

    def update_job(self, job_id: str, changes: dict[str, Any], *, expected_version: int | None = None) -> SyncJob: ...

    def add_dead_letter(
        self,
        *,
        job_id: str,
        provider_key: str,
        failed_at: datetime,
        reason: str,
        retry_count: int,
    ) -> SyncDeadLetterEvent: ...

    def list_dead_letters(
        self,
        *,
        job_id: str | None = None,
        provider_key: str | None = None,
        limit: int = 100,
    ) -> list[SyncDeadLetterEvent]: ...

    def reset(self) -> None: ...


def _is_due(job: SyncJob, now: datetime) -> bool:
    return job.status == "active" and job.next_run_at is not None and job.next_run_at <= now


class InMemorySyncStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._jobs: dict[str, SyncJob] = {}
        self._dead_letters: list[SyncDeadLetterEvent] = []

    def create_job(self, **fields: Any) -> SyncJob:
        job = build_sync_job(**fields)
        with self._lock:
            self._jobs[job.id] = job
        return job

    def get_job(self, job_id: str) -> SyncJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self, *, provider_key=None, brand_id=None, status=None, limit=100) -> list[SyncJob]:
        with self._lock:
            jobs = list(self._jobs.values())
        matched = [
            job
            for job in jobs
            if (not provider_key or job.provider_key == provider_key)
            and (not brand_id or job.brand_id == brand_id)
            and (not status or job.status == status)
        ]
        matched.sort(key=lambda job: job.created_at, reverse=True)
        return matched[: max(0, limit)]

    def list_due_jobs(self, now: datetime, limit: int) -> list[SyncJob]:
        with self._lock:
            due = [job for job in self._jobs.values() if _is_due(job, now)]
        due.sort(key=lambda job: job.next_run_at)
        return due[: max(0, limit)]

    def update_job(self, job_id: str, changes: dict[str, Any], *, expected_version: int | None = None) -> SyncJob:
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise job_not_found(job_id)
            if expected_version is not None and current.version != expected_version:
                raise job_conflict(job_id)
            updated = _apply_changes(current, changes)
            self._jobs[job_id] = updated
            return updated

    def add_dead_letter(self, *, job_id, provider_key, failed_at, reason, retry_count) -> SyncDeadLetterEvent:
        event = SyncDeadLetterEvent(
            id=f"dead_letter_{uuid4().hex}",
            job_id=job_id,
            provider_key=provider_key,
            failed_at=failed_at,
            reason=reason,
            retry_count=retry_count,
        )
        with self._lock:
            self._dead_letters.insert(0, event)
        return event

    def list_dead_letters(self, *, job_id=None, provider_key=None, limit=100) -> list[SyncDeadLetterEvent]:
        with self._lock:
            rows = list(self._dead_letters)
        matched = [
            row
            for row in rows
            if (not job_id or row.job_id == job_id) and (not provider_key or row.provider_key == provider_key)
        ]
        return matched[: max(0, limit)]

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()
            self._dead_letters.clear()


class SupabaseSyncStore:
    """Job rows carry a version column; updates are compare-and-swap on it."""

    def __init__(self, client: Any) -> None:
        self._client = client

    def create_job(self, **fields: Any) -> SyncJob:
        job = build_sync_job(**fields)
        self._client.table(JOBS_TABLE).insert(job.model_dump(mode="json")).execute()
        return job

    def get_job(self, job_id: str) -> SyncJob | None:
        result = self._client.table(JOBS_TABLE).select("*").eq("id", job_id).execute()
        if not result.data:
            return None
        return SyncJob.model_validate(result.data[0])

    def list_jobs(self, *, provider_key=None, brand_id=None, status=None, limit=100) -> list[SyncJob]:
        query = self._client.table(JOBS_TABLE).select("*")
        if provider_key:
            query = query.eq("provider_key", provider_key)
        if brand_id:
            query = query.eq("brand_id", brand_id)
        if status:
            query = query.eq("status", status)
        jobs = [SyncJob.model_validate(row) for row in query.execute().data or []]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return jobs[: max(0, limit)]

    def list_due_jobs(self, now: datetime, limit: int) -> list[SyncJob]:
        rows = self._client.table(JOBS_TABLE).select("*").eq("status", "active").execute().data or []
        due = [job for job in (SyncJob.model_validate(row) for row in rows) if _is_due(job, now)]
        due.sort(key=lambda job: job.next_run_at)
        return due[: max(0, limit)]

    def update_job(self, job_id: str, changes: dict[str, Any], *, expected_version: int | None = None) -> SyncJob:
        current = self.get_job(job_id)
        if current is None:
            raise job_not_found(job_id)
        if expected_version is not None and current.version != expected_version:
            raise job_conflict(job_id)
        updated = _apply_changes(current, changes)
        payload = updated.model_dump(mode="json", exclude={"id", "created_at"})
        result = (
            self._client.table(JOBS_TABLE)
            .update(payload)
            .eq("id", job_id)
            .eq("version", current.version)
            .execute()
        )
        if not result.data:
            raise job_conflict(job_id)
        return updated

    def add_dead_letter(self, *, job_id, provider_key, failed_at, reason, retry_count) -> SyncDeadLetterEvent:
        event = SyncDeadLetterEvent(
            id=f"dead_letter_{uuid4().hex}",
            job_id=job_id,
            provider_key=provider_key,
            failed_at=failed_at,
            reason=reason,
            retry_count=retry_count,
        )
        self._client.table(DEAD_LETTERS_TABLE).insert(event.model_dump(mode="json")).execute()
        return event

    def list_dead_letters(self, *, job_id=None, provider_key=None, limit=100) -> list[SyncDeadLetterEvent]:
        query = self._client.table(DEAD_LETTERS_TABLE).select("*")
        if job_id:
            query = query.eq("job_id", job_id)
        if provider_key:
            query = query.eq("provider_key", provider_key)
        rows = [SyncDeadLetterEvent.model_validate(row) for row in query.execute().data or []]
        rows.sort(key=lambda row: row.failed_at, reverse=True)
        return rows[: max(0, limit)]

    def reset(self) -> None:
        self._client.table(DEAD_LETTERS_TABLE).delete().neq("id", "").execute()
        self._client.table(JOBS_TABLE).delete().neq("id", "").execute()


_store: SyncStore | None = None


def get_sync_store() -> SyncStore:
    global _store
    if _store is None:
        _store = SupabaseSyncStore(get_supabase()) if uses_supabase() else InMemorySyncStore()
    return _store


def set_sync_store(store: SyncStore | None) -> None:
    global _store
    _store = store
