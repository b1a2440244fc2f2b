from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from adspulse.config import settings
from adspulse.domain.errors import INTERNAL_ERROR_MESSAGE, ApiError
from adspulse.domain.locks import KeyBusyError, KeyedTryLock
from adspulse.domain.provider_errors import SyncProviderError, SyncRateLimitedError, provider_error_detail
from adspulse.domain.sync_store import SyncStore, get_sync_store, job_not_found, next_run_from_frequency
from adspulse.models.sync import ScheduledRunError, ScheduledRunResponse, SyncJob, SyncRunResult
from adspulse.observability import incr_metric, log_event
from adspulse.providers.sync_source import SyncSource, get_sync_source


_in_flight = KeyedTryLock()


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def backoff_delay_ms(base_backoff_ms: int, attempt: int, *, jitter: bool = False) -> int:
    """base * 2^(attempt-1); attempt 1 waits exactly the base."""
    delay = base_backoff_ms * 2 ** max(0, attempt - 1)
    if jitter and base_backoff_ms >= 2:
        delay += random.randrange(0, base_backoff_ms // 2)
    return delay


def _duration_ms(started_at: datetime, finished_at: datetime) -> int:
    return max(0, int((finished_at - started_at).total_seconds() * 1000))


class SyncJobEngine:
    def __init__(self, store: SyncStore | None = None, source: SyncSource | None = None) -> None:
        self._store = store
        self._source = source

    @property
    def store(self) -> SyncStore:
        return self._store or get_sync_store()

    def run(
        self,
        job_id: str,
        simulate_rate_limit: bool | None = None,
        *,
        request_id: str | None = None,
    ) -> SyncRunResult:
        try:
            with _in_flight.hold(job_id):
                return self._run_locked(job_id, simulate_rate_limit, request_id=request_id)
        except KeyBusyError:
            incr_metric("sync.runs.rejected", reason="in_progress")
            raise ApiError(
                status_code=409,
                code="SYNC_JOB_RUN_IN_PROGRESS",
                message=f"Sync job '{job_id}' already has a run in progress.",
            ) from None

    def _run_locked(self, job_id: str, simulate_rate_limit: bool | None, *, request_id: str | None) -> SyncRunResult:
        job = self.store.get_job(job_id)
        if job is None:
            raise job_not_found(job_id)
        if job.status != "active":
            raise ApiError(
                status_code=409,
                code="SYNC_JOB_INACTIVE",
                message=f"Sync job '{job_id}' is not active.",
            )

        started_at = _now_utc()
        run_id = f"sync_run_{uuid4().hex}"
        attempt = job.retry_count + 1
        failure: SyncProviderError | None = None
        batch = None

        if simulate_rate_limit:
            failure = SyncRateLimitedError()
        else:
            source = self._source or get_sync_source()
            try:
                batch = source.pull(job)
            except SyncProviderError as exc:
                failure = exc

        finished_at = _now_utc()
        if failure is None:
            return self._succeed(job, run_id, attempt, batch, started_at, finished_at, request_id)
        log_event(
            "sync_pull_failed",
            level=logging.WARNING,
            request_id=request_id,
            job_id=job.id,
            attempt=attempt,
            **provider_error_detail(provider=job.provider_key, operation="pull", exc=failure),
        )
        if attempt > job.max_retries:
            return self._dead_letter(job, run_id, attempt, failure, started_at, finished_at, request_id)
        return self._schedule_retry(job, run_id, attempt, failure, started_at, finished_at, request_id)

    def _succeed(self, job, run_id, attempt, batch, started_at, finished_at, request_id) -> SyncRunResult:
        next_run_at = next_run_from_frequency(job.frequency, finished_at)
        self.store.update_job(
            job.id,
            {
                "retry_count": 0,
                "cursor": batch.cursor,
                "last_run_at": finished_at,
                "last_error": None,
                "next_run_at": next_run_at,
            },
            expected_version=job.version,
        )
        incr_metric("sync.runs.succeeded", provider_key=job.provider_key)
        log_event(
            "sync_run_succeeded",
            request_id=request_id,
            job_id=job.id,
            run_id=run_id,
            provider_key=job.provider_key,
            processed_records=batch.processed_records,
            cursor=batch.cursor,
        )
        return SyncRunResult(
            job_id=job.id,
            run_id=run_id,
            status="success",
            attempt=attempt,
            rate_limited=False,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=_duration_ms(started_at, finished_at),
            processed_records=batch.processed_records,
            cursor=batch.cursor,
            next_retry_at=None,
            next_scheduled_run_at=next_run_at,
        )

    def _schedule_retry(self, job, run_id, attempt, failure, started_at, finished_at, request_id) -> SyncRunResult:
        delay_ms = backoff_delay_ms(job.base_backoff_ms, attempt, jitter=settings.sync_backoff_jitter_enabled)
        next_retry_at = finished_at + timedelta(milliseconds=delay_ms)
        self.store.update_job(
            job.id,
            {
                "retry_count": attempt,
                "last_run_at": finished_at,
                "last_error": str(failure),
                "next_run_at": next_retry_at,
            },
            expected_version=job.version,
        )
        incr_metric("sync.runs.retry_scheduled", provider_key=job.provider_key, category=failure.category)
        log_event(
            "sync_retry_scheduled",
            level=logging.WARNING,
            request_id=request_id,
            job_id=job.id,
            run_id=run_id,
            attempt=attempt,
            max_retries=job.max_retries,
            backoff_ms=delay_ms,
            next_retry_at=next_retry_at.isoformat(),
        )
        return SyncRunResult(
            job_id=job.id,
            run_id=run_id,
            status="retry_scheduled",
            attempt=attempt,
            rate_limited=failure.rate_limited,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=_duration_ms(started_at, finished_at),
            processed_records=0,
            cursor=job.cursor,
            next_retry_at=next_retry_at,
            next_scheduled_run_at=None,
        )

    def _dead_letter(self, job, run_id, attempt, failure, started_at, finished_at, request_id) -> SyncRunResult:
        # Pause first: a lost compare-and-swap must not leave a dead letter behind.
        self.store.update_job(
            job.id,
            {
                "status": "paused",
                "retry_count": attempt,
                "last_run_at": finished_at,
                "last_error": str(failure),
                "next_run_at": None,
            },
            expected_version=job.version,
        )
        dead_letter = self.store.add_dead_letter(
            job_id=job.id,
            provider_key=job.provider_key,
            failed_at=finished_at,
            reason=str(failure),
            retry_count=attempt,
        )
        incr_metric("sync.dead_letter.created", provider_key=job.provider_key, category=failure.category)
        log_event(
            "sync_job_dead_lettered",
            level=logging.ERROR,
            request_id=request_id,
            job_id=job.id,
            run_id=run_id,
            dead_letter_id=dead_letter.id,
            attempt=attempt,
            max_retries=job.max_retries,
            reason=str(failure),
        )
        return SyncRunResult(
            job_id=job.id,
            run_id=run_id,
            status="dead_letter",
            attempt=attempt,
            rate_limited=failure.rate_limited,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=_duration_ms(started_at, finished_at),
            processed_records=0,
            cursor=job.cursor,
            next_retry_at=None,
            next_scheduled_run_at=None,
        )


def run_sync_job(
    job_id: str,
    simulate_rate_limit: bool | None = None,
    *,
    store: SyncStore | None = None,
    source: SyncSource | None = None,
    request_id: str | None = None,
) -> SyncRunResult:
    return SyncJobEngine(store=store, source=source).run(job_id, simulate_rate_limit, request_id=request_id)


def run_due_jobs(
    *,
    now: datetime | None = None,
    limit: int | None = None,
    store: SyncStore | None = None,
    source: SyncSource | None = None,
    request_id: str | None = None,
) -> ScheduledRunResponse:
    """Run every active job whose next run is due, oldest first.

    A job that fails with an API error (already running, modified
    concurrently, paused in between) or an unexpected error is reported in
    `errors` and the batch continues.
    """
    started_at = _now_utc()
    engine = SyncJobEngine(store=store, source=source)
    batch_size = settings.sync_scheduled_batch_size if limit is None else limit
    due_jobs = engine.store.list_due_jobs(now or started_at, batch_size)

    results: list[SyncRunResult] = []
    errors: list[ScheduledRunError] = []
    for job in due_jobs:
        try:
            results.append(engine.run(job.id, request_id=request_id))
        except ApiError as exc:
            errors.append(ScheduledRunError(job_id=job.id, code=exc.code, message=exc.message))
            log_event(
                "sync_scheduled_run_skipped",
                level=logging.WARNING,
                request_id=request_id,
                job_id=job.id,
                code=exc.code,
            )
        except Exception as exc:
            errors.append(ScheduledRunError(job_id=job.id, code="INTERNAL_ERROR", message=INTERNAL_ERROR_MESSAGE))
            log_event(
                "sync_scheduled_run_failed",
                level=logging.ERROR,
                request_id=request_id,
                job_id=job.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    incr_metric("sync.scheduled.triggers")
    log_event(
        "sync_scheduled_run_completed",
        request_id=request_id,
        due=len(due_jobs),
        succeeded=sum(1 for result in results if result.status == "success"),
        errors=len(errors),
    )
    return ScheduledRunResponse(
        started_at=started_at,
        finished_at=_now_utc(),
        due=len(due_jobs),
        results=results,
        errors=errors,
    )


def resume_sync_job(job_id: str, *, store: SyncStore | None = None) -> SyncJob:
    """Re-activate a paused job with a fresh retry budget."""
    sync_store = store or get_sync_store()
    job = sync_store.get_job(job_id)
    if job is None:
        raise job_not_found(job_id)
    if job.status == "active":
        return job
    return sync_store.update_job(
        job_id,
        {
            "status": "active",
            "retry_count": 0,
            "next_run_at": _now_utc(),
        },
        expected_version=job.version,
    )
