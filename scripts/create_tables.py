#!/usr/bin/env python3
"""Create the Supabase tables used when STORE_BACKEND=supabase."""

import os
import sys

import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. webhook ingestion log
CREATE TABLE IF NOT EXISTS webhook_events (
    id TEXT PRIMARY KEY,
    provider VARCHAR(32) NOT NULL,
    event_type VARCHAR(80) NOT NULL,
    source_id TEXT,
    received_at TIMESTAMPTZ NOT NULL,
    payload_hash CHAR(64) NOT NULL,
    payload_size INTEGER NOT NULL,
    status VARCHAR(16) NOT NULL CHECK (status IN ('accepted', 'rejected')),
    reason TEXT
);
CREATE INDEX IF NOT EXISTS idx_webhook_events_provider_status ON webhook_events(provider, status);
CREATE INDEX IF NOT EXISTS idx_webhook_events_received_at ON webhook_events(received_at DESC);

-- 2. webhook dead letters
CREATE TABLE IF NOT EXISTS webhook_dead_letters (
    id TEXT PRIMARY KEY,
    provider VARCHAR(32) NOT NULL,
    event_type VARCHAR(80) NOT NULL,
    received_at TIMESTAMPTZ NOT NULL,
    reason TEXT NOT NULL,
    payload_snippet TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_webhook_dead_letters_provider ON webhook_dead_letters(provider, reason);

-- 3. sync jobs
CREATE TABLE IF NOT EXISTS sync_jobs (
    id TEXT PRIMARY KEY,
    provider_key VARCHAR(80) NOT NULL,
    brand_id VARCHAR(128) NOT NULL,
    frequency VARCHAR(16) NOT NULL CHECK (frequency IN ('hourly', 'daily')),
    status VARCHAR(16) NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'paused')),
    cursor VARCHAR(256),
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL,
    base_backoff_ms INTEGER NOT NULL,
    last_run_at TIMESTAMPTZ,
    next_run_at TIMESTAMPTZ,
    last_error TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    version INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_sync_jobs_brand_id ON sync_jobs(brand_id);
CREATE INDEX IF NOT EXISTS idx_sync_jobs_due ON sync_jobs(status, next_run_at);

-- 4. sync dead letters
CREATE TABLE IF NOT EXISTS sync_dead_letters (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES sync_jobs(id) ON DELETE CASCADE,
    provider_key VARCHAR(80) NOT NULL,
    failed_at TIMESTAMPTZ NOT NULL,
    reason TEXT NOT NULL,
    retry_count INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sync_dead_letters_job_id ON sync_dead_letters(job_id);

-- 5. metrics snapshots
CREATE TABLE IF NOT EXISTS observability_metric_snapshots (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    source VARCHAR(80) NOT NULL,
    request_id TEXT,
    counters JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


def main():
    if not DATABASE_URL:
        print("Error: DATABASE_URL must be set in .env")
        sys.exit(1)

    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    cur.execute(
        "SELECT table_name FROM information_schema.tables "
        "WHERE table_schema = 'public' AND table_name IN "
        "('webhook_events', 'webhook_dead_letters', 'sync_jobs', 'sync_dead_letters', 'observability_metric_snapshots') "
        "ORDER BY table_name;"
    )
    tables = cur.fetchall()
    print(f"\nTables present: {[t[0] for t in tables]}")

    cur.close()
    conn.close()
    print("\nDone!")


if __name__ == "__main__":
    main()
