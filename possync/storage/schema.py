"""Database schema for the possync SQLite store.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Database initialization (init_db)
"""

import logging
import os
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Entity records: one row per (entity, id); the document is stored as JSON
CREATE TABLE IF NOT EXISTS records (
    entity TEXT NOT NULL,
    id TEXT NOT NULL,
    data TEXT NOT NULL,  -- JSON document without local bookkeeping fields
    updated_at TEXT,     -- copied from the document for recency scans
    synced INTEGER NOT NULL DEFAULT 0,
    local_updated_at TEXT NOT NULL,
    PRIMARY KEY (entity, id)
);
CREATE INDEX IF NOT EXISTS idx_records_updated ON records(entity, updated_at);
CREATE INDEX IF NOT EXISTS idx_records_synced ON records(entity, synced);

-- Pending write intents, drained FIFO by (enqueued_at, seq)
CREATE TABLE IF NOT EXISTS sync_queue (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    entity TEXT NOT NULL,
    record_id TEXT NOT NULL,
    operation TEXT NOT NULL,  -- create, update, delete
    payload TEXT NOT NULL,    -- JSON payload of the record data
    enqueued_at TEXT NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    last_attempt_at TEXT,
    revision INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_sync_queue_order ON sync_queue(enqueued_at, seq);
-- At most one pending intent per record
CREATE UNIQUE INDEX IF NOT EXISTS idx_sync_queue_record ON sync_queue(entity, record_id);

-- Operations evicted after exhausting retries
CREATE TABLE IF NOT EXISTS sync_failures (
    id TEXT PRIMARY KEY,
    operation_id TEXT NOT NULL,
    entity TEXT NOT NULL,
    record_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    payload TEXT NOT NULL,
    retry_count INTEGER NOT NULL,
    last_error TEXT,
    failed_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sync_failures_failed ON sync_failures(failed_at);

-- Conflict history (remote version superseded a local intent)
CREATE TABLE IF NOT EXISTS sync_conflicts (
    id TEXT PRIMARY KEY,
    entity TEXT NOT NULL,
    record_id TEXT NOT NULL,
    local_version TEXT NOT NULL,
    remote_version TEXT NOT NULL,
    resolution TEXT NOT NULL,
    resolved_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sync_conflicts_resolved ON sync_conflicts(resolved_at);

-- Engine bookkeeping (last sync per entity, empty snapshot counters)
CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,  -- JSON
    updated_at TEXT NOT NULL
);
"""


def init_db(conn: sqlite3.Connection, db_path: Path) -> None:
    """Initialize the database schema.

    Args:
        conn: Database connection.
        db_path: Path to the database file (for permissions).
    """
    conn.executescript(SCHEMA)

    cur = conn.execute("SELECT version FROM schema_version LIMIT 1")
    row = cur.fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    elif row[0] != SCHEMA_VERSION:
        logger.info(f"Upgrading schema version {row[0]} -> {SCHEMA_VERSION}")
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))

    conn.commit()

    # Set secure file permissions (owner read/write only)
    try:
        os.chmod(db_path, 0o600)
    except OSError as e:
        logger.warning(f"Could not set secure permissions: {e}")
