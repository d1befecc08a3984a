"""Database schema definition and initialization."""

import sqlite3

SCHEMA_VERSION = 1

# Each statement is a separate string to avoid executescript issues
_SCHEMA_STATEMENTS = [
    """CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER PRIMARY KEY,
        applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )""",

    # ── Syncable entities ───────────────────────────────────────
    # Every syncable table carries updated_at, deleted_at (soft delete
    # tombstone) and cloud_sync_status (NULL reads as pending).

    """CREATE TABLE IF NOT EXISTS customers (
        id TEXT PRIMARY KEY,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        email TEXT,
        phone TEXT,
        address TEXT,
        notes TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        deleted_at TIMESTAMP,
        cloud_sync_status TEXT
            CHECK (cloud_sync_status IN ('pending', 'synced', 'failed'))
    )""",

    """CREATE TABLE IF NOT EXISTS tickets (
        id TEXT PRIMARY KEY,
        ticket_number INTEGER,
        customer_id TEXT,
        device_type TEXT,
        device_model TEXT,
        issue_description TEXT,
        status TEXT NOT NULL DEFAULT 'waiting',
        priority TEXT NOT NULL DEFAULT 'normal',
        notes TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        deleted_at TIMESTAMP,
        cloud_sync_status TEXT
            CHECK (cloud_sync_status IN ('pending', 'synced', 'failed')),
        FOREIGN KEY (customer_id) REFERENCES customers(id) ON DELETE SET NULL
    )""",

    """CREATE TABLE IF NOT EXISTS inventory_items (
        id TEXT PRIMARY KEY,
        sku TEXT,
        name TEXT NOT NULL DEFAULT '',
        category TEXT,
        quantity INTEGER NOT NULL DEFAULT 0,
        min_quantity INTEGER NOT NULL DEFAULT 0,
        cost REAL NOT NULL DEFAULT 0.0,
        price REAL NOT NULL DEFAULT 0.0,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        deleted_at TIMESTAMP,
        cloud_sync_status TEXT
            CHECK (cloud_sync_status IN ('pending', 'synced', 'failed'))
    )""",

    """CREATE TABLE IF NOT EXISTS employees (
        id TEXT PRIMARY KEY,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        email TEXT,
        role TEXT NOT NULL DEFAULT 'technician',
        hourly_rate REAL NOT NULL DEFAULT 0.0,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        deleted_at TIMESTAMP,
        cloud_sync_status TEXT
            CHECK (cloud_sync_status IN ('pending', 'synced', 'failed'))
    )""",

    """CREATE TABLE IF NOT EXISTS appointments (
        id TEXT PRIMARY KEY,
        customer_id TEXT,
        ticket_id TEXT,
        appointment_type TEXT NOT NULL DEFAULT 'dropoff',
        scheduled_at TIMESTAMP,
        duration_minutes INTEGER NOT NULL DEFAULT 30,
        status TEXT NOT NULL DEFAULT 'scheduled',
        notes TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        deleted_at TIMESTAMP,
        cloud_sync_status TEXT
            CHECK (cloud_sync_status IN ('pending', 'synced', 'failed')),
        FOREIGN KEY (customer_id) REFERENCES customers(id) ON DELETE SET NULL,
        FOREIGN KEY (ticket_id) REFERENCES tickets(id) ON DELETE SET NULL
    )""",

    # ── Sync bookkeeping ────────────────────────────────────────

    # seq is the global enqueue order; version bumps on coalescing
    """CREATE TABLE IF NOT EXISTS offline_operations (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        kind TEXT NOT NULL CHECK (kind IN ('create', 'update', 'delete')),
        payload TEXT NOT NULL DEFAULT '{}',
        enqueued_at TIMESTAMP NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        next_attempt_at TIMESTAMP,
        version INTEGER NOT NULL DEFAULT 1
    )""",

    """CREATE INDEX IF NOT EXISTS idx_offline_operations_entity
        ON offline_operations(entity_type, entity_id)""",

    # Operations that ran out of attempts, kept for manual retry
    """CREATE TABLE IF NOT EXISTS failed_operations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        payload TEXT NOT NULL DEFAULT '{}',
        enqueued_at TIMESTAMP NOT NULL,
        attempts INTEGER NOT NULL,
        last_error TEXT,
        failed_at TIMESTAMP NOT NULL
    )""",

    """CREATE TABLE IF NOT EXISTS sync_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        started_at TIMESTAMP NOT NULL,
        finished_at TIMESTAMP,
        environment TEXT,
        delivered INTEGER NOT NULL DEFAULT 0,
        retrying INTEGER NOT NULL DEFAULT 0,
        exhausted INTEGER NOT NULL DEFAULT 0,
        skipped INTEGER NOT NULL DEFAULT 0,
        cancelled INTEGER NOT NULL DEFAULT 0
    )""",

    # Newest remote updated_at merged so far, per backend and table
    """CREATE TABLE IF NOT EXISTS pull_state (
        remote_url TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        last_updated_at TEXT NOT NULL,
        PRIMARY KEY (remote_url, entity_type)
    )""",

    f"INSERT OR IGNORE INTO schema_version (version) VALUES ({SCHEMA_VERSION})",
]


def _get_schema_version(conn) -> int:
    """Get the current schema version, or 0 if no schema exists."""
    try:
        row = conn.execute(
            "SELECT MAX(version) as v FROM schema_version"
        ).fetchone()
        return row["v"] if row and row["v"] else 0
    except sqlite3.OperationalError:
        return 0


def initialize_database(db_connection):
    """Create all tables and indexes on a fresh database.

    Re-running against an up-to-date database is a no-op.
    """
    with db_connection.get_connection() as conn:
        if _get_schema_version(conn) >= SCHEMA_VERSION:
            return
        for stmt in _SCHEMA_STATEMENTS:
            conn.execute(stmt)
