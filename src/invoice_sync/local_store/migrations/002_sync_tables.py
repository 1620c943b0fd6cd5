"""
Migration 002: Sync metadata and outbox.

- sync_meta: single key -> value table (holds lastSyncAt)
- outbox: FIFO mutation queue with generate-once idempotency keys
"""

import sqlite3

VERSION = 2
NAME = "sync_tables"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create sync_meta and outbox tables."""
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS sync_meta (
            key TEXT PRIMARY KEY,
            value TEXT
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS outbox (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            type TEXT NOT NULL,
            data TEXT NOT NULL,  -- JSON payload

            -- Generated once at enqueue time, never regenerated on retry
            idempotency_key TEXT NOT NULL UNIQUE,
            timestamp TEXT NOT NULL,

            -- Sync state: pending, synced, failed
            sync_state TEXT NOT NULL DEFAULT 'pending',
            retry_count INTEGER NOT NULL DEFAULT 0,
            error TEXT
        )
    """)

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_outbox_sync_state
        ON outbox (sync_state, id)
    """)

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_outbox_timestamp
        ON outbox (timestamp)
    """)

    conn.commit()


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop sync_meta and outbox."""
    cursor = conn.cursor()
    cursor.execute("DROP TABLE IF EXISTS outbox")
    cursor.execute("DROP TABLE IF EXISTS sync_meta")
    conn.commit()
