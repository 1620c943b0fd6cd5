"""
Migration 003: Invoice drafts.

One in-progress invoice form per business, kept only for reload/crash
recovery. Drafts never enter the outbox.
"""

import sqlite3

VERSION = 3
NAME = "drafts"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the drafts table."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS drafts (
            business_id TEXT PRIMARY KEY,
            invoice_json TEXT NOT NULL,
            saved_at TEXT NOT NULL
        )
    """)
    conn.commit()


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop the drafts table."""
    conn.execute("DROP TABLE IF EXISTS drafts")
    conn.commit()
