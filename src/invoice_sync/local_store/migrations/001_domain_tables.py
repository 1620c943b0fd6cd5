"""
Migration 001: Domain record tables.

Each table keeps the full record as a JSON document in `doc` plus the
indexed fields as real columns so they can be filtered and sorted in SQL.
"""

import sqlite3

VERSION = 1
NAME = "domain_tables"

_TABLES = {
    "invoices": """
        CREATE TABLE IF NOT EXISTS invoices (
            id TEXT PRIMARY KEY,
            business_id TEXT,
            invoice_number TEXT,
            customer_id TEXT,
            status TEXT,
            date TEXT,
            issued_at TEXT,
            updated_at TEXT,
            doc TEXT NOT NULL
        )
    """,
    "invoice_line_items": """
        CREATE TABLE IF NOT EXISTS invoice_line_items (
            id TEXT PRIMARY KEY,
            invoice_id TEXT NOT NULL,
            doc TEXT NOT NULL
        )
    """,
    "customers": """
        CREATE TABLE IF NOT EXISTS customers (
            id TEXT PRIMARY KEY,
            business_id TEXT,
            name TEXT,
            phone TEXT,
            updated_at TEXT,
            doc TEXT NOT NULL
        )
    """,
    "products": """
        CREATE TABLE IF NOT EXISTS products (
            id TEXT PRIMARY KEY,
            business_id TEXT,
            name TEXT,
            updated_at TEXT,
            doc TEXT NOT NULL
        )
    """,
    "business_settings": """
        CREATE TABLE IF NOT EXISTS business_settings (
            id TEXT PRIMARY KEY,
            doc TEXT NOT NULL
        )
    """,
    "template_configs": """
        CREATE TABLE IF NOT EXISTS template_configs (
            id TEXT PRIMARY KEY,
            business_id TEXT,
            base_template_id TEXT,
            is_active INTEGER,
            doc TEXT NOT NULL
        )
    """,
}

_INDEXES = {
    "invoices": [
        "business_id",
        "invoice_number",
        "customer_id",
        "status",
        "date",
        "issued_at",
        "updated_at",
    ],
    "invoice_line_items": ["invoice_id"],
    "customers": ["business_id", "name", "phone", "updated_at"],
    "products": ["business_id", "name", "updated_at"],
    "template_configs": ["business_id", "base_template_id", "is_active"],
}


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the domain tables and their indexes."""
    cursor = conn.cursor()

    for ddl in _TABLES.values():
        cursor.execute(ddl)

    for table, columns in _INDEXES.items():
        for column in columns:
            cursor.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{table}_{column} ON {table} ({column})"
            )

    conn.commit()


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop the domain tables."""
    cursor = conn.cursor()
    for table in _TABLES:
        cursor.execute(f"DROP TABLE IF EXISTS {table}")
    conn.commit()
