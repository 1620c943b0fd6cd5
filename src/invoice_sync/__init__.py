"""
Offline-first local data engine and sync protocol for the invoicing app.

Local writes land in a SQLite store and an outbox first; a sync engine pushes
the outbox to the remote authority exactly once per idempotency key and pulls
authoritative changes back when connectivity allows.
"""

__version__ = "0.1.0"
