"""
Outbox / mutation queue.

Every local write destined for the remote is appended here, in FIFO order,
with an idempotency key generated once per entry.
"""

from .queue import MutationType, Outbox, OutboxEntry, SyncState

__all__ = [
    "Outbox",
    "OutboxEntry",
    "MutationType",
    "SyncState",
]
