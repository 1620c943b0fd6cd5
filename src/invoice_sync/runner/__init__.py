"""
CLI runner module.

Provides commands:
- init-config: Write a default config file
- status: Local store and outbox counts
- sync: One push/pull cycle
- outbox / retry-failed / clear-synced: Outbox inspection and operator actions
- reset: Wipe local data
- run: Timer-driven sync until interrupted
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
