"""
CLI main entry point.
"""

import argparse
import logging
import sys
import threading
from pathlib import Path

from ..config import Config, create_default_config, load_config
from ..local_store import LocalStore, LocalStoreError
from ..outbox import Outbox, OutboxEntry
from ..remote_client import SyncClient
from ..services.scheduler import ThreadingScheduler
from ..services.status import describe_status
from ..services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="invoice-sync",
        description="Offline-first local store and sync for the invoicing app",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-config", help="Write a default config file")
    subparsers.add_parser("status", help="Show local store and outbox status")
    subparsers.add_parser("sync", help="Run one push/pull cycle now")

    outbox_parser = subparsers.add_parser("outbox", help="List outbox entries")
    outbox_parser.add_argument(
        "--failed",
        action="store_true",
        help="List entries that could not sync instead of pending ones",
    )

    retry_parser = subparsers.add_parser(
        "retry-failed", help="Re-queue failed outbox entries (same idempotency key)"
    )
    retry_parser.add_argument(
        "--id",
        type=int,
        dest="entry_id",
        help="Re-queue a single entry (default: all failed entries)",
    )

    subparsers.add_parser("clear-synced", help="Delete delivered outbox entries")

    reset_parser = subparsers.add_parser(
        "reset", help="Delete all local data, including unsynced changes"
    )
    reset_parser.add_argument(
        "--yes",
        action="store_true",
        help="Confirm the reset",
    )

    subparsers.add_parser("run", help="Run the sync engine until interrupted")

    return parser


def _build_engine(config: Config, store: LocalStore, outbox: Outbox) -> SyncEngine:
    client = SyncClient.from_config(config.remote)
    return SyncEngine(
        store=store,
        outbox=outbox,
        client=client,
        scheduler=ThreadingScheduler(),
        config=config.sync,
        is_online=True,
    )


def _print_entries(entries: list[OutboxEntry]) -> None:
    for entry in entries:
        line = f"  #{entry.id:<5} {entry.type:<16} retries={entry.retry_count}  {entry.timestamp}"
        if entry.error:
            line += f"  error: {entry.error}"
        print(line)


def cmd_status(config: Config) -> int:
    """Show local store status."""
    store = LocalStore(config.store_db_path)
    outbox = Outbox(store)
    stats = store.get_stats()

    print("\n📊 Local Store Status")
    print("=" * 40)
    for name, count in stats.items():
        print(f"  {name + ':':<22}{count}")
    print(f"  {'Last sync:':<22}{store.get_last_sync_at() or 'never'}")
    print(f"  {'Pending changes:':<22}{outbox.pending_count()}")
    print(f"  {'Could not sync:':<22}{outbox.failed_count()}")
    print()

    return 0


def cmd_sync(config: Config) -> int:
    """Run a single sync cycle."""
    errors = config.validate()
    if errors:
        for error in errors:
            print(f"❌ {error}")
        return 1

    store = LocalStore(config.store_db_path)
    outbox = Outbox(store)
    engine = _build_engine(config, store, outbox)

    result = engine.sync()
    if result is None:
        print("⚠️  Sync skipped")
        return 1

    print()
    print("📊 Sync Results")
    print("=" * 40)
    print(f"  Pushed:      {result.pushed}")
    print(f"  Synced:      {result.synced}")
    print(f"  Retrying:    {result.retried}")
    print(f"  Failed:      {result.failed}")
    print(f"  Pulled:      {result.pulled} ({'full' if result.full_sync else 'delta'})")
    print(f"  Synced at:   {result.synced_at or '-'}")
    print(f"  Duration:    {result.duration_ms}ms")
    print()

    if result.errors:
        print("⚠️  Errors encountered:")
        for error in result.errors:
            print(f"   - {error}")
        print("❌ Sync failed")
        return 1

    print("✓ Sync completed successfully")
    return 0


def cmd_outbox(config: Config, failed: bool) -> int:
    """List outbox entries."""
    outbox = Outbox(LocalStore(config.store_db_path))
    entries = outbox.failed_entries() if failed else outbox.pending_entries()

    label = "failed" if failed else "pending"
    if not entries:
        print(f"No {label} outbox entries")
        return 0

    print(f"{len(entries)} {label} outbox entries:")
    _print_entries(entries)
    return 0


def cmd_retry_failed(config: Config, entry_id: int | None) -> int:
    """Re-queue failed entries."""
    outbox = Outbox(LocalStore(config.store_db_path))

    if entry_id is not None:
        if outbox.retry_failed(entry_id):
            print(f"✓ Re-queued outbox entry #{entry_id}")
            return 0
        print(f"❌ Outbox entry #{entry_id} is not in failed state")
        return 1

    entries = outbox.failed_entries()
    for entry in entries:
        outbox.retry_failed(entry.id)
    print(f"✓ Re-queued {len(entries)} failed entries")
    return 0


def cmd_clear_synced(config: Config) -> int:
    """Purge delivered outbox entries."""
    count = Outbox(LocalStore(config.store_db_path)).clear_synced()
    print(f"✓ Removed {count} synced outbox entries")
    return 0


def cmd_reset(config: Config, confirmed: bool) -> int:
    """Wipe local data."""
    if not confirmed:
        print("⚠️  This deletes all local data including unsynced changes. Re-run with --yes.")
        return 1
    LocalStore(config.store_db_path).reset()
    print("✓ Local store reset")
    return 0


def cmd_run(config: Config) -> int:
    """Run the engine on its timers until Ctrl-C."""
    errors = config.validate()
    if errors:
        for error in errors:
            print(f"❌ {error}")
        return 1

    store = LocalStore(config.store_db_path)
    outbox = Outbox(store)
    engine = _build_engine(config, store, outbox)
    engine.subscribe(lambda status: logger.info("Status: %s", describe_status(status)))

    stop = threading.Event()
    engine.start()
    try:
        stop.wait()
    except KeyboardInterrupt:
        print("\nStopping...")
    finally:
        engine.stop()
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        if parsed.config.exists():
            print(f"⚠️  {parsed.config} already exists")
            return 1
        create_default_config(parsed.config)
        print(f"✓ Wrote {parsed.config}")
        return 0

    try:
        config = load_config(parsed.config)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    try:
        if parsed.command == "status":
            return cmd_status(config)
        elif parsed.command == "sync":
            return cmd_sync(config)
        elif parsed.command == "outbox":
            return cmd_outbox(config, parsed.failed)
        elif parsed.command == "retry-failed":
            return cmd_retry_failed(config, parsed.entry_id)
        elif parsed.command == "clear-synced":
            return cmd_clear_synced(config)
        elif parsed.command == "reset":
            return cmd_reset(config, parsed.yes)
        elif parsed.command == "run":
            return cmd_run(config)
    except LocalStoreError as e:
        print(f"❌ Local store error: {e}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
