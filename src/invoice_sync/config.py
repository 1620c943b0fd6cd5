"""
Configuration management (SSOT).

This module defines ALL configuration for the invoice sync engine.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- The remote base_url is the sync API root (the /sync/* endpoints hang off it)
- Timers are expressed in seconds and driven through the injected scheduler
- max_retry_attempts is the per-entry push ceiling before an entry is failed
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass
class RemoteConfig:
    """Remote sync API configuration."""

    base_url: str
    token: str
    # Request timeout (seconds); a hung request counts as a network error
    timeout_seconds: int = 30
    # Transport-level retries for 429/5xx before the request is reported failed
    max_retries: int = 3
    backoff_factor: float = 0.5


@dataclass
class SyncConfig:
    """Sync engine timing and retry settings."""

    # Periodic sync interval
    interval_seconds: float = 30.0
    # Push attempts per outbox entry before it is marked failed
    max_retry_attempts: int = 3
    # A connectivity "online" event within this window of the last cycle is ignored
    online_debounce_seconds: float = 5.0
    # Delay between a local mutation and the sync it triggers
    mutation_sync_delay_seconds: float = 1.0
    # How often the status projection refreshes its pending count
    status_poll_seconds: float = 5.0


@dataclass
class DraftConfig:
    """Draft autosave settings."""

    autosave_delay_seconds: float = 2.0


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    remote: RemoteConfig
    sync: SyncConfig = field(default_factory=SyncConfig)
    drafts: DraftConfig = field(default_factory=DraftConfig)
    store_db_path: Path = field(default_factory=lambda: Path("data/invoices.db"))
    # Active business (tenant) for drafts and queries
    business_id: str | None = None

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if not self.remote.base_url:
            errors.append("remote.base_url is required")
        if self.remote.timeout_seconds <= 0:
            errors.append("remote.timeout_seconds must be positive")

        if self.sync.interval_seconds <= 0:
            errors.append("sync.interval_seconds must be positive")
        if self.sync.max_retry_attempts < 1:
            errors.append("sync.max_retry_attempts must be at least 1")
        if self.sync.online_debounce_seconds < 0:
            errors.append("sync.online_debounce_seconds must not be negative")

        if self.drafts.autosave_delay_seconds < 0:
            errors.append("drafts.autosave_delay_seconds must not be negative")

        return errors


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - INVOICE_SYNC_URL
    - INVOICE_SYNC_TOKEN
    - INVOICE_SYNC_TIMEOUT (request timeout in seconds)
    - INVOICE_SYNC_INTERVAL (periodic sync interval in seconds)
    - INVOICE_SYNC_BUSINESS_ID
    - INVOICE_SYNC_DB (local store path)
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Remote config
    remote_data = data.get("remote", {})
    remote = RemoteConfig(
        base_url=os.environ.get(
            "INVOICE_SYNC_URL", remote_data.get("base_url", "http://localhost:3000/api")
        ),
        token=os.environ.get("INVOICE_SYNC_TOKEN", remote_data.get("token", "")),
        timeout_seconds=int(
            os.environ.get("INVOICE_SYNC_TIMEOUT", remote_data.get("timeout_seconds", 30))
        ),
        max_retries=remote_data.get("max_retries", 3),
        backoff_factor=remote_data.get("backoff_factor", 0.5),
    )

    # Sync config
    sync_data = data.get("sync", {})
    interval = sync_data.get("interval_seconds", 30.0)
    interval_env = os.environ.get("INVOICE_SYNC_INTERVAL", "")
    if interval_env:
        try:
            interval = float(interval_env)
        except ValueError:
            pass  # Keep configured value

    sync = SyncConfig(
        interval_seconds=interval,
        max_retry_attempts=sync_data.get("max_retry_attempts", 3),
        online_debounce_seconds=sync_data.get("online_debounce_seconds", 5.0),
        mutation_sync_delay_seconds=sync_data.get("mutation_sync_delay_seconds", 1.0),
        status_poll_seconds=sync_data.get("status_poll_seconds", 5.0),
    )

    # Draft config
    draft_data = data.get("drafts", {})
    drafts = DraftConfig(
        autosave_delay_seconds=draft_data.get("autosave_delay_seconds", 2.0),
    )

    store_db = os.environ.get("INVOICE_SYNC_DB", data.get("store_db_path", "data/invoices.db"))

    return Config(
        remote=remote,
        sync=sync,
        drafts=drafts,
        store_db_path=Path(store_db),
        business_id=os.environ.get("INVOICE_SYNC_BUSINESS_ID", data.get("business_id")),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Offline invoice sync configuration

remote:
  base_url: "http://localhost:3000/api"   # Sync API root (/sync/batch, /sync/delta, /sync/full)
  token: "YOUR_API_TOKEN"
  timeout_seconds: 30                     # A hung request is treated as a network error
  max_retries: 3                          # Transport retries for 429/5xx
  backoff_factor: 0.5

sync:
  interval_seconds: 30                    # Periodic sync while online
  max_retry_attempts: 3                   # Push attempts before an outbox entry is failed
  online_debounce_seconds: 5              # Ignore "online" events right after a cycle
  mutation_sync_delay_seconds: 1          # Sync shortly after a local change
  status_poll_seconds: 5                  # Pending-count refresh for status indicators

drafts:
  autosave_delay_seconds: 2               # Debounce for invoice form autosave

# Local store path
store_db_path: "data/invoices.db"

# Active business id (tenant)
business_id: null
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
