"""
posvault -- Centralised configuration via pydantic-settings.

Every tunable knob lives here.  Environment variables override defaults
using the ``POSVAULT_`` prefix (e.g. ``POSVAULT_SYNC_INTERVAL_SECONDS=10``).

Usage:
    from posvault.config.settings import get_settings
    settings = get_settings()          # cached singleton
    print(settings.database_url)
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_EXPORT_TABLES = [
    "users",
    "inventory_items",
    "inventory_transactions",
    "sales_data",
    "categories",
]


class PosVaultSettings(BaseSettings):
    """Top-level configuration for the backup and sync subsystem."""

    # ------------------------------------------------------------------
    # General
    # ------------------------------------------------------------------
    environment: str = "production"  # production | staging | development
    device_id: str = ""  # empty -> generated once and persisted in app_state

    # ------------------------------------------------------------------
    # Local store (SQLite)
    # ------------------------------------------------------------------
    database_url: str = "sqlite+aiosqlite:///./data/pos.db"
    database_timeout_seconds: float = 30.0

    # ------------------------------------------------------------------
    # Supabase
    # ------------------------------------------------------------------
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_bucket: str = "backups"
    supabase_sync_table: str = "sync_log"
    http_timeout_seconds: float = 30.0

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------
    backup_backend: str = "supabase"  # supabase | local | memory
    backup_local_dir: str = "./data/backups"
    backup_name_prefix: str = "posvault-backup"
    export_tables: list[str] = Field(default=list(DEFAULT_EXPORT_TABLES))
    export_format_version: str = "1.0.0"
    backup_keep_count: int = 10
    backup_interval_seconds: int = 0  # 0 disables periodic backups
    signed_url_ttl_seconds: int = 60
    rollback_log_retention_days: int = 30

    # ------------------------------------------------------------------
    # Transform pipeline
    # ------------------------------------------------------------------
    compression_level: int = 6
    encryption_passphrase: str = "posvault-backup-encryption-key"
    encryption_salt: str = "posvault-backup-salt-v1"
    encryption_kdf_iterations: int = 390_000

    # ------------------------------------------------------------------
    # Change-log sync
    # ------------------------------------------------------------------
    sync_interval_seconds: float = 30.0
    sync_pull_lookback_seconds: float = 0.0
    sync_pull_page_size: int = Field(default=1000, ge=1)  # PostgREST max-rows on Supabase
    capture_changes_while_disabled: bool = True
    default_key_column: str = "id"
    key_columns: dict[str, str] = Field(default_factory=dict)  # table -> key column

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------
    metrics_enabled: bool = False
    prometheus_port: int = 8000
    log_level: str = "INFO"
    log_format: str = "json"  # json | text

    # ------------------------------------------------------------------
    # Pydantic-settings config
    # ------------------------------------------------------------------
    model_config = SettingsConfigDict(
        env_prefix="POSVAULT_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    def key_column_for(self, table: str) -> str:
        """Return the identifying column used to target rows of *table*."""
        return self.key_columns.get(table, self.default_key_column)


@lru_cache(maxsize=1)
def get_settings() -> PosVaultSettings:
    """Return a cached singleton of the application settings.

    Call ``get_settings.cache_clear()`` in tests to reset.
    """
    return PosVaultSettings()
