"""
Configuration Management for fintrack

Settings groups read from the environment (and an optional .env file).

DESIGN DECISION: One module owns every tunable.
Every tunable limit of the ledger engine and the offline queue lives in
one of the groups below and is validated when first accessed.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseSettings):
    """Limits enforced by the transaction orchestrator."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        extra="ignore"
    )

    max_transaction_amount: int = Field(
        default=1_000_000_000,
        gt=0,
        description="Largest accepted amount, in minor currency units"
    )
    max_description_length: int = Field(
        default=200,
        ge=1,
        le=1000,
        description="Maximum transaction description length"
    )
    recurring_horizon_months: int = Field(
        default=12,
        ge=1,
        le=120,
        description="How far ahead open-ended recurring series are generated"
    )


class OfflineQueueSettings(BaseSettings):
    """Client-side offline mutation queue configuration."""

    model_config = SettingsConfigDict(
        env_prefix="OFFLINE_QUEUE_",
        extra="ignore"
    )

    storage_path: Path = Field(
        default=Path(".fintrack/offline_queue.json"),
        description="JSON file holding queued mutations across restarts"
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        le=50,
        description="Replay attempts before an entry is marked failed"
    )
    backoff_base_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Initial delay after a transient replay failure"
    )
    backoff_max_seconds: float = Field(
        default=300.0,
        ge=0.0,
        description="Upper bound for the replay backoff delay"
    )


class ServerSettings(BaseSettings):
    """Where the client sends mutations when online."""

    model_config = SettingsConfigDict(
        env_prefix="FINTRACK_API_",
        extra="ignore"
    )

    base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL of the ledger RPC server"
    )
    access_token: Optional[str] = Field(
        default=None,
        description="Bearer token of the authenticated principal"
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Per-request timeout"
    )
    transport_retries: int = Field(
        default=2,
        ge=1,
        le=10,
        description="Connection-level attempts per replay attempt"
    )

    @field_validator('base_url')
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class GoogleSheetsSettings(BaseSettings):
    """Spreadsheet backing the ledger tables and the audit log."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Service account key file used to open the spreadsheet"
    )
    spreadsheet_id: str = Field(
        ...,
        description="Spreadsheet holding one worksheet per ledger table"
    )

    # Worksheet titles
    accounts_sheet_name: str = Field(default="Accounts")
    transactions_sheet_name: str = Field(default="Transactions")
    journal_sheet_name: str = Field(default="JournalEntries")
    chart_sheet_name: str = Field(default="ChartOfAccounts")
    period_locks_sheet_name: str = Field(default="PeriodLocks")
    idempotency_sheet_name: str = Field(default="Idempotency")
    audit_sheet_name: str = Field(
        default="AuditLog",
        description="Worksheet receiving persisted audit events"
    )

    @field_validator('credentials_path')
    @classmethod
    def warn_missing_credentials(cls, v: str) -> str:
        """A missing key file only warns; it may be mounted after startup."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Service account key not found at {v}; "
                "Sheets storage will fall back to memory until it exists."
            )
        return v


class Settings(BaseSettings):
    """
    Entry point for every settings group.

    Groups are built on access, so a missing Sheets configuration does
    not stop the ledger or the queue from loading.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()

    @property
    def offline_queue(self) -> OfflineQueueSettings:
        return OfflineQueueSettings()

    @property
    def server(self) -> ServerSettings:
        return ServerSettings()

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Process-wide settings instance.

    Tests call ``get_settings.cache_clear()`` after changing the environment.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Try to load every group.

    Returns a dict of {setting_name: is_valid} plus an
    ``<name>_error`` entry for every group that failed to load.
    """
    results = {}
    settings = get_settings()

    for name in ("ledger", "offline_queue", "server", "google_sheets"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
