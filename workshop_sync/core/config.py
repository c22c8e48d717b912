"""Application configuration using Pydantic Settings."""

import json
from collections.abc import Iterable
from pathlib import Path
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_REALTIME_TABLES = [
    "inspection_requests",
    "clients",
    "cars",
    "car_makes",
    "car_models",
    "brokers",
    "employees",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Backing store
    backing_store_url: str | None = None
    """PostgREST-compatible REST endpoint (e.g. https://<project>/rest/v1)."""

    backing_store_api_key: str | None = None
    """API key sent as `apikey` header and bearer token."""

    backing_store_timeout_seconds: float = 30.0
    """Per-request timeout for the HTTP backing store."""

    # Feeds and resolution
    requests_page_size: int = 50
    """Number of requests fetched per primary feed page."""

    initial_clients_limit: int = 100
    """Clients warmed into the cache by the initial load."""

    initial_cars_limit: int = 100
    """Cars warmed into the cache by the initial load."""

    # Search overlay
    search_debounce_seconds: float = 0.4
    """Quiet period before a search query hits the backing store."""

    search_result_limit: int = 50
    """Maximum rows returned by a free-text search."""

    # Reconciliation
    recently_deleted_ttl_seconds: float = 5.0
    """How long a deleted id blocks stale insert/update events."""

    workshop_timezone: str = "UTC"
    """IANA timezone used to compute "today" scopes."""

    # NoDecode prevents pydantic-settings from forcing JSON parsing at the
    # env-source layer, so we can accept either JSON arrays or CSV strings.
    realtime_tables: Annotated[list[str], NoDecode] = DEFAULT_REALTIME_TABLES
    """Tables the reconciliation channel subscribes to."""

    # Circuit breaker for the HTTP backing store
    breaker_fail_max: int = 5
    breaker_reset_timeout: int = 30
    breaker_success_threshold: int = 2

    # Error Tracking
    sentry_dsn: str | None = None
    """Sentry DSN for error tracking. Optional."""

    # Environment
    environment: str = "development"
    """Current environment (development, staging, production)."""

    debug: bool = False
    """Enable debug mode."""

    log_format: str | None = None
    """Logging format override (json or console). Defaults by environment."""

    @field_validator("realtime_tables", mode="before")
    @classmethod
    def parse_realtime_tables(cls, value: object) -> list[str]:
        """Parse realtime tables from JSON array, CSV, or list."""
        if isinstance(value, str):
            text = value.strip()
            if not text:
                return DEFAULT_REALTIME_TABLES.copy()

            try:
                decoded = json.loads(text)
            except json.JSONDecodeError:
                decoded = None

            if isinstance(decoded, list):
                return _normalize_tables(decoded)
            if isinstance(decoded, str):
                text = decoded
            elif decoded is not None:
                raise ValueError(
                    "REALTIME_TABLES must be a JSON array or comma-separated string."
                )

            # Fallback: comma-separated values
            parsed = [item.strip() for item in text.split(",")]
            return _normalize_tables(parsed)

        if isinstance(value, (list, tuple, set)):
            return _normalize_tables(value)

        raise ValueError("REALTIME_TABLES must be a string, list, tuple, or set.")


def _normalize_tables(values: Iterable[object]) -> list[str]:
    """Normalize and dedupe table names while preserving declaration order."""
    normalized: list[str] = []
    seen: set[str] = set()
    for raw_item in values:
        item = str(raw_item).strip().strip("'").strip('"').lower()
        if not item or item in seen:
            continue
        normalized.append(item)
        seen.add(item)

    if not normalized:
        return DEFAULT_REALTIME_TABLES.copy()
    return normalized


try:
    settings = Settings()
except Exception as exc:
    env_file = Path(".env")
    root_error = str(exc)
    suggestions = [
        "Allowed values for REALTIME_TABLES are:",
        '  1) ["inspection_requests","clients","cars"]',
        "  2) inspection_requests,clients,cars",
    ]

    raise RuntimeError(
        "Failed to initialize application settings. "
        f"Check environment variables in {env_file.resolve() if env_file.exists() else '.env'}.\n"
        + f"Error: {root_error}\n"
        + "\n".join(suggestions)
    ) from exc
