"""Process configuration from environment variables.

Store settings are read once when the worker starts; a missing endpoint or
access key aborts startup instead of failing every job.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class StoreSettings:
    """Connection settings for the relational store.

    Attributes:
        url: libpq DSN or postgres:// URL.
        service_key: Password of the elevated-privilege role used by ingestion.
        pool_max: Maximum pooled connections per process.
        connect_timeout: Seconds to wait when opening a connection.
        statement_timeout_ms: Server-side timeout applied to every statement.
        pool_wait_seconds: How long a caller waits for a free pooled connection.
    """

    url: str
    service_key: str
    pool_max: int = 5
    connect_timeout: int = 5
    statement_timeout_ms: int = 10_000
    pool_wait_seconds: int = 30


def load_store_settings() -> StoreSettings:
    """Read store settings from the environment.

    Raises:
        RuntimeError: If DATABASE_URL or DATABASE_SERVICE_KEY is not set.
    """
    url = os.environ.get("DATABASE_URL", "")
    key = os.environ.get("DATABASE_SERVICE_KEY", "")
    if not url or not key:
        raise RuntimeError("DATABASE_URL and DATABASE_SERVICE_KEY must be set")
    return StoreSettings(
        url=url,
        service_key=key,
        pool_max=_int_env("DATABASE_POOL_MAX", 5),
        connect_timeout=_int_env("DATABASE_CONNECT_TIMEOUT", 5),
        statement_timeout_ms=_int_env("DATABASE_STATEMENT_TIMEOUT_MS", 10_000),
        pool_wait_seconds=_int_env("DATABASE_POOL_WAIT_SECONDS", 30),
    )


def max_attempts() -> int:
    """Job attempts before a transient failure becomes terminal."""
    return max(1, _int_env("INGEST_MAX_ATTEMPTS", 5))
