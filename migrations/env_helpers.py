"""Database URL helpers for Alembic migrations.

Kept apart from env.py so they can be tested without alembic.context.
Migrations connect with the same endpoint and service key as the worker.
"""

from __future__ import annotations

import os
from urllib.parse import quote_plus

from psycopg2.extensions import parse_dsn


def dsn_to_url(dsn: str, service_key: str = "") -> str:
    """Convert a libpq DSN or postgres:// URL to a SQLAlchemy URL.

    The service key is used as password when the DSN carries none.
    Unix socket hosts (e.g. /cloudsql/PROJECT:REGION:INSTANCE) go into the
    query string.
    """
    params = parse_dsn(dsn)
    if not params.get("password") and service_key:
        params["password"] = service_key

    user = quote_plus(params.get("user", ""))
    password = quote_plus(params.get("password", ""))
    dbname = quote_plus(params.get("dbname", ""))
    host = params.get("host", "localhost")
    port = params.get("port", "5432")

    credentials = f"{user}:{password}@" if user or password else ""
    if host.startswith("/"):
        return f"postgresql+psycopg2://{credentials}/{dbname}?host={quote_plus(host)}"
    return f"postgresql+psycopg2://{credentials}{host}:{port}/{dbname}"


def get_database_url() -> str:
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    return dsn_to_url(url, os.environ.get("DATABASE_SERVICE_KEY", ""))
