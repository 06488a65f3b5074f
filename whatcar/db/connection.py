"""Shared clients: SQLAlchemy engine for the catalog, httpx client for the data service.

Both are created lazily and reused for the life of the process.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Generator

import httpx
from sqlalchemy import create_engine
from sqlalchemy.engine import Connection, Engine

from whatcar.core.config import get_settings
from whatcar.core.logging import get_logger

logger = get_logger(__name__)

_engine: Engine | None = None
_http_client: httpx.AsyncClient | None = None


def get_engine() -> Engine:
    """Return the shared SQLAlchemy engine (lazy-created, cached)."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine(
            settings.database_url,
            pool_pre_ping=True,
            echo=False,
        )
        logger.info("DB engine created  url=%s", _engine.url.render_as_string(hide_password=True))
    return _engine


@contextmanager
def catalog_connection(engine: Engine | None = None) -> Generator[Connection, None, None]:
    """Yield a pooled connection; it is returned to the pool on exit."""
    conn = (engine or get_engine()).connect()
    try:
        yield conn
    finally:
        conn.close()


def get_http_client() -> httpx.AsyncClient:
    """Return the shared async client pointed at the data service."""
    global _http_client
    if _http_client is None:
        settings = get_settings()
        _http_client = httpx.AsyncClient(
            base_url=settings.odata_base_url,
            # Per-attempt and total budgets are enforced by the resilience policy.
            timeout=httpx.Timeout(settings.odata_total_timeout_seconds, connect=10.0),
        )
        logger.info("Data service client created  base_url=%s", settings.odata_base_url)
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None
