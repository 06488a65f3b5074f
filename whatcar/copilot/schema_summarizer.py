"""
Schema summarizer -- compact, cached description of the dataset.

The summary (entities, relationships, value lists, year coverage) is produced
by the catalog database and grounds the model.  It is cached under one fixed
key; concurrent misses may both recompute it, which is harmless because the
result is deterministic.
"""
from __future__ import annotations

import time
from typing import Protocol

from sqlalchemy import text
from sqlalchemy.engine import Engine
from starlette.concurrency import run_in_threadpool

from whatcar.copilot.cache import DistributedCache, SingleFlight
from whatcar.core.logging import get_logger
from whatcar.core.metrics import MetricsRecorder
from whatcar.db.connection import catalog_connection

logger = get_logger(__name__)

DEFAULT_CACHE_KEY = "SchemaSummary"
DEFAULT_TTL_SECONDS = 7200  # 2 hours


class CatalogSource(Protocol):
    async def fetch_summary(self) -> str: ...


class SqlCatalogSource:
    """Read the summary from a scalar SQL function in the catalog database."""

    def __init__(self, statement: str, engine: Engine | None = None):
        self._statement = statement
        self._engine = engine

    def _fetch(self) -> str:
        with catalog_connection(self._engine) as conn:
            value = conn.execute(text(self._statement)).scalar_one()
        if value is None:
            raise RuntimeError("Schema summary query returned NULL")
        return str(value)

    async def fetch_summary(self) -> str:
        return await run_in_threadpool(self._fetch)


def normalize_line_endings(summary: str) -> str:
    return summary.replace("\r\n", "\n").replace("\r", "\n")


class SchemaSummarizer:
    def __init__(
        self,
        source: CatalogSource,
        cache: DistributedCache,
        metrics: MetricsRecorder,
        cache_key: str = DEFAULT_CACHE_KEY,
        ttl: float = DEFAULT_TTL_SECONDS,
        coalesce: bool = False,
    ):
        self._source = source
        self._cache = cache
        self._metrics = metrics
        self._cache_key = cache_key
        self._ttl = ttl
        self._inflight = SingleFlight() if coalesce else None

    async def generate_summary(self) -> str:
        cached = await self._cache.get(self._cache_key)
        if cached:
            logger.debug("Cache hit for schema summary")
            self._metrics.increment("schema_summary_cache_hits")
            return cached

        logger.info("Schema summary cache miss -- querying catalog")
        self._metrics.increment("schema_summary_cache_misses")
        if self._inflight is not None:
            return await self._inflight.do(self._cache_key, self._refresh)
        return await self._refresh()

    async def _refresh(self) -> str:
        start = time.perf_counter()
        try:
            summary = await self._source.fetch_summary()
        except Exception:
            elapsed = int((time.perf_counter() - start) * 1000)
            self._metrics.observe("schema_summary_query_duration_ms", elapsed)
            self._metrics.increment("schema_summary_errors")
            logger.exception("Schema summary query failed after %d ms", elapsed)
            raise
        elapsed = int((time.perf_counter() - start) * 1000)
        self._metrics.observe("schema_summary_query_duration_ms", elapsed)

        summary = normalize_line_endings(summary)
        await self._cache.set(self._cache_key, summary, self._ttl)
        logger.info("Schema summary fetched and cached (%d chars, %d ms)", len(summary), elapsed)
        return summary
