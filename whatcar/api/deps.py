"""
Dependency wiring for the routers.

The service graph is built once from settings; tests replace it with
``app.dependency_overrides[get_query_service]``.
"""
from __future__ import annotations

from functools import lru_cache

from whatcar.copilot.cache import get_cache
from whatcar.copilot.gateway import ModelGateway
from whatcar.copilot.llm_client import InferenceOptions, resolve_deployment
from whatcar.copilot.schema_summarizer import SchemaSummarizer, SqlCatalogSource
from whatcar.copilot.service import QueryService
from whatcar.core.config import get_settings
from whatcar.core.metrics import get_metrics
from whatcar.db.connection import get_http_client
from whatcar.db.executor import ODataExecutor
from whatcar.db.resilience import CircuitBreaker, ResiliencePolicy


def build_policy() -> ResiliencePolicy:
    s = get_settings()
    breaker = CircuitBreaker(
        sampling_seconds=s.odata_breaker_sampling_seconds,
        failure_ratio=s.odata_breaker_failure_ratio,
        min_throughput=s.odata_breaker_min_throughput,
        break_seconds=s.odata_breaker_break_seconds,
    )
    return ResiliencePolicy(
        attempt_timeout=s.odata_attempt_timeout_seconds,
        total_timeout=s.odata_total_timeout_seconds,
        max_retries=s.odata_max_retries,
        retry_base_delay=s.odata_retry_base_delay_seconds,
        retry_jitter=s.odata_retry_jitter_seconds,
        breaker=breaker,
    )


@lru_cache
def get_query_service() -> QueryService:
    s = get_settings()
    cache = get_cache()
    metrics = get_metrics()

    summarizer = SchemaSummarizer(
        SqlCatalogSource(s.schema_summary_sql),
        cache,
        metrics,
        cache_key=s.schema_cache_key,
        ttl=s.schema_cache_ttl_seconds,
        coalesce=s.coalesce_cache_misses,
    )
    gateway = ModelGateway(
        cache,
        metrics,
        deployment=resolve_deployment(),
        options=InferenceOptions(
            max_tokens=s.llm_max_tokens,
            temperature=s.llm_temperature,
            top_p=s.llm_top_p,
        ),
        ttl=s.llm_cache_ttl_seconds,
        coalesce=s.coalesce_cache_misses,
    )
    executor = ODataExecutor(get_http_client(), build_policy(), metrics, path_prefix=s.odata_path_prefix)
    return QueryService(summarizer, gateway, executor, metrics, allowed_entity_sets=s.allowed_entity_sets)