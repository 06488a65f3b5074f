"""
Shared fixtures built on the fakes in ``fakes.py``.
"""
from __future__ import annotations

from typing import Any

import pytest

from fakes import FakeCatalog, RecordingHandler, ScriptedLlm, make_executor
from whatcar.copilot.cache import MemoryCache
from whatcar.copilot.gateway import ModelGateway
from whatcar.copilot.schema_summarizer import SchemaSummarizer
from whatcar.copilot.service import QueryService
from whatcar.core.metrics import InMemoryMetrics
from whatcar.db.resilience import CircuitBreaker, ResiliencePolicy


@pytest.fixture
def metrics() -> InMemoryMetrics:
    return InMemoryMetrics()


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache()


@pytest.fixture
def build_service(metrics, cache):
    """Factory: wire a QueryService around a scripted model and a mock data service."""

    def _build(
        llm_text: str = "",
        handler: Any = None,
        llm: ScriptedLlm | None = None,
        catalog: FakeCatalog | None = None,
        policy: ResiliencePolicy | None = None,
        allowed: tuple[str, ...] = ("Vehicles", "SalesData"),
    ) -> QueryService:
        summarizer = SchemaSummarizer(catalog or FakeCatalog(), cache, metrics)
        gateway = ModelGateway(cache, metrics, deployment="test:model", llm=llm or ScriptedLlm(llm_text))
        executor = make_executor(handler or RecordingHandler(), metrics, policy)
        return QueryService(summarizer, gateway, executor, metrics, allowed_entity_sets=allowed)

    return _build


class ManualClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def tripping_breaker(clock) -> CircuitBreaker:
    """Breaker that opens after two calls at 50% failures, for 5 (manual) seconds."""
    return CircuitBreaker(
        sampling_seconds=60, failure_ratio=0.5, min_throughput=2, break_seconds=5, clock=clock,
    )
