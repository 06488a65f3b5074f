"""
Model gateway -- cache-aside wrapper around the LLM call.

The cache stores the model's literal text, never a parsed envelope, so a
cached reply that later fails validation keeps failing the same way until
its entry expires.  Failed calls are never cached.
"""
from __future__ import annotations

import time
from functools import partial

from whatcar.copilot.cache import DistributedCache, SingleFlight
from whatcar.copilot.llm_client import InferenceOptions, LlmCall, LlmCompletion, call_llm
from whatcar.core.logging import get_logger
from whatcar.core.metrics import MetricsRecorder
from whatcar.core.utils import sha256_hex

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 3600


class ModelGateway:
    """Serve model output from cache, invoking the model only on a miss.

    Parameters
    ----------
    cache : DistributedCache
        Shared string cache.
    metrics : MetricsRecorder
        Receives ``llm_*`` counters and the request-duration histogram.
    deployment : str
        Model deployment identity; namespaces the cache keys.
    llm : LlmCall, optional
        Provider call, defaults to :func:`call_llm`.
    coalesce : bool
        Share one model call between concurrent misses for the same key.
    """

    def __init__(
        self,
        cache: DistributedCache,
        metrics: MetricsRecorder,
        deployment: str,
        llm: LlmCall = call_llm,
        options: InferenceOptions | None = None,
        ttl: float = DEFAULT_TTL_SECONDS,
        coalesce: bool = True,
    ):
        self._cache = cache
        self._metrics = metrics
        self._deployment = deployment
        self._llm = llm
        self._options = options or InferenceOptions()
        self._ttl = ttl
        self._inflight = SingleFlight() if coalesce else None

    def cache_key(self, system_prompt: str, user_prompt: str, schema_summary: str) -> str:
        return f"llm:{self._deployment}:{sha256_hex(system_prompt + user_prompt + schema_summary)}"

    async def generate(self, system_prompt: str, user_prompt: str, schema_summary: str) -> str:
        """Return raw model text for the prompt triple."""
        cache_key = self.cache_key(system_prompt, user_prompt, schema_summary)
        cached = await self._cache.get(cache_key)
        if cached:
            logger.info("Cache hit for key %s", cache_key)
            self._metrics.increment("llm_cache_hits")
            return cached

        self._metrics.increment("llm_cache_misses")
        invoke = partial(self._invoke_and_store, cache_key, system_prompt, user_prompt)
        if self._inflight is not None:
            return await self._inflight.do(cache_key, invoke)
        return await invoke()

    async def _invoke_and_store(self, cache_key: str, system_prompt: str, user_prompt: str) -> str:
        start = time.perf_counter()
        try:
            completion: LlmCompletion = await self._llm(system_prompt, user_prompt, self._options)
        except Exception:
            self._metrics.observe("llm_request_duration_ms", _elapsed_ms(start))
            self._metrics.increment("llm_errors")
            logger.exception("Error generating OData query via LLM")
            raise
        duration_ms = _elapsed_ms(start)

        self._metrics.observe("llm_request_duration_ms", duration_ms)
        self._metrics.increment("llm_tokens_prompt", completion.prompt_tokens)
        self._metrics.increment("llm_tokens_completion", completion.completion_tokens)
        self._metrics.increment("llm_tokens_total", completion.total_tokens)
        logger.info(
            "LLM response: %s (tokens: %d prompt + %d completion = %d total, %dms)",
            completion.text, completion.prompt_tokens, completion.completion_tokens,
            completion.total_tokens, duration_ms,
        )

        await self._cache.set(cache_key, completion.text, self._ttl)
        return completion.text


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)
