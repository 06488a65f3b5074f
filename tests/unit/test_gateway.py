"""
Unit tests -- model gateway: cache-aside around the model call.
"""
import asyncio

import pytest

from fakes import ScriptedLlm, envelope
from whatcar.copilot.gateway import ModelGateway
from whatcar.copilot.llm_client import LlmCompletion
from whatcar.core.utils import sha256_hex

SYSTEM = "system prompt"
QUESTION = "top 10 cars"
SCHEMA = "schema"
REPLY = envelope(query="SalesData?$top=10", resultType="ranking")


def _gateway(cache, metrics, llm, **kwargs):
    return ModelGateway(cache, metrics, deployment="openai:gpt-4o-mini", llm=llm, **kwargs)


def test_cache_key_format(cache, metrics):
    gw = _gateway(cache, metrics, ScriptedLlm(REPLY))
    key = gw.cache_key(SYSTEM, QUESTION, SCHEMA)
    assert key == "llm:openai:gpt-4o-mini:" + sha256_hex(SYSTEM + QUESTION + SCHEMA)
    assert key.split(":")[-1].isupper()


def test_cache_key_depends_on_every_part(cache, metrics):
    gw = _gateway(cache, metrics, ScriptedLlm(REPLY))
    base = gw.cache_key(SYSTEM, QUESTION, SCHEMA)
    assert gw.cache_key(SYSTEM + "!", QUESTION, SCHEMA) != base
    assert gw.cache_key(SYSTEM, QUESTION + "!", SCHEMA) != base
    assert gw.cache_key(SYSTEM, QUESTION, SCHEMA + "!") != base


@pytest.mark.asyncio
async def test_miss_then_hit(cache, metrics):
    llm = ScriptedLlm(REPLY)
    gw = _gateway(cache, metrics, llm)

    first = await gw.generate(SYSTEM, QUESTION, SCHEMA)
    second = await gw.generate(SYSTEM, QUESTION, SCHEMA)

    assert first == second == REPLY
    assert len(llm.calls) == 1
    assert metrics.counter("llm_cache_misses") == 1
    assert metrics.counter("llm_cache_hits") == 1


@pytest.mark.asyncio
async def test_raw_text_is_cached_verbatim(cache, metrics):
    """Even output that will fail validation is cached as-is."""
    gw = _gateway(cache, metrics, ScriptedLlm("not json at all"))
    await gw.generate(SYSTEM, QUESTION, SCHEMA)
    assert await cache.get(gw.cache_key(SYSTEM, QUESTION, SCHEMA)) == "not json at all"


@pytest.mark.asyncio
async def test_token_usage_and_latency_recorded(cache, metrics):
    gw = _gateway(cache, metrics, ScriptedLlm(REPLY))
    await gw.generate(SYSTEM, QUESTION, SCHEMA)
    assert metrics.counter("llm_tokens_prompt") == 120
    assert metrics.counter("llm_tokens_completion") == 30
    assert metrics.counter("llm_tokens_total") == 150
    assert metrics.histogram("llm_request_duration_ms")["count"] == 1


@pytest.mark.asyncio
async def test_failure_is_not_cached(cache, metrics):
    llm = ScriptedLlm(error=RuntimeError("rate limited"))
    gw = _gateway(cache, metrics, llm)

    with pytest.raises(RuntimeError, match="rate limited"):
        await gw.generate(SYSTEM, QUESTION, SCHEMA)

    assert await cache.get(gw.cache_key(SYSTEM, QUESTION, SCHEMA)) is None
    assert metrics.counter("llm_errors") == 1

    llm.error = None
    llm.text = REPLY
    assert await gw.generate(SYSTEM, QUESTION, SCHEMA) == REPLY
    assert len(llm.calls) == 2


@pytest.mark.asyncio
async def test_empty_cached_value_treated_as_miss(cache, metrics):
    llm = ScriptedLlm(REPLY)
    gw = _gateway(cache, metrics, llm)
    await cache.set(gw.cache_key(SYSTEM, QUESTION, SCHEMA), "", ttl=60)
    assert await gw.generate(SYSTEM, QUESTION, SCHEMA) == REPLY
    assert len(llm.calls) == 1


@pytest.mark.asyncio
async def test_options_and_prompts_passed_through(cache, metrics):
    llm = ScriptedLlm(REPLY)
    await _gateway(cache, metrics, llm).generate(SYSTEM, QUESTION, SCHEMA)
    system_prompt, user_prompt, options = llm.calls[0]
    assert (system_prompt, user_prompt) == (SYSTEM, QUESTION)
    assert options.max_tokens == 256


class _SlowLlm(ScriptedLlm):
    async def __call__(self, system_prompt, user_prompt, options):
        await asyncio.sleep(0.05)
        return await super().__call__(system_prompt, user_prompt, options)


@pytest.mark.asyncio
async def test_concurrent_misses_coalesced(cache, metrics):
    llm = _SlowLlm(REPLY)
    gw = _gateway(cache, metrics, llm, coalesce=True)
    results = await asyncio.gather(*(gw.generate(SYSTEM, QUESTION, SCHEMA) for _ in range(4)))
    assert results == [REPLY] * 4
    assert len(llm.calls) == 1


@pytest.mark.asyncio
async def test_concurrent_misses_without_coalescing(cache, metrics):
    llm = _SlowLlm(REPLY)
    gw = _gateway(cache, metrics, llm, coalesce=False)
    await asyncio.gather(*(gw.generate(SYSTEM, QUESTION, SCHEMA) for _ in range(3)))
    assert len(llm.calls) == 3


@pytest.mark.asyncio
async def test_cancelled_caller_aborts_model_call(cache, metrics):
    state = {"cancelled": False, "finished": False}

    async def slow_llm(system_prompt, user_prompt, options):
        try:
            await asyncio.sleep(0.2)
        except asyncio.CancelledError:
            state["cancelled"] = True
            raise
        state["finished"] = True
        return LlmCompletion(REPLY, prompt_tokens=1, completion_tokens=1, total_tokens=2)

    gw = _gateway(cache, metrics, slow_llm, coalesce=True)
    caller = asyncio.ensure_future(gw.generate(SYSTEM, QUESTION, SCHEMA))
    await asyncio.sleep(0.02)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller
    await asyncio.sleep(0.01)

    assert state == {"cancelled": True, "finished": False}
    assert await cache.get(gw.cache_key(SYSTEM, QUESTION, SCHEMA)) is None
