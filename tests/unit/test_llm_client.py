"""
Unit tests -- LLM client: mock mode + dispatch.
"""
import json

import pytest

from whatcar.copilot import llm_client
from whatcar.copilot.llm_client import InferenceOptions, LlmCompletion, call_llm, resolve_deployment
from whatcar.core.config import Settings


@pytest.fixture
def no_keys(monkeypatch):
    """Settings with every provider key blank, whatever the environment holds."""
    settings = Settings(
        llm_provider="mock",
        llm_model="",
        openai_api_key="",
        azure_openai_endpoint="",
        azure_openai_api_key="",
        anthropic_api_key="",
    )
    monkeypatch.setattr(llm_client, "get_settings", lambda: settings)
    return settings


@pytest.mark.asyncio
async def test_mock_returns_completion(no_keys):
    result = await call_llm("system", "question", provider="mock")
    assert isinstance(result, LlmCompletion)


@pytest.mark.asyncio
async def test_mock_returns_json_envelope(no_keys):
    result = await call_llm("system", "question", provider="mock")
    payload = json.loads(result.text)
    assert payload["query"].startswith("SalesData?")
    assert "resultType" in payload


@pytest.mark.asyncio
async def test_unknown_provider_raises(no_keys):
    with pytest.raises(NotImplementedError, match="not supported"):
        await call_llm("s", "u", provider="banana")


@pytest.mark.asyncio
async def test_openai_missing_key_raises(no_keys):
    """Should raise RuntimeError when key is empty."""
    with pytest.raises(RuntimeError, match="openai_api_key"):
        await call_llm("s", "u", provider="openai")


@pytest.mark.asyncio
async def test_azure_missing_endpoint_raises(no_keys):
    with pytest.raises(RuntimeError, match="azure_openai_endpoint"):
        await call_llm("s", "u", provider="azure")


@pytest.mark.asyncio
async def test_anthropic_missing_key_raises(no_keys):
    """Should raise RuntimeError when key is empty."""
    with pytest.raises(RuntimeError, match="anthropic_api_key"):
        await call_llm("s", "u", provider="anthropic")


@pytest.mark.asyncio
async def test_default_provider_is_mock(no_keys):
    """Settings default to mock -- this should work without any keys."""
    result = await call_llm("s", "u")
    assert json.loads(result.text)["query"]


def test_default_options():
    options = InferenceOptions()
    assert options.max_tokens == 256
    assert options.temperature == 0.2
    assert options.top_p == 1.0
    assert options.json_only is True


def test_resolve_deployment_uses_provider_default_model(no_keys):
    assert resolve_deployment("openai") == "openai:gpt-4o-mini"
    assert resolve_deployment() == "mock:mock"


def test_resolve_deployment_uses_configured_model(monkeypatch):
    settings = Settings(llm_provider="azure", llm_model="whatcar-gpt4o")
    monkeypatch.setattr(llm_client, "get_settings", lambda: settings)
    assert resolve_deployment() == "azure:whatcar-gpt4o"
