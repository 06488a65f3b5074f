"""
LLM client abstraction -- provider-agnostic wrapper.

Supported providers:
  mock      -- canned JSON envelope (for tests / offline dev)
  openai    -- OpenAI Chat Completions (gpt-4o-mini default)
  azure     -- Azure OpenAI deployment (``llm_model`` is the deployment name)
  anthropic -- Anthropic Messages (claude-3-haiku default)

Every provider receives a system message, a user message and the decoding
options, and returns the raw text together with token usage.

Configuration is read from Settings (env / .env).
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from whatcar.core.config import get_settings
from whatcar.core.logging import get_logger

logger = get_logger(__name__)


_OPENAI_DEFAULT_MODEL = "gpt-4o-mini"
_ANTHROPIC_DEFAULT_MODEL = "claude-3-haiku-20240307"

_MOCK_ENVELOPE = {
    "query": "SalesData?$select=Year,Quarter,UnitsSold&$expand=Vehicle($select=Make,Model)&$orderby=Year desc&$top=10",
    "resultType": "table",
}


@dataclass(frozen=True)
class InferenceOptions:
    """Decoding parameters sent with every request."""
    max_tokens: int = 256
    temperature: float = 0.2
    top_p: float = 1.0
    json_only: bool = True


@dataclass(frozen=True)
class LlmCompletion:
    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


def _messages(system_prompt: str, user_prompt: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]


def _completion_from_openai(response: Any) -> LlmCompletion:
    text = response.choices[0].message.content or ""
    usage = response.usage
    return LlmCompletion(
        text=text,
        prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
        completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
        total_tokens=getattr(usage, "total_tokens", 0) or 0,
    )


async def _call_mock(system_prompt: str, user_prompt: str, options: InferenceOptions) -> LlmCompletion:
    logger.info("LLM mock mode -- returning canned envelope")
    return LlmCompletion(text=json.dumps(_MOCK_ENVELOPE))


async def _call_openai(system_prompt: str, user_prompt: str, options: InferenceOptions) -> LlmCompletion:
    """Call OpenAI Chat Completions API."""
    settings = get_settings()
    api_key = settings.openai_api_key
    if not api_key:
        raise RuntimeError(
            "openai_api_key is not set.  "
            "Set OPENAI_API_KEY in your .env file or environment."
        )

    try:
        import openai  # type: ignore[import-untyped]
    except ImportError as exc:
        raise RuntimeError(
            "The 'openai' package is not installed.  "
            "Run: pip install openai"
        ) from exc

    client = openai.AsyncOpenAI(api_key=api_key)
    kwargs: dict[str, Any] = {}
    if options.json_only:
        kwargs["response_format"] = {"type": "json_object"}
    response = await client.chat.completions.create(
        model=settings.llm_model or _OPENAI_DEFAULT_MODEL,
        messages=_messages(system_prompt, user_prompt),
        max_tokens=options.max_tokens,
        temperature=options.temperature,
        top_p=options.top_p,
        **kwargs,
    )
    completion = _completion_from_openai(response)
    logger.info("OpenAI response (%d chars)", len(completion.text))
    return completion


async def _call_azure(system_prompt: str, user_prompt: str, options: InferenceOptions) -> LlmCompletion:
    """Call an Azure OpenAI chat deployment."""
    settings = get_settings()
    if not settings.azure_openai_endpoint or not settings.azure_openai_api_key:
        raise RuntimeError(
            "azure_openai_endpoint / azure_openai_api_key are not set.  "
            "Set AZURE_OPENAI_ENDPOINT and AZURE_OPENAI_API_KEY in your .env file or environment."
        )
    if not settings.llm_model:
        raise RuntimeError("llm_model must name the Azure OpenAI deployment.  Set LLM_MODEL.")

    try:
        import openai  # type: ignore[import-untyped]
    except ImportError as exc:
        raise RuntimeError(
            "The 'openai' package is not installed.  "
            "Run: pip install openai"
        ) from exc

    client = openai.AsyncAzureOpenAI(
        azure_endpoint=settings.azure_openai_endpoint,
        api_key=settings.azure_openai_api_key,
        api_version=settings.azure_openai_api_version,
    )
    kwargs: dict[str, Any] = {}
    if options.json_only:
        kwargs["response_format"] = {"type": "json_object"}
    response = await client.chat.completions.create(
        model=settings.llm_model,
        messages=_messages(system_prompt, user_prompt),
        max_tokens=options.max_tokens,
        temperature=options.temperature,
        top_p=options.top_p,
        **kwargs,
    )
    completion = _completion_from_openai(response)
    logger.info("Azure OpenAI response (%d chars)", len(completion.text))
    return completion


async def _call_anthropic(system_prompt: str, user_prompt: str, options: InferenceOptions) -> LlmCompletion:
    """Call Anthropic Messages API.

    There is no JSON response mode, so the assistant turn is prefilled with
    ``{`` and the brace is put back on the returned text.
    """
    settings = get_settings()
    api_key = settings.anthropic_api_key
    if not api_key:
        raise RuntimeError(
            "anthropic_api_key is not set.  "
            "Set ANTHROPIC_API_KEY in your .env file or environment."
        )

    try:
        import anthropic  # type: ignore[import-untyped]
    except ImportError as exc:
        raise RuntimeError(
            "The 'anthropic' package is not installed.  "
            "Run: pip install anthropic"
        ) from exc

    messages: list[dict[str, str]] = [{"role": "user", "content": user_prompt}]
    if options.json_only:
        messages.append({"role": "assistant", "content": "{"})

    client = anthropic.AsyncAnthropic(api_key=api_key)
    response = await client.messages.create(
        model=settings.llm_model or _ANTHROPIC_DEFAULT_MODEL,
        system=system_prompt,
        max_tokens=options.max_tokens,
        temperature=options.temperature,
        top_p=options.top_p,
        messages=messages,
    )
    text = response.content[0].text if response.content else ""
    if options.json_only:
        text = "{" + text
    usage = response.usage
    logger.info("Anthropic response (%d chars)", len(text))
    return LlmCompletion(
        text=text,
        prompt_tokens=usage.input_tokens,
        completion_tokens=usage.output_tokens,
        total_tokens=usage.input_tokens + usage.output_tokens,
    )


LlmCall = Callable[[str, str, InferenceOptions], Awaitable[LlmCompletion]]

_PROVIDERS: dict[str, LlmCall] = {
    "mock": _call_mock,
    "openai": _call_openai,
    "azure": _call_azure,
    "anthropic": _call_anthropic,
}


def resolve_deployment(provider: str | None = None) -> str:
    """Identity used to namespace cache keys: ``<provider>:<model>``."""
    settings = get_settings()
    provider = (provider or settings.llm_provider).lower()
    defaults = {"openai": _OPENAI_DEFAULT_MODEL, "anthropic": _ANTHROPIC_DEFAULT_MODEL}
    model = settings.llm_model or defaults.get(provider, provider)
    return f"{provider}:{model}"


async def call_llm(
    system_prompt: str,
    user_prompt: str,
    options: InferenceOptions | None = None,
    provider: str | None = None,
) -> LlmCompletion:
    """Send the prompt pair to the configured (or overridden) LLM provider.

    Parameters
    ----------
    system_prompt : str
        Instructions, schema summary and question.
    user_prompt : str
        The user's question.
    options : InferenceOptions, optional
        Decoding parameters; defaults to the JSON-only contract.
    provider : str, optional
        Override the provider from settings.  One of: mock, openai, azure, anthropic.
    """
    if provider is None:
        provider = get_settings().llm_provider.lower()

    fn = _PROVIDERS.get(provider)
    if fn is None:
        raise NotImplementedError(
            f"LLM provider '{provider}' is not supported.  "
            f"Choose from: {', '.join(_PROVIDERS)}"
        )

    logger.info(
        "Calling LLM provider=%s  system_len=%d  user_len=%d",
        provider, len(system_prompt), len(user_prompt),
    )
    return await fn(system_prompt, user_prompt, options or InferenceOptions())
