"""
Thakirni — LLM completion client.

`complete()` sends one system prompt + one user message to the configured
provider and returns the raw text. Every caller in this package expects a
JSON object back, so JSON output mode is requested wherever the provider
supports it.

Providers: gemini (default), anthropic, openai, cohere. SDKs are imported
lazily so only the selected provider's package must be installed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionRequest:
    system: str
    user_message: str
    max_tokens: int
    json_mode: bool = True


# (client, model, request) -> text
_CallFn = Callable[[Any, str, CompletionRequest], Awaitable[str]]


# ---------------------------------------------------------------------------
# Provider clients
# ---------------------------------------------------------------------------


def _gemini_client(api_key: str) -> Any:
    import google.generativeai as genai

    genai.configure(api_key=api_key)
    return genai


async def _gemini_call(genai: Any, model: str, req: CompletionRequest) -> str:
    config = {"max_output_tokens": req.max_tokens}
    if req.json_mode:
        config["response_mime_type"] = "application/json"
    gm = genai.GenerativeModel(model_name=model, system_instruction=req.system)
    response = await gm.generate_content_async(
        req.user_message,
        generation_config=genai.types.GenerationConfig(**config),
    )
    return response.text


def _anthropic_client(api_key: str) -> Any:
    import anthropic

    return anthropic.AsyncAnthropic(api_key=api_key)


async def _anthropic_call(client: Any, model: str, req: CompletionRequest) -> str:
    messages = [{"role": "user", "content": req.user_message}]
    if req.json_mode:
        # Prefill so the reply starts inside a JSON object
        messages.append({"role": "assistant", "content": "{"})
    response = await client.messages.create(
        model=model,
        max_tokens=req.max_tokens,
        system=req.system,
        messages=messages,
    )
    text = response.content[0].text
    return "{" + text if req.json_mode else text


def _openai_client(api_key: str) -> Any:
    from openai import AsyncOpenAI

    return AsyncOpenAI(api_key=api_key)


async def _openai_call(client: Any, model: str, req: CompletionRequest) -> str:
    kwargs: dict[str, Any] = {}
    if req.json_mode:
        kwargs["response_format"] = {"type": "json_object"}
    response = await client.chat.completions.create(
        model=model,
        max_tokens=req.max_tokens,
        messages=[
            {"role": "system", "content": req.system},
            {"role": "user", "content": req.user_message},
        ],
        **kwargs,
    )
    return response.choices[0].message.content or ""


def _cohere_client(api_key: str) -> Any:
    import cohere

    return cohere.AsyncClientV2(api_key=api_key)


async def _cohere_call(client: Any, model: str, req: CompletionRequest) -> str:
    kwargs: dict[str, Any] = {}
    if req.json_mode:
        kwargs["response_format"] = {"type": "json_object"}
    response = await client.chat(
        model=model,
        max_tokens=req.max_tokens,
        messages=[
            {"role": "system", "content": req.system},
            {"role": "user", "content": req.user_message},
        ],
        **kwargs,
    )
    return response.message.content[0].text


# name -> (client factory, call, default model)
_PROVIDERS: dict[str, tuple[Callable[[str], Any], _CallFn, str]] = {
    "gemini":    (_gemini_client,    _gemini_call,    "gemini-2.0-flash"),
    "anthropic": (_anthropic_client, _anthropic_call, "claude-haiku-4-5-20251001"),
    "openai":    (_openai_client,    _openai_call,    "gpt-4o-mini"),
    "cohere":    (_cohere_client,    _cohere_call,    "command-a-03-2025"),
}


@dataclass
class _Backend:
    name: str
    model: str
    client: Any
    call: _CallFn


_backend: _Backend | None = None


def _get_backend() -> _Backend:
    """Build the provider client once, from settings."""
    global _backend
    if _backend is not None:
        return _backend

    from thakirni.config import settings

    name = settings.LLM_PROVIDER.lower()
    if name not in _PROVIDERS:
        raise ValueError(
            f"Unknown LLM_PROVIDER={name!r}. Supported: {', '.join(_PROVIDERS)}"
        )
    make_client, call, default_model = _PROVIDERS[name]
    _backend = _Backend(
        name=name,
        model=settings.LLM_MODEL or default_model,
        client=make_client(settings.LLM_API_KEY),
        call=call,
    )
    logger.info("LLM provider: %s, model: %s", _backend.name, _backend.model)
    return _backend


def reset_backend() -> None:
    """Forget the cached provider (settings changed)."""
    global _backend
    _backend = None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def complete(
    system: str,
    user_message: str,
    max_tokens: int = 256,
    timeout: float | None = None,
    json_mode: bool = True,
) -> str:
    """Return the provider's reply text.

    Bounded by `timeout` seconds (LLM_TIMEOUT_SECONDS by default). Raises on
    provider errors and on timeout; callers convert those into fallbacks.
    """
    backend = _get_backend()
    if timeout is None:
        from thakirni.config import settings
        timeout = settings.LLM_TIMEOUT_SECONDS

    request = CompletionRequest(system, user_message, max_tokens, json_mode)
    started = time.monotonic()
    try:
        return await asyncio.wait_for(
            backend.call(backend.client, backend.model, request), timeout=timeout,
        )
    finally:
        logger.debug("%s completion took %.2fs", backend.name, time.monotonic() - started)
