"""LiteLLM integration used by the direct-model responder backend.

Centralizes LLM usage behind a minimal async helper. Providers + API keys
are configured via environment variables; model defaults come from
python-decouple in `config.py`.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import litellm
import structlog
from decouple import Config as DecoupleConfig, RepositoryEmpty, RepositoryEnv

from .config import get_settings

_init_lock = asyncio.Lock()
_initialized: bool = False
_logger = structlog.get_logger(__name__)


@dataclass(slots=True, frozen=True)
class LlmOutput:
    content: str
    model: str
    provider: str | None


async def _ensure_initialized() -> None:
    global _initialized
    if _initialized:
        return
    async with _init_lock:
        if _initialized:
            return
        try:
            _bridge_provider_env()
        except Exception:
            _logger.debug("litellm.env.bridge_failed")
        _initialized = True


def _choose_best_available_model(preferred: str) -> str:
    """Select a provider/model that is likely to be available based on configured API keys.

    Provider-qualified names are left alone; bare placeholder names map to a
    small model of whichever provider has a key configured.
    """
    env = os.environ

    if "/" in preferred or ":" in preferred:
        return preferred

    if env.get("OPENAI_API_KEY"):
        return "gpt-4o-mini"
    if env.get("GOOGLE_API_KEY"):
        return "gemini-1.5-flash"
    if env.get("ANTHROPIC_API_KEY"):
        return "claude-3-haiku-20240307"
    if env.get("GROQ_API_KEY"):
        return "groq/llama-3.1-70b-versatile"
    if env.get("DEEPSEEK_API_KEY"):
        return "deepseek/deepseek-chat"
    if env.get("OPENROUTER_API_KEY"):
        return "openrouter/openai/gpt-4o-mini"
    return preferred


DEFAULT_MODEL = "gpt-4o-mini"


def _resolve_model_alias(name: str) -> str:
    """Let the shipped default model follow whichever provider key is configured."""
    normalized = (name or "").strip().lower()
    if normalized == DEFAULT_MODEL:
        return _choose_best_available_model(normalized)
    return name


def _content_of(resp: Any) -> str:
    try:
        msg = resp.choices[0].message
        return str(msg.get("content", "") or "") if isinstance(msg, dict) else str(getattr(msg, "content", "") or "")
    except (AttributeError, IndexError, KeyError, TypeError):
        return str(getattr(resp, "content", "") or "")


async def complete_chat(
    messages: Sequence[dict[str, str]],
    *,
    model: Optional[str] = None,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
) -> LlmOutput:
    """Chat completion over an ordered list of ``{role, content}`` turns.

    Uses direct litellm.completion() calls in a worker thread. Falls back to
    an alternative model if the primary one fails and another provider key
    is available.
    """
    await _ensure_initialized()
    settings = get_settings()
    use_model = _resolve_model_alias(model or settings.llm.default_model)
    temp = settings.llm.temperature if temperature is None else float(temperature)
    mtoks = settings.llm.max_tokens if max_tokens is None else int(max_tokens)
    payload = [dict(m) for m in messages]

    def _call_completion(m: str) -> Any:
        return litellm.completion(model=m, messages=payload, temperature=temp, max_tokens=mtoks)

    try:
        resp = await asyncio.to_thread(_call_completion, use_model)
    except Exception as err:
        alt_model = _choose_best_available_model(use_model)
        if alt_model == use_model:
            raise err from None
        _logger.info("litellm.fallback_model", failed=use_model, fallback=alt_model)
        use_model = alt_model
        resp = await asyncio.to_thread(_call_completion, use_model)

    provider = getattr(resp, "provider", None)
    model_used = getattr(resp, "model", use_model)
    return LlmOutput(content=_content_of(resp), model=str(model_used), provider=str(provider) if provider else None)


def _bridge_provider_env() -> None:
    """Populate os.environ with provider API keys from .env via decouple if missing.

    Also maps common synonyms to LiteLLM's canonical env names, e.g.
    GEMINI_API_KEY -> GOOGLE_API_KEY.
    """
    try:
        cfg = DecoupleConfig(RepositoryEnv(".env"))
    except FileNotFoundError:
        cfg = DecoupleConfig(RepositoryEmpty())

    def _get_from_any(*keys: str) -> str:
        for k in keys:
            v = os.environ.get(k)
            if v:
                return v
        for k in keys:
            v = str(cfg(k, default=""))
            if v:
                return v
        return ""

    mappings: list[tuple[str, tuple[str, ...]]] = [
        ("OPENAI_API_KEY", ("OPENAI_API_KEY",)),
        ("ANTHROPIC_API_KEY", ("ANTHROPIC_API_KEY",)),
        ("GROQ_API_KEY", ("GROQ_API_KEY",)),
        ("GOOGLE_API_KEY", ("GOOGLE_API_KEY", "GEMINI_API_KEY")),
        ("OPENROUTER_API_KEY", ("OPENROUTER_API_KEY",)),
        ("DEEPSEEK_API_KEY", ("DEEPSEEK_API_KEY",)),
    ]

    for canonical, aliases in mappings:
        if not os.environ.get(canonical):
            val = _get_from_any(*aliases)
            if val:
                os.environ[canonical] = val
