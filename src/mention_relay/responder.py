"""Clients for the external responder that writes clone replies."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx
import structlog

from .config import ResponderSettings, Settings, get_settings
from .errors import ResponderError
from .llm import complete_chat

_logger = structlog.get_logger(__name__)


@dataclass(slots=True, frozen=True)
class ContextTurn:
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(slots=True, frozen=True)
class ResponderRequest:
    context: list[ContextTurn]
    entity_id: str
    base_prompt: str
    query: str


@dataclass(slots=True, frozen=True)
class ResponderReply:
    response: Optional[str]
    raw: dict[str, Any] = field(default_factory=dict)


class ResponderClient(Protocol):
    async def invoke(self, request: ResponderRequest) -> ResponderReply: ...


def _body_excerpt(response: httpx.Response, limit: int = 500) -> str:
    try:
        text = json.dumps(response.json())
    except ValueError:
        text = response.text
    return text[:limit]


class HttpResponderClient:
    """POSTs the conversation to the external chat service.

    The service answers ``{"response": "...", "context": ...}``. Non-2xx
    statuses and transport failures surface as :class:`ResponderError`.
    """

    def __init__(self, settings: ResponderSettings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._settings.api_key:
            headers["X-API-Key"] = self._settings.api_key
        return headers

    def _payload(self, request: ResponderRequest) -> dict[str, Any]:
        return {
            "messages": [turn.to_dict() for turn in request.context],
            "clone_id": request.entity_id,
            "base_prompt": request.base_prompt,
            "pinecone_index": self._settings.index_name,
            "query": request.query,
        }

    async def invoke(self, request: ResponderRequest) -> ResponderReply:
        url = f"{self._settings.url}{self._settings.chat_path}"
        _logger.info(
            "responder.http.request",
            url=url,
            clone_id=request.entity_id,
            turns=len(request.context),
        )
        async with httpx.AsyncClient(timeout=self._settings.timeout_seconds, transport=self._transport) as client:
            try:
                response = await client.post(url, json=self._payload(request), headers=self._headers())
            except httpx.TimeoutException as exc:
                raise ResponderError(f"AI Service Error: request timed out ({exc.__class__.__name__})") from exc
            except httpx.HTTPError as exc:
                raise ResponderError(f"AI Service Error: No response received ({exc})") from exc
        if response.is_error:
            raise ResponderError(
                f"AI Service Error: {response.status_code} - {_body_excerpt(response)}",
                data={"status": response.status_code},
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise ResponderError("AI Service Error: response was not JSON") from exc
        if not isinstance(data, dict):
            raise ResponderError("AI Service Error: unexpected response shape")
        reply = data.get("response")
        return ResponderReply(response=str(reply) if reply else None, raw=data)


class LlmResponderClient:
    """Generates replies directly through LiteLLM with the clone's base prompt as system message."""

    def __init__(self, *, model: Optional[str] = None) -> None:
        self._model = model

    async def invoke(self, request: ResponderRequest) -> ResponderReply:
        messages: list[dict[str, str]] = []
        if request.base_prompt:
            messages.append({"role": "system", "content": request.base_prompt})
        messages.extend(turn.to_dict() for turn in request.context)
        output = await complete_chat(messages, model=self._model)
        return ResponderReply(
            response=output.content or None,
            raw={"model": output.model, "provider": output.provider},
        )


def build_responder_client(settings: Settings | None = None) -> ResponderClient:
    resolved = settings or get_settings()
    if resolved.responder.backend == "llm":
        return LlmResponderClient(model=resolved.llm.default_model)
    return HttpResponderClient(resolved.responder)
