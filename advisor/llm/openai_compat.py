"""OpenAI-compatible HTTP implementation of LLMProvider."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx

from advisor.config import Settings
from advisor.llm.base import LLMProvider
from advisor.models import LLMResponse, LLMToolCall, Usage

_LOGGER = logging.getLogger(__name__)

_MAX_RETRIES = 3
_RETRY_BACKOFF_SECONDS = [5, 15, 45]
# Embedding models accept ~8k tokens; characters are a cheap upper bound.
_MAX_EMBED_CHARS = 30000


class OpenAICompatibleProvider(LLMProvider):
    """LLM provider using an OpenAI-compatible chat and embeddings API."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def generate(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        response_format: dict[str, Any] | None = None,
    ) -> LLMResponse:
        payload: dict[str, Any] = {
            "model": self._settings.llm_model,
            "messages": messages,
        }
        if tools:
            payload["tools"] = tools
            if tool_choice:
                payload["tool_choice"] = tool_choice
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if response_format:
            payload["response_format"] = response_format

        data = await self._post("/chat/completions", payload)

        choice = data["choices"][0]["message"]
        finish_reason = data["choices"][0].get("finish_reason")
        content = choice.get("content") or ""
        _LOGGER.info(
            "LLM response: finish_reason=%r content=%r tool_calls=%r",
            finish_reason,
            content[:200] if content else "",
            choice.get("tool_calls"),
        )

        parsed_tool_calls: list[LLMToolCall] = []
        for tool_call in choice.get("tool_calls") or []:
            function_data = tool_call.get("function", {})
            parsed_tool_calls.append(
                LLMToolCall(
                    name=function_data.get("name", ""),
                    arguments=safe_json_loads(function_data.get("arguments", "{}")),
                    call_id=tool_call.get("id"),
                )
            )

        usage_data = data.get("usage") or {}
        usage = Usage(
            prompt_tokens=int(usage_data.get("prompt_tokens", 0)),
            completion_tokens=int(usage_data.get("completion_tokens", 0)),
        )
        return LLMResponse(content=content, tool_calls=parsed_tool_calls, usage=usage, raw=data)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        payload = {
            "model": self._settings.embedding_model,
            "input": [text[:_MAX_EMBED_CHARS] for text in texts],
        }
        data = await self._post("/embeddings", payload)
        items = sorted(data["data"], key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in items]

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        timeout = httpx.Timeout(self._settings.request_timeout_seconds)
        async with httpx.AsyncClient(base_url=self._settings.llm_base_url, timeout=timeout) as client:
            for attempt in range(_MAX_RETRIES + 1):
                response = await client.post(
                    path,
                    headers={
                        "Authorization": f"Bearer {self._settings.openai_api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
                if response.status_code == 429 and attempt < _MAX_RETRIES:
                    wait = _RETRY_BACKOFF_SECONDS[attempt]
                    _LOGGER.warning(
                        "LLM API rate limited (429), retrying in %ds (attempt %d/%d)",
                        wait,
                        attempt + 1,
                        _MAX_RETRIES,
                    )
                    await asyncio.sleep(wait)
                    continue
                response.raise_for_status()
                break
            return response.json()


def safe_json_loads(raw: Any) -> dict[str, Any]:
    """Parse a tool-call argument payload; anything but a JSON object becomes ``{}``."""

    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, (str, bytes, bytearray)):
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
