"""Async LLM client used for column-mapping suggestions."""
from __future__ import annotations

import json
import logging
import re
from typing import Any

from dealflow.config import get_settings

log = logging.getLogger(__name__)

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)

DEFAULT_MODELS = {
    "anthropic": "claude-haiku-4-5-20251001",
    "openai": "gpt-4o-mini",
    "openai_compatible": "gpt-4o-mini",
}


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


def parse_json_reply(text: str) -> dict[str, Any]:
    """Parse a model reply that should be a JSON object, tolerating code fences."""
    text = text.strip()
    m = _FENCED_JSON_RE.search(text)
    if m:
        text = m.group(1)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}", retryable=False) from exc
    if not isinstance(data, dict):
        raise LLMCallError("LLM returned JSON that is not an object", retryable=False)
    return data


class LLMClient:
    """Async JSON-in/JSON-out client for Anthropic or OpenAI-compatible APIs."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int | None = None,
    ):
        settings = get_settings()
        self.provider = provider or settings.llm_provider
        if self.provider not in DEFAULT_MODELS:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")
        self.model = model or settings.llm_model or DEFAULT_MODELS[self.provider]
        self.max_tokens = max_tokens or settings.llm_max_tokens
        self._api_key = api_key or settings.llm_api_key
        self._base_url = base_url or settings.openai_base_url
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        if self.provider == "anthropic":
            import anthropic
            kwargs: dict[str, Any] = {}
            if self._api_key:
                kwargs["api_key"] = self._api_key
            self._client = anthropic.AsyncAnthropic(**kwargs)
        else:
            import openai
            kwargs = {}
            if self._api_key:
                kwargs["api_key"] = self._api_key
            if self._base_url:
                kwargs["base_url"] = self._base_url
            self._client = openai.AsyncOpenAI(**kwargs)
        return self._client

    async def call(self, system: str, user: str) -> dict[str, Any]:
        """Send system+user message to the LLM, return parsed JSON."""
        try:
            client = self._get_client()
            if self.provider == "anthropic":
                response = await client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                text = response.content[0].text
            else:
                response = await client.chat.completions.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    response_format={"type": "json_object"},
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                )
                text = response.choices[0].message.content or "{}"
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        return parse_json_reply(text)
