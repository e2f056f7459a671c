"""Completion service client.

The engine only needs single-shot text completion; callers parse the text
themselves and fall back to static content when it is not usable JSON.
"""
from __future__ import annotations

import logging
import os
from typing import Any, Protocol

from gapwatch.errors import LLMCallError
from gapwatch.utils import extract_json_object

log = logging.getLogger(__name__)


class CompletionService(Protocol):
    async def complete(
        self, prompt: str, *, model: str | None = None, max_tokens: int = 300, temperature: float = 0.7,
    ) -> str: ...


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "openai")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def complete(
        self, prompt: str, *, model: str | None = None, max_tokens: int = 300, temperature: float = 0.7,
    ) -> str:
        """Send a single user prompt, return the raw completion text.

        *model* is a hint; the Anthropic provider keeps its configured model
        when given an OpenAI model name.
        """
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    messages=[{"role": "user", "content": prompt}],
                )
                text = response.content[0].text if response.content else ""
            else:
                response = await self._client.chat.completions.create(
                    model=model or self.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    messages=[{"role": "user", "content": prompt}],
                )
                text = response.choices[0].message.content or ""
        except LLMCallError:
            raise
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc
        return text.strip()


async def complete_json(
    client: CompletionService, prompt: str, *, model: str | None = None,
    max_tokens: int = 300, temperature: float = 0.7,
) -> Any:
    """Run a completion and parse a JSON payload out of it.

    Raises ``LLMCallError`` when the call fails or nothing parseable comes back.
    """
    text = await client.complete(prompt, model=model, max_tokens=max_tokens, temperature=temperature)
    parsed = extract_json_object(text)
    if parsed is None:
        raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}", retryable=False)
    return parsed
