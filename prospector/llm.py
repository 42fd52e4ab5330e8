"""Generative-text client: one ``analyze`` call over Anthropic or OpenAI."""
from __future__ import annotations

import logging
import os
import time
from typing import Any

from prospector.audit import AuditResponse, AuditTrail, TokenUsage
from prospector.errors import ConfigurationError

log = logging.getLogger(__name__)

DEFAULT_MODELS = {
    "anthropic": "claude-sonnet-4-5",
    "openai": "gpt-4o-mini",
    "openai_compatible": "gpt-4o-mini",
}


class LLMCallError(Exception):
    """LLM call failed before a response came back."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 120.0,
        max_tokens: int = 4096,
        client: Any = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self.timeout = timeout
        self.max_tokens = max_tokens
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = client
        if self.provider not in DEFAULT_MODELS:
            raise ConfigurationError(f"Unknown LLM provider: {self.provider!r}")
        self.model = self.model or DEFAULT_MODELS[self.provider]
        if self._client is None:
            self._init_client()

    @classmethod
    def from_settings(cls, settings) -> LLMClient:
        return cls(
            provider=settings.llm_provider or None,
            model=settings.llm_model or None,
            timeout=settings.llm_timeout_seconds,
            max_tokens=settings.llm_max_tokens,
        )

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            key = self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            if not key:
                raise ConfigurationError("ANTHROPIC_API_KEY is not set")
            self._client = anthropic.AsyncAnthropic(api_key=key)
        else:
            import openai
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if not key and not url:
                raise ConfigurationError("OPENAI_API_KEY is not set")
            kwargs["api_key"] = key or "not-needed"
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)

    async def _complete(self, prompt: str, system_prompt: str | None, temperature: float,
                        max_tokens: int, timeout: float) -> tuple[str, TokenUsage]:
        if self.provider == "anthropic":
            kwargs: dict[str, Any] = {}
            if system_prompt:
                kwargs["system"] = system_prompt
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{"role": "user", "content": prompt}],
                timeout=timeout,
                **kwargs,
            )
            text = "".join(
                getattr(block, "text", "") for block in response.content
                if getattr(block, "type", "text") == "text"
            )
            usage = getattr(response, "usage", None)
            return text.strip(), TokenUsage(
                input=getattr(usage, "input_tokens", 0) or 0,
                output=getattr(usage, "output_tokens", 0) or 0,
            )

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        response = await self._client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=messages,
            timeout=timeout,
        )
        usage = getattr(response, "usage", None)
        return (response.choices[0].message.content or "").strip(), TokenUsage(
            input=getattr(usage, "prompt_tokens", 0) or 0,
            output=getattr(usage, "completion_tokens", 0) or 0,
        )

    async def analyze(
        self,
        prompt: str,
        system_prompt: str | None = None,
        *,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        timeout: float | None = None,
        audit: AuditTrail | None = None,
        action: str = "LLM analysis",
    ) -> str:
        """Send *prompt* and return the response text.

        Every call is recorded on *audit* when given.  Raises LLMCallError
        (``retryable=True``) when the provider cannot be reached.
        """
        started = time.monotonic()
        try:
            text, usage = await self._complete(
                prompt, system_prompt, temperature,
                max_tokens or self.max_tokens, timeout or self.timeout,
            )
        except Exception as exc:
            elapsed = (time.monotonic() - started) * 1000
            log.warning("LLM call %r failed: %s", action, exc)
            if audit is not None:
                audit.record(
                    action, "llm_query", duration_ms=elapsed,
                    prompt=prompt, system_prompt=system_prompt, model=self.model,
                    response=AuditResponse(success=False, error=str(exc)),
                )
                audit.record_error(action, exc, model=self.model)
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        elapsed = (time.monotonic() - started) * 1000
        if audit is not None:
            audit.record(
                action, "llm_query", duration_ms=elapsed,
                prompt=prompt, system_prompt=system_prompt, model=self.model,
                options={"temperature": temperature, "max_tokens": max_tokens or self.max_tokens},
                response=AuditResponse(success=True, summary=text[:500], token_usage=usage),
            )
        return text
