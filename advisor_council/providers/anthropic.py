"""Anthropic Claude provider using anthropic SDK streaming with native async."""

import logging
import os
from collections.abc import AsyncIterator
from typing import Any

import anthropic as anthropic_sdk

from config.config_loader import ModelConfig
from advisor_council.providers.base import AIProvider, ChatRequest, ErrorKind, ProviderError
from advisor_council.providers.frames import StreamEvent, normalize_frame

logger = logging.getLogger(__name__)

_MIN_THINKING_BUDGET = 1024


class AnthropicProvider(AIProvider):
    """Anthropic Claude provider via anthropic SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}", kind=ErrorKind.AUTH)
        self._client = anthropic_sdk.AsyncAnthropic(
            api_key=api_key,
            base_url=config.base_url,
            timeout=float(config.timeout_sec),
            max_retries=0,
        )

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        max_tokens = min(request.max_tokens, self._config.max_tokens)
        kwargs: dict[str, Any] = {
            "model": self._config.model,
            "max_tokens": max_tokens,
            "messages": request.messages,
            "stream": True,
        }
        if request.system:
            kwargs["system"] = request.system
        if request.thinking_budget:
            # Extended thinking needs budget_tokens >= 1024 and below max_tokens
            budget = min(request.thinking_budget, max_tokens - 1)
            if budget >= _MIN_THINKING_BUDGET:
                kwargs["thinking"] = {"type": "enabled", "budget_tokens": budget}
            else:
                logger.debug("Thinking budget %d too small for %s, sending without", budget, self._config.name)

        try:
            response_stream = await self._client.messages.create(**kwargs)
        except anthropic_sdk.APIError as exc:
            raise self._translate(exc) from exc

        try:
            async for event in response_stream:
                for item in normalize_frame(event.model_dump()):
                    yield item
        except anthropic_sdk.APIError as exc:
            raise self._translate(exc) from exc
        finally:
            await response_stream.close()

    def _translate(self, exc: anthropic_sdk.APIError) -> ProviderError:
        if isinstance(exc, anthropic_sdk.APIStatusError):
            logger.warning("Anthropic %s returned HTTP %d", self._config.name, exc.status_code)
            return ProviderError.from_status(self._config.name, exc.status_code, exc.message)
        if isinstance(exc, anthropic_sdk.APITimeoutError):
            return ProviderError(
                self._config.name,
                f"Request timed out after {self._config.timeout_sec}s",
                kind=ErrorKind.TIMEOUT,
            )
        if isinstance(exc, anthropic_sdk.APIConnectionError):
            return ProviderError(self._config.name, f"Connection error: {exc}", kind=ErrorKind.TRANSPORT)
        return ProviderError(self._config.name, f"API call failed: {exc}")
