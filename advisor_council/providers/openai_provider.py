"""OpenAI-compatible provider (OpenAI, OpenRouter, xAI) using openai SDK streaming."""

import logging
import os
from collections.abc import AsyncIterator
from typing import Any

import openai
from openai import AsyncOpenAI

from config.config_loader import ModelConfig
from advisor_council.providers.base import AIProvider, ChatRequest, ErrorKind, ProviderError
from advisor_council.providers.frames import StreamEvent, normalize_frame

logger = logging.getLogger(__name__)


class OpenAIProvider(AIProvider):
    """Chat-completions provider via openai SDK; ``base_url`` selects a compatible endpoint."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}", kind=ErrorKind.AUTH)
        self._client = AsyncOpenAI(
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
        messages = list(request.messages)
        if request.system:
            messages.insert(0, {"role": "system", "content": request.system})
        kwargs: dict[str, Any] = {
            "model": self._config.model,
            "messages": messages,
            "max_tokens": min(request.max_tokens, self._config.max_tokens),
            "stream": True,
        }
        if request.thinking_budget:
            # OpenRouter's unified reasoning parameter; other endpoints ignore extra_body keys they do not know
            kwargs["extra_body"] = {"reasoning": {"max_tokens": request.thinking_budget}}

        try:
            response_stream = await self._client.chat.completions.create(**kwargs)
        except openai.APIError as exc:
            raise self._translate(exc) from exc

        try:
            async for chunk in response_stream:
                for item in normalize_frame(chunk.model_dump()):
                    yield item
        except openai.APIError as exc:
            raise self._translate(exc) from exc
        finally:
            await response_stream.close()

    def _translate(self, exc: openai.APIError) -> ProviderError:
        if isinstance(exc, openai.APIStatusError):
            logger.warning("OpenAI-compatible %s returned HTTP %d", self._config.name, exc.status_code)
            return ProviderError.from_status(self._config.name, exc.status_code, exc.message)
        if isinstance(exc, openai.APITimeoutError):
            return ProviderError(
                self._config.name,
                f"Request timed out after {self._config.timeout_sec}s",
                kind=ErrorKind.TIMEOUT,
            )
        if isinstance(exc, openai.APIConnectionError):
            return ProviderError(self._config.name, f"Connection error: {exc}", kind=ErrorKind.TRANSPORT)
        return ProviderError(self._config.name, f"API call failed: {exc}")
