"""Abstract base for all streaming text-completion providers."""

import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum

from advisor_council.models import ModelResponse
from advisor_council.providers.frames import StreamEvent, TextDelta


class ErrorKind(Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    PROVIDER = "provider"      # any other non-success status
    TRANSPORT = "transport"    # connection failed or dropped
    TIMEOUT = "timeout"


# Short user-facing labels used in slot error summaries
ERROR_LABELS: dict[ErrorKind, str] = {
    ErrorKind.AUTH: "authentication failed",
    ErrorKind.RATE_LIMIT: "rate limited",
    ErrorKind.SERVER: "provider server error",
    ErrorKind.PROVIDER: "request rejected",
    ErrorKind.TRANSPORT: "connection failed",
    ErrorKind.TIMEOUT: "timed out",
}


def classify_status(status_code: int) -> ErrorKind:
    if status_code in (401, 403):
        return ErrorKind.AUTH
    if status_code == 429:
        return ErrorKind.RATE_LIMIT
    if status_code >= 500:
        return ErrorKind.SERVER
    return ErrorKind.PROVIDER


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(
        self,
        provider_name: str,
        message: str,
        kind: ErrorKind = ErrorKind.PROVIDER,
        status_code: int | None = None,
    ) -> None:
        self.provider_name = provider_name
        self.kind = kind
        self.status_code = status_code
        self.detail = message
        super().__init__(f"[{provider_name}] {message}")

    @classmethod
    def from_status(cls, provider_name: str, status_code: int, body: str) -> "ProviderError":
        return cls(
            provider_name,
            f"HTTP {status_code}: {body}",
            kind=classify_status(status_code),
            status_code=status_code,
        )

    @property
    def summary(self) -> str:
        """One-line description suitable for an errored slot."""
        first_line = self.detail.splitlines()[0][:200] if self.detail else ""
        return f"{ERROR_LABELS[self.kind]} ({first_line})" if first_line else ERROR_LABELS[self.kind]


@dataclass
class ChatRequest:
    system: str
    messages: list[dict[str, str]]
    max_tokens: int
    thinking_budget: int | None = None


class AIProvider(ABC):
    """Abstract base for all AI model providers."""

    @abstractmethod
    def name(self) -> str:
        """Return the short provider name (e.g. 'claude', 'openrouter')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    @abstractmethod
    def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        """Open a streaming completion and yield normalised events in order.

        Args:
            request: System text, message list and token limits.

        Yields:
            TextDelta / ThinkingDelta events, then at most one StreamEnd.

        Raises:
            ProviderError: On a non-success status, transport failure or
                timeout, with ``kind`` set accordingly.
        """
        ...

    async def generate(self, prompt: str, max_tokens: int = 256) -> ModelResponse:
        """Drain a stream for ``prompt`` into one ModelResponse.

        Raises:
            ProviderError: As for stream().
        """
        start = time.monotonic()
        parts: list[str] = []
        request = ChatRequest(
            system="",
            messages=[{"role": "user", "content": prompt}],
            max_tokens=max_tokens,
        )
        async for event in self.stream(request):
            if isinstance(event, TextDelta):
                parts.append(event.text)
        content = "".join(parts)
        if not content:
            raise ProviderError(self.name(), "Empty response content")
        return ModelResponse(
            provider=self.name(),
            model=self.model_string(),
            content=content,
            latency_sec=time.monotonic() - start,
            token_count=None,
        )
