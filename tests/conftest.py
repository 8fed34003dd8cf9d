"""Shared pytest fixtures."""

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from config.config_loader import AppConfig, DefaultsConfig, ModelConfig, PromptsConfig
from advisor_council.models import Advisor, ModelResponse
from advisor_council.providers.base import AIProvider, ChatRequest
from advisor_council.providers.frames import StreamEnd, StreamEvent, TextDelta


@pytest.fixture
def sample_model_config() -> ModelConfig:
    return ModelConfig(
        name="test_model",
        sdk="test",
        model="test-model-1",
        api_key_env="TEST_API_KEY",
        timeout_sec=30,
        max_tokens=1024,
        base_url=None,
    )


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        advisor="You are {name}. {instructions}",
        combined="Answer as JSON for each advisor:\n{advisors}",
        reference_header="=== OTHERS ===",
    )


@pytest.fixture
def sample_defaults_config(tmp_path: Path) -> DefaultsConfig:
    return DefaultsConfig(
        mode="parallel",
        context_limit=150000,
        max_tokens=2048,
        output_dir=tmp_path / "output",
        provider="claude",
        session_timeout_sec=5,
        connect_retries=1,
    )


@pytest.fixture
def sample_advisors() -> list[Advisor]:
    return [
        Advisor(id="ada", name="Ada", instructions="Be practical.", provider="claude"),
        Advisor(id="grace", name="Grace", instructions="Be sceptical.", provider="claude"),
    ]


@pytest.fixture
def sample_app_config(
    sample_defaults_config: DefaultsConfig,
    sample_prompts_config: PromptsConfig,
    sample_advisors: list[Advisor],
) -> AppConfig:
    model_cfg = ModelConfig(
        name="claude",
        sdk="anthropic",
        model="claude-sonnet-4-20250514",
        api_key_env="ANTHROPIC_API_KEY",
        timeout_sec=60,
        max_tokens=4096,
    )
    return AppConfig(
        defaults=sample_defaults_config,
        models={"claude": model_cfg},
        advisors=sample_advisors,
        prompts=sample_prompts_config,
        available_providers={"claude"},
    )


@pytest.fixture
def sample_response() -> ModelResponse:
    return ModelResponse(
        provider="claude",
        model="claude-sonnet-4-20250514",
        content="Use YAML for human-editable config, JSON for machine interchange.",
        latency_sec=1.5,
        token_count=42,
    )


class MockProvider(AIProvider):
    """Test double AIProvider that replays a scripted stream.

    ``chunks`` are yielded in order (plain strings become TextDelta), followed
    by StreamEnd unless ``end`` is False. ``error`` is raised after the chunks.
    ``connect_failures`` are raised, one per call, before anything is yielded.
    Every request is recorded in ``requests``.
    """

    def __init__(
        self,
        provider_name: str = "mock",
        chunks: list[str | StreamEvent] | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
        delays: list[float] | None = None,
        end: bool = True,
        connect_failures: list[Exception] | None = None,
    ) -> None:
        self._name = provider_name
        self.chunks = ["Mock response"] if chunks is None else chunks
        self.error = error
        self.delay = delay
        self.delays = delays
        self.end = end
        self.connect_failures = list(connect_failures or [])
        self.requests: list[ChatRequest] = []

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "mock-model"

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        self.requests.append(request)
        if self.connect_failures:
            raise self.connect_failures.pop(0)
        for index, chunk in enumerate(self.chunks):
            pause = self.delays[index] if self.delays else self.delay
            await asyncio.sleep(pause)
            yield TextDelta(chunk) if isinstance(chunk, str) else chunk
        if self.error is not None:
            raise self.error
        if self.end:
            yield StreamEnd()


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def two_mock_providers() -> list[MockProvider]:
    return [MockProvider("provider_a", ["Response from A"]), MockProvider("provider_b", ["Response from B"])]
