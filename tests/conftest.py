"""Shared pytest fixtures."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from config.config_loader import AppConfig, DefaultsConfig, ModelConfig, PromptsConfig
from peer_review.events import PipelineEvent
from peer_review.models import Answer, ModelResponse, Rating, Result
from peer_review.providers.base import AIProvider, ProviderError
from peer_review.retry import RetryPolicy
from peer_review.roster import ModelRoster

NO_DELAY = RetryPolicy(max_attempts=3, base_delay_sec=0.0)


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
        initial="Answer this query: {query}",
        peer_review="Query: {query}\n\nOwn: {own_answer}\n\n{peer_answers}\n\nRefine:",
        rating="Query: {query}\n\n{count} answers:\n{final_answers}\n\nJSON: {score_template}",
    )


@pytest.fixture
def sample_defaults_config(tmp_path: Path) -> DefaultsConfig:
    return DefaultsConfig(
        roster=["claude", "gpt"],
        history_file=tmp_path / "data" / "history.json",
        cache_file=tmp_path / "data" / "cache.json",
        output_dir=tmp_path / "output",
    )


@pytest.fixture
def sample_app_config(
    sample_defaults_config: DefaultsConfig,
    sample_prompts_config: PromptsConfig,
) -> AppConfig:
    models = {
        "claude": ModelConfig(
            name="claude",
            sdk="anthropic",
            model="claude-opus-4-1",
            api_key_env="ANTHROPIC_API_KEY",
            timeout_sec=60,
            max_tokens=2000,
        ),
        "gpt": ModelConfig(
            name="gpt",
            sdk="openai",
            model="gpt-4o",
            api_key_env="OPENAI_API_KEY",
            timeout_sec=60,
            max_tokens=2000,
        ),
    }
    return AppConfig(
        defaults=sample_defaults_config,
        models=models,
        prompts=sample_prompts_config,
        available_providers={"claude", "gpt"},
    )


class MockProvider(AIProvider):
    """Test double AIProvider with a fixed response."""

    def __init__(self, provider_name: str = "mock", response_content: str = "Mock response") -> None:
        self._name = provider_name
        self._response_content = response_content
        # Shadow the class method with an AsyncMock at the instance level.
        # ABC check passes because generate is defined in the class body below.
        self.generate = AsyncMock(  # type: ignore[assignment]
            return_value=ModelResponse(
                provider=provider_name,
                model="mock-model",
                stage="generate",
                content=response_content,
                latency_sec=0.1,
                token_count=10,
            )
        )

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "mock-model"

    async def generate(self, prompt: str, stage: str) -> ModelResponse:  # type: ignore[override]
        """Default implementation; replaced by AsyncMock in __init__."""
        return ModelResponse(self._name, "mock-model", stage, self._response_content, 0.1, 10)


class StagedProvider(AIProvider):
    """Answers per pipeline stage and records every prompt it receives.

    `failures` maps a stage to how many leading calls in that stage raise
    ProviderError; `delay_sec` makes every call slow.
    """

    def __init__(
        self,
        provider_name: str,
        rating: str = '{"scores": {}, "feedback": ""}',
        failures: dict[str, int] | None = None,
        delay_sec: float = 0.0,
        call_log: list[tuple[str, str]] | None = None,
    ) -> None:
        self._name = provider_name
        self.rating = rating
        self.failures = dict(failures or {})
        self.delay_sec = delay_sec
        self.prompts: list[tuple[str, str]] = []
        self.call_log = call_log if call_log is not None else []

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "staged-model"

    def calls(self, stage: str) -> int:
        return sum(1 for s, _ in self.prompts if s == stage)

    def prompts_for(self, stage: str) -> list[str]:
        return [p for s, p in self.prompts if s == stage]

    async def generate(self, prompt: str, stage: str) -> ModelResponse:
        self.prompts.append((stage, prompt))
        self.call_log.append((stage, self._name))
        if self.delay_sec:
            await asyncio.sleep(self.delay_sec)
        if self.failures.get(stage, 0) > 0:
            self.failures[stage] -= 1
            raise ProviderError(self._name, f"{stage} unavailable")
        content = {
            "generate": f"Initial from {self._name}",
            "review": f"Final from {self._name}",
            "rate": self.rating,
            "followup": f"Follow-up answer from {self._name}",
        }.get(stage, "OK")
        return ModelResponse(self._name, "staged-model", stage, content, 0.01, 5)


def make_roster(*providers: AIProvider) -> ModelRoster:
    return ModelRoster(list(providers))


def make_result(
    query: str = "Implement a binary search",
    scores: dict[str, float] | None = None,
    best_answer: str | None = None,
) -> Result:
    """A finished Result over providers named after the score keys."""
    scores = scores if scores is not None else {"a": 8.0, "b": 9.0, "c": 7.0}
    names = list(scores)
    best = max(scores, key=lambda k: scores[k]) if scores else "a"
    finals = [Answer(n, f"Final from {n}") for n in names]
    return Result(
        query=query,
        initials=[Answer(n, f"Initial from {n}") for n in names],
        finals=finals,
        ratings=[Rating(from_provider=n, scores=dict(scores), feedback="ok") for n in names],
        aggregated_scores=dict(scores),
        best_answer=best_answer if best_answer is not None else f"Final from {best}",
        best_provider=best,
    )


class FakeClock:
    """Settable clock; every call returns `now`, optionally advancing afterwards."""

    def __init__(self, start: float = 1_000_000.0, step: float = 0.0) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


@pytest.fixture
def no_delay() -> RetryPolicy:
    return NO_DELAY


@pytest.fixture
def three_providers() -> list[StagedProvider]:
    rating = '{"scores": {"a": 8, "b": 9, "c": 7}, "feedback": "B is tightest."}'
    return [StagedProvider(n, rating=rating) for n in ("A", "B", "C")]


@pytest.fixture
def sample_result() -> Result:
    return make_result()


class EventRecorder:
    """Pipeline observer that keeps every event it is handed."""

    def __init__(self) -> None:
        self.events: list[PipelineEvent] = []

    def __call__(self, event: PipelineEvent) -> None:
        self.events.append(event)

    def kinds(self) -> list[tuple[str, str]]:
        return [(e.kind, e.stage) for e in self.events]
