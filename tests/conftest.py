"""Pytest configuration and fixtures."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence

import pytest

from oneshot.services.context_optimizer import ContextOptimizer
from oneshot.services.context_resolver import ContextResolver, StaticClipboard
from oneshot.services.export_service import SessionExporter
from oneshot.services.llm_providers.base_provider import BaseLLMProvider
from oneshot.services.metrics_service import MetricsAggregator
from oneshot.services.models.context_models import ContextItem, ContextKind, ContextMetadata
from oneshot.services.models.llm_models import (
    ChatMessage, LLMConfiguration, LLMModel, MessageChunk, TokenUsage
)
from oneshot.services.models.provider_types import ProviderType
from oneshot.services.provider_registry import ProviderRegistry
from oneshot.services.session_service import SQLiteSessionStore

pytest_plugins = ("pytest_asyncio",)

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class ScriptedProvider(BaseLLMProvider):
    """Provider that replays a fixed list of chunks instead of calling a backend."""

    provider_type = ProviderType.OLLAMA

    def __init__(self, provider_id: str = "scripted", metrics: Optional[MetricsAggregator] = None,
                 chunks: Sequence[str] = ("Hello", ", world"),
                 usage: Optional[TokenUsage] = TokenUsage(input=12, output=4),
                 error: Optional[Exception] = None,
                 delay: float = 0.0,
                 model_ids: Sequence[str] = ("test-model",),
                 context_window: int = 8192):
        super().__init__({'id': provider_id, 'name': f"Scripted {provider_id}"}, metrics)
        self.chunks = list(chunks)
        self.usage = usage
        self.error = error
        self.delay = delay
        self.healthy = True
        self.calls: List[List[ChatMessage]] = []
        self._models = [
            LLMModel(id=model_id, display_name=model_id, context_window_tokens=context_window,
                     provider_id=self.id)
            for model_id in model_ids
        ]

    @property
    def requires_authentication(self) -> bool:
        return False

    @property
    def supported_models(self) -> List[LLMModel]:
        return list(self._models)

    async def authenticate(self, credentials):
        self._authenticated = True

    async def _stream_chat(self, messages, model, parameters):
        self.calls.append(list(messages))
        for chunk in self.chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield MessageChunk(content=chunk)
        if self.error is not None:
            raise self.error
        yield MessageChunk.terminal(usage=self.usage, finish_reason="stop")

    async def get_models(self):
        return self.supported_models

    async def _check_health(self):
        return self.healthy


@pytest.fixture
def make_item() -> Callable[..., ContextItem]:
    """Factory for context items with a given token count."""

    def _make(item_id: str, tokens: int, minutes_ago: int = 0,
              relevance: Optional[float] = None, lines: int = 1,
              kind: Optional[ContextKind] = None) -> ContextItem:
        chars_per_line = max(1, (tokens * 4) // lines)
        content = "\n".join("x" * chars_per_line for _ in range(lines))
        custom = {'relevance': str(relevance)} if relevance is not None else {}
        return ContextItem(
            id=item_id,
            kind=kind or ContextKind.file("python"),
            source_path=f"/src/{item_id}",
            display_name=item_id,
            content=content,
            token_count=tokens,
            last_modified=BASE_TIME - timedelta(minutes=minutes_ago),
            metadata=ContextMetadata(custom_properties=custom),
        )

    return _make


@pytest.fixture
def metrics() -> MetricsAggregator:
    return MetricsAggregator()


@pytest.fixture
def scripted_provider(metrics: MetricsAggregator) -> ScriptedProvider:
    return ScriptedProvider(metrics=metrics)


@pytest.fixture
def make_provider(metrics: MetricsAggregator) -> Callable[..., ScriptedProvider]:
    def _make(**kwargs) -> ScriptedProvider:
        kwargs.setdefault('metrics', metrics)
        return ScriptedProvider(**kwargs)

    return _make


@pytest.fixture
def registry(metrics: MetricsAggregator, scripted_provider: ScriptedProvider) -> ProviderRegistry:
    registry = ProviderRegistry(metrics)
    registry.add_provider(scripted_provider)
    return registry


@pytest.fixture
def configuration(scripted_provider: ScriptedProvider) -> LLMConfiguration:
    return LLMConfiguration(model=scripted_provider.supported_models[0])


@pytest.fixture
def session_store(tmp_path, metrics: MetricsAggregator) -> SQLiteSessionStore:
    return SQLiteSessionStore(str(tmp_path / "sessions.db"), SessionExporter(), metrics)


@pytest.fixture
def resolver(tmp_path) -> ContextResolver:
    return ContextResolver(clipboard=StaticClipboard("copied text"), base_path=str(tmp_path))


@pytest.fixture
def optimizer() -> ContextOptimizer:
    return ContextOptimizer()
