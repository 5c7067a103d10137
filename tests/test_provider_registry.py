"""Tests for provider selection and dispatch."""

import pytest

from oneshot.exceptions import LLMProviderError, ModelNotAvailableError, NotConfiguredError
from oneshot.services.llm_providers.ollama_provider import OllamaProvider
from oneshot.services.llm_providers.openai_provider import OpenAIProvider
from oneshot.services.llm_providers.provider_factory import LLMProviderFactory
from oneshot.services.models.llm_models import LLMConfiguration, LLMModel
from oneshot.services.models.metrics_models import DiagnosticEventType
from oneshot.services.models.provider_types import ProviderType
from oneshot.services.provider_registry import ProviderRegistry


def test_first_provider_becomes_current(metrics, make_provider) -> None:
    registry = ProviderRegistry(metrics)
    first = make_provider(provider_id="one")
    registry.add_provider(first)
    registry.add_provider(make_provider(provider_id="two"))

    assert registry.current_provider is first
    assert [p.id for p in registry.providers] == ["one", "two"]
    assert registry.is_configured


def test_adding_same_id_replaces_in_place(metrics, make_provider) -> None:
    registry = ProviderRegistry(metrics)
    registry.add_provider(make_provider(provider_id="one"))
    registry.add_provider(make_provider(provider_id="two"))
    replacement = make_provider(provider_id="one")

    registry.add_provider(replacement)

    assert [p.id for p in registry.providers] == ["one", "two"]
    assert registry.get_provider("one") is replacement


def test_removing_current_selects_first_remaining(metrics, make_provider) -> None:
    registry = ProviderRegistry(metrics)
    for provider_id in ("one", "two", "three"):
        registry.add_provider(make_provider(provider_id=provider_id))
    registry.set_current_provider("two")

    registry.remove_provider("two")
    assert registry.current_provider.id == "one"

    registry.remove_provider("one")
    registry.remove_provider("three")
    assert registry.current_provider is None
    assert not registry.is_configured


def test_remove_unknown_provider(registry) -> None:
    assert registry.remove_provider("nobody") is None


def test_set_unknown_provider(registry) -> None:
    with pytest.raises(NotConfiguredError):
        registry.set_current_provider("nobody")


def test_events_are_recorded(metrics, make_provider) -> None:
    registry = ProviderRegistry(metrics)
    registry.add_provider(make_provider(provider_id="one"))
    registry.remove_provider("one")

    names = [event.type for event in metrics.get_recent_events()]
    assert names == [DiagnosticEventType.PROVIDER_ADDED, DiagnosticEventType.PROVIDER_REMOVED]
    assert "one" not in metrics.get_all_provider_metrics()


def test_send_without_provider(metrics, configuration) -> None:
    with pytest.raises(NotConfiguredError):
        ProviderRegistry(metrics).send("hi", [], configuration)


def test_unsupported_model_fails_before_network(registry, scripted_provider) -> None:
    foreign = LLMModel(id="other-model", display_name="Other", context_window_tokens=4096,
                       provider_id="elsewhere")

    with pytest.raises(ModelNotAvailableError) as info:
        registry.send("hi", [], LLMConfiguration(model=foreign))

    assert info.value.model_id == "other-model"
    assert scripted_provider.calls == []


@pytest.mark.asyncio
async def test_send_dispatches_to_current(registry, scripted_provider, configuration, make_item) -> None:
    stream = registry.send("question", [make_item("ctx", 10)], configuration)

    assert await stream.collect() == "Hello, world"
    sent = scripted_provider.calls[0]
    assert [m.role.value for m in sent] == ["system", "user"]
    assert "## ctx" in sent[0].content
    assert sent[-1].content == "question"


@pytest.mark.asyncio
async def test_health_check_all(metrics, make_provider) -> None:
    registry = ProviderRegistry(metrics)
    up = make_provider(provider_id="up")
    down = make_provider(provider_id="down")
    down.healthy = False
    registry.add_provider(up)
    registry.add_provider(down)

    assert await registry.health_check_all() == {"up": True, "down": False}
    assert metrics.get_provider_metrics("down").is_healthy is False


def test_factory_builds_each_family(metrics) -> None:
    factory = LLMProviderFactory()

    openai_provider = factory.create_provider({'id': "a", 'provider_type': "openai"}, metrics)
    ollama_provider = factory.create_provider({'id': "b", 'provider_type': ProviderType.OLLAMA}, metrics)

    assert isinstance(openai_provider, OpenAIProvider)
    assert isinstance(ollama_provider, OllamaProvider)
    assert set(factory.get_supported_types()) == {ProviderType.OPENAI, ProviderType.OLLAMA}


def test_factory_rejects_unknown_type(metrics) -> None:
    with pytest.raises(LLMProviderError):
        LLMProviderFactory().create_provider({'provider_type': "anthropic"}, metrics)
