"""Tests for ProviderManager routing, fallback and settings."""
import asyncio
from unittest.mock import AsyncMock

import pytest

from ai.providers.base import BaseProvider
from ai.providers.builtin import BuiltinAIProvider
from ai.providers.cloud import CloudAIProvider
from ai.providers.registry import ProviderRegistry
from ai.providers.router import ProviderManager
from ai.providers.types import ProviderResponse
from core.config import CloudConfig, ProviderSettings
from core.errors import (
    ConfigError,
    InvalidSessionError,
    PromptCancelledError,
    PromptExecutionError,
    ProviderUnavailableError,
    RegistrationError,
)
from core.settings_store import MemorySettingsStore

from conftest import FakeRuntime, gemini_reply


def stub_provider(name: str, available: bool = True) -> AsyncMock:
    provider = AsyncMock(spec=BaseProvider)
    provider.get_name.return_value = name
    provider.is_available.return_value = available
    provider.clear_cache.return_value = 0
    return provider


@pytest.fixture
def builtin_stub():
    return stub_provider("Built-in AI (Gemini Nano)")


@pytest.fixture
def cloud_stub():
    return stub_provider("Cloud API (Gemini)")


@pytest.fixture
def manager(builtin_stub, cloud_stub):
    manager = ProviderManager()
    manager.register_provider("builtin", builtin_stub)
    manager.register_provider("cloud", cloud_stub)
    return manager


class TestRegistry:
    def test_registration_is_add_only(self, builtin_stub):
        registry = ProviderRegistry()
        registry.register("builtin", builtin_stub)
        with pytest.raises(RegistrationError):
            registry.register("builtin", builtin_stub)

    def test_unknown_name_rejected(self, builtin_stub):
        with pytest.raises(RegistrationError):
            ProviderRegistry().register("openai", builtin_stub)

    def test_alternate(self):
        assert ProviderRegistry.alternate_of("builtin") == "cloud"
        assert ProviderRegistry.alternate_of("cloud") == "builtin"


class TestAutoSelect:
    @pytest.mark.asyncio
    async def test_preferred_used_even_when_unavailable(self, manager, builtin_stub):
        builtin_stub.is_available.return_value = False
        assert await manager.auto_select_provider() == "builtin"
        assert manager.get_active_provider() == "builtin"

    @pytest.mark.asyncio
    async def test_alternate_used_when_preferred_missing(self, cloud_stub):
        cloud_stub.is_available.return_value = False
        manager = ProviderManager()
        manager.register_provider("cloud", cloud_stub)

        response = await manager.generate_content("hi")

        assert manager.get_active_provider() == "cloud"
        assert response.provider == "cloud"

    @pytest.mark.asyncio
    async def test_no_providers_registered(self):
        with pytest.raises(RegistrationError) as exc_info:
            await ProviderManager().check_grammar("text")
        assert str(exc_info.value) == "No providers registered"

    @pytest.mark.asyncio
    async def test_probe_errors_count_as_unavailable(self, manager, builtin_stub):
        builtin_stub.is_available.side_effect = RuntimeError("runtime crashed")
        assert await manager.auto_select_provider() == "builtin"

    @pytest.mark.asyncio
    async def test_concurrent_first_calls_select_once(self, manager, builtin_stub):
        await asyncio.gather(*(manager.translate_text("hi", "en", "es") for _ in range(5)))
        assert builtin_stub.is_available.await_count == 1


class TestRouting:
    @pytest.mark.asyncio
    async def test_envelope(self, manager, builtin_stub):
        builtin_stub.translate_text.return_value = "hola"

        response = await manager.translate_text("hello", "en", "es", {"formal": True})

        assert isinstance(response, ProviderResponse)
        assert response.success is True
        assert response.provider == "builtin"
        assert response.data == "hola"
        assert response.error is None
        assert response.metadata.cached is False
        assert response.metadata.fallback is False
        assert 0 <= response.metadata.processing_time < 5
        builtin_stub.translate_text.assert_awaited_once_with("hello", "en", "es", {"formal": True})

    @pytest.mark.asyncio
    async def test_streaming_arguments_forwarded(self, manager, builtin_stub):
        on_chunk = lambda text: None  # noqa: E731
        builtin_stub.rewrite_text_streaming.return_value = "done"

        await manager.rewrite_text_streaming("text", {"tone": "neutral"}, on_chunk)

        builtin_stub.rewrite_text_streaming.assert_awaited_once_with("text", {"tone": "neutral"}, on_chunk)

    @pytest.mark.asyncio
    async def test_sticky_fallback(self, manager, builtin_stub, cloud_stub):
        builtin_stub.summarize_content.side_effect = [PromptExecutionError("model crashed"), "local summary"]
        cloud_stub.summarize_content.return_value = "cloud summary"

        first = await manager.summarize_content("doc")
        second = await manager.summarize_content("doc")

        assert first.provider == "cloud"
        assert first.metadata.fallback is True
        assert second.provider == "cloud"
        assert second.metadata.fallback is False
        assert builtin_stub.summarize_content.await_count == 1
        assert cloud_stub.summarize_content.await_count == 2

        await manager.set_provider("builtin")
        third = await manager.summarize_content("doc")
        assert third.provider == "builtin"
        assert third.data == "local summary"

    @pytest.mark.asyncio
    async def test_original_error_wins(self, manager, builtin_stub, cloud_stub):
        original = PromptExecutionError("builtin failed")
        builtin_stub.generate_content.side_effect = original
        cloud_stub.generate_content.side_effect = PromptExecutionError("cloud failed")

        with pytest.raises(PromptExecutionError) as exc_info:
            await manager.generate_content("hi")

        assert exc_info.value is original
        assert manager.get_active_provider() == "cloud"

    @pytest.mark.asyncio
    async def test_failed_retry_keeps_concurrent_fallback(self, manager, builtin_stub, cloud_stub):
        async def builtin_summary(content, options=None):
            await asyncio.sleep(0)
            raise PromptExecutionError("builtin failed")

        async def cloud_summary(content, options=None):
            await asyncio.sleep(0)
            if content == "slow":
                raise PromptExecutionError("cloud failed")
            return "cloud summary"

        builtin_stub.summarize_content.side_effect = builtin_summary
        cloud_stub.summarize_content.side_effect = cloud_summary

        fast, slow = await asyncio.gather(
            manager.summarize_content("fast"),
            manager.summarize_content("slow"),
            return_exceptions=True,
        )

        assert fast.provider == "cloud"
        assert fast.metadata.fallback is True
        assert isinstance(slow, PromptExecutionError)
        assert manager.get_active_provider() == "cloud"

    @pytest.mark.asyncio
    async def test_original_error_when_alternate_unavailable(self, manager, builtin_stub, cloud_stub):
        original = PromptExecutionError("builtin failed")
        builtin_stub.generate_content.side_effect = original
        cloud_stub.is_available.return_value = False

        with pytest.raises(PromptExecutionError) as exc_info:
            await manager.generate_content("hi")

        assert exc_info.value is original
        cloud_stub.generate_content.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_retry_when_fallback_disabled(self, manager, builtin_stub, cloud_stub):
        await manager.update_settings({"autoFallback": False})
        builtin_stub.rewrite_text.side_effect = PromptExecutionError("nope")

        with pytest.raises(PromptExecutionError):
            await manager.rewrite_text("x")
        cloud_stub.rewrite_text.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        InvalidSessionError(),
        PromptCancelledError(),
    ])
    async def test_terminal_errors_not_retried(self, manager, builtin_stub, cloud_stub, error):
        builtin_stub.prompt.side_effect = error

        with pytest.raises(type(error)):
            await manager.prompt("prompt_1_x", "hi")

        cloud_stub.prompt.assert_not_awaited()
        assert manager.get_active_provider() == "builtin"

    @pytest.mark.asyncio
    async def test_foreign_exceptions_also_fall_back(self, manager, builtin_stub, cloud_stub):
        builtin_stub.check_grammar.side_effect = ValueError("unexpected")
        cloud_stub.check_grammar.return_value = []

        response = await manager.check_grammar("fine")
        assert response.provider == "cloud"
        assert response.data == []


class TestSetProvider:
    @pytest.mark.asyncio
    async def test_set_available_provider_persists(self, cloud_stub):
        store = MemorySettingsStore()
        manager = ProviderManager(store=store)
        manager.register_provider("cloud", cloud_stub)

        assert await manager.set_provider("cloud") == {"success": True, "provider": "cloud"}
        assert store.load().preferred_provider == "cloud"

    @pytest.mark.asyncio
    async def test_unregistered_name(self, manager):
        manager.registry = ProviderRegistry()
        with pytest.raises(RegistrationError):
            await manager.set_provider("cloud")

    @pytest.mark.asyncio
    async def test_unavailable_with_fallback(self, manager, builtin_stub):
        builtin_stub.is_available.return_value = False
        result = await manager.set_provider("builtin")

        assert result["provider"] == "cloud"
        assert result["fallback"] is True
        assert result["reason"] == "builtin provider unavailable"
        assert manager.get_active_provider() == "cloud"

    @pytest.mark.asyncio
    async def test_unavailable_without_fallback(self, manager, cloud_stub):
        await manager.update_settings({"autoFallback": False})
        cloud_stub.is_available.return_value = False
        with pytest.raises(ProviderUnavailableError):
            await manager.set_provider("cloud")

    @pytest.mark.asyncio
    async def test_both_unavailable(self, manager, builtin_stub, cloud_stub):
        builtin_stub.is_available.return_value = False
        cloud_stub.is_available.return_value = False
        with pytest.raises(ProviderUnavailableError) as exc_info:
            await manager.set_provider("builtin")
        assert str(exc_info.value) == "Both providers are unavailable"


class TestStatusAndSettings:
    @pytest.mark.asyncio
    async def test_provider_status(self, manager, builtin_stub, cloud_stub):
        builtin_stub.features.return_value = {"grammar": True}
        cloud_stub.features.side_effect = RuntimeError("broken")
        cloud_stub.is_available.return_value = False
        await manager.auto_select_provider()

        status = await manager.get_api_status()

        assert status["builtin"] == {
            "name": "Built-in AI (Gemini Nano)", "available": True, "active": True, "features": {"grammar": True},
        }
        assert status["cloud"]["available"] is False
        assert status["cloud"]["active"] is False
        assert not any(status["cloud"]["features"].values())

    @pytest.mark.asyncio
    async def test_initialize_loads_stored_settings(self, builtin_stub, cloud_stub):
        store = MemorySettingsStore(ProviderSettings(preferred_provider="cloud", auto_fallback=False))
        manager = ProviderManager(store=store)
        manager.register_provider("builtin", builtin_stub)
        manager.register_provider("cloud", cloud_stub)

        await manager.initialize()

        assert manager.get_settings()["preferredProvider"] == "cloud"
        assert manager.get_settings()["autoFallback"] is False
        assert await manager.auto_select_provider() == "cloud"

    @pytest.mark.asyncio
    async def test_get_settings_is_a_copy(self, manager):
        settings = manager.get_settings()
        settings["autoFallback"] = False
        assert manager.settings.auto_fallback is True

    @pytest.mark.asyncio
    async def test_update_preferred_switches_provider(self, manager):
        await manager.auto_select_provider()
        await manager.update_settings({"preferredProvider": "cloud"})
        assert manager.get_active_provider() == "cloud"

    @pytest.mark.asyncio
    async def test_invalid_settings_rejected(self, manager):
        with pytest.raises(ConfigError):
            await manager.update_settings({"preferredProvider": "openai"})
        assert manager.settings.preferred_provider == "builtin"

    @pytest.mark.asyncio
    async def test_cloud_key_pushed_to_provider(self, gemini):
        cloud = CloudAIProvider(config=CloudConfig(), transport=gemini.transport)
        manager = ProviderManager()
        manager.register_provider("cloud", cloud)

        await manager.update_settings({"cloudAPIKey": "secret"})

        assert cloud.api_key == "secret"
        assert await cloud.is_available()

    @pytest.mark.asyncio
    async def test_stored_key_applied_on_initialize(self, gemini):
        store = MemorySettingsStore(ProviderSettings(cloud_api_key="stored"))
        cloud = CloudAIProvider(config=CloudConfig(), transport=gemini.transport)
        manager = ProviderManager(store=store)
        manager.register_provider("cloud", cloud)

        await manager.initialize()
        assert cloud.api_key == "stored"

    @pytest.mark.asyncio
    async def test_clear_cache_and_cleanup(self, manager, builtin_stub, cloud_stub):
        builtin_stub.clear_cache.return_value = 3
        cloud_stub.clear_cache.return_value = 2
        cloud_stub.cleanup.side_effect = RuntimeError("already closed")

        assert manager.clear_cache() == 5
        await manager.cleanup()
        builtin_stub.cleanup.assert_awaited_once()


class TestScenarios:
    """End-to-end runs with real providers over fakes."""

    @pytest.fixture
    def real_manager(self, gemini):
        runtime = FakeRuntime()
        runtime.capabilities["Proofreader"].handle_attrs["corrections"] = [
            {"start_index": 0, "end_index": 3, "correction": "This", "type": "spelling"},
            {"start_index": 7, "end_index": 11, "correction": "wrong", "type": "spelling"},
        ]
        manager = ProviderManager()
        manager.register_provider("builtin", BuiltinAIProvider(runtime))
        manager.register_provider(
            "cloud", CloudAIProvider(api_key="k", config=CloudConfig(), transport=gemini.transport)
        )
        return manager

    @pytest.mark.asyncio
    async def test_grammar_on_preferred_builtin(self, real_manager):
        response = await real_manager.check_grammar("Ths is rong")

        assert response.provider == "builtin"
        assert response.data
        assert any(c["type"] == "spelling" for c in response.data)

    @pytest.mark.asyncio
    async def test_cloud_without_key_still_selected(self):
        manager = ProviderManager()
        manager.register_provider("cloud", CloudAIProvider())

        with pytest.raises(ProviderUnavailableError):
            await manager.generate_content("hi")
        assert manager.get_active_provider() == "cloud"

    @pytest.mark.asyncio
    async def test_builtin_selected_when_cloud_unconfigured(self):
        manager = ProviderManager()
        manager.register_provider("cloud", CloudAIProvider())
        manager.register_provider("builtin", BuiltinAIProvider(FakeRuntime({"LanguageModel": "downloadable"})))

        response = await manager.generate_content("hi")
        assert response.provider == "builtin"

    @pytest.mark.asyncio
    async def test_chat_history_reaches_cloud(self, gemini):
        manager = ProviderManager()
        manager.register_provider(
            "cloud", CloudAIProvider(api_key="k", config=CloudConfig(), transport=gemini.transport)
        )
        gemini.replies.extend([gemini_reply("hello"), gemini_reply("You said hi")])

        session = (await manager.create_prompt_session()).data
        await manager.prompt(session, "hi")
        response = await manager.prompt(session, "what did I just say?")

        assert response.data == "You said hi"
        texts = [part["text"] for content in gemini.body()["contents"] for part in content["parts"]]
        assert texts == ["hi", "hello", "what did I just say?"]

    @pytest.mark.asyncio
    async def test_fallback_from_builtin_to_cloud(self, gemini):
        runtime = FakeRuntime({"Translator": "unavailable"})
        manager = ProviderManager()
        manager.register_provider("builtin", BuiltinAIProvider(runtime))
        manager.register_provider(
            "cloud", CloudAIProvider(api_key="k", config=CloudConfig(), transport=gemini.transport)
        )
        gemini.replies.append(gemini_reply("Hola"))

        response = await manager.translate_text("Hello", "en", "es")

        assert response.provider == "cloud"
        assert response.metadata.fallback is True
        assert response.data == "Hola"
