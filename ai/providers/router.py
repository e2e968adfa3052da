"""ProviderManager: single entry point for every AI operation.

The manager picks an active provider, forwards each call to it unchanged
and wraps the result in a :class:`ProviderResponse`.  When the active
provider fails and ``auto_fallback`` is on, the call is retried once on the
alternate provider; a successful retry makes the alternate the active
provider until :meth:`ProviderManager.set_provider` changes it.  If the
retry fails too, the caller sees the first error, not the second.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Optional

from core.config import ProviderSettings
from core.errors import (
    NON_RETRYABLE_ERRORS,
    ProviderUnavailableError,
    RegistrationError,
)
from core.logging import logger
from core.settings_store import MemorySettingsStore, SettingsStore

from .base import BaseProvider
from .registry import ProviderRegistry
from .streaming import OnChunk
from .types import FEATURE_NAMES, GrammarInput, ProviderResponse, ResponseMetadata, SessionRef

__all__ = ["ProviderManager"]


class ProviderManager:
    def __init__(self, registry: Optional[ProviderRegistry] = None, store: Optional[SettingsStore] = None):
        self.registry = registry or ProviderRegistry()
        self.store = store or MemorySettingsStore()
        self.settings = ProviderSettings()
        self.active_provider: Optional[str] = None
        self.initialized = False
        self._select_lock = asyncio.Lock()

    async def initialize(self) -> None:
        if self.initialized:
            return
        logger.info("Initializing AI provider manager")
        stored = self.store.load()
        if stored is not None:
            self.settings = stored
            logger.info("Provider settings loaded")
        self._push_cloud_key(only_if_missing=True)
        self.initialized = True
        logger.info(f"Preferred provider: {self.settings.preferred_provider}")

    def register_provider(self, name: str, provider: BaseProvider) -> None:
        self.registry.register(name, provider)
        if name == "cloud" and self.initialized:
            self._push_cloud_key(only_if_missing=True)

    def _push_cloud_key(self, only_if_missing: bool = False) -> None:
        cloud = self.registry.get("cloud")
        if cloud is None or not hasattr(cloud, "set_api_key"):
            return
        if only_if_missing and (getattr(cloud, "api_key", None) or not self.settings.cloud_api_key):
            return
        cloud.set_api_key(self.settings.cloud_api_key)

    # Selection --------------------------------------------------------------
    @staticmethod
    async def _probe(name: str, provider: BaseProvider) -> bool:
        try:
            return bool(await provider.is_available())
        except Exception as e:
            logger.warning(f"Availability probe for {name} failed: {e}")
            return False

    async def auto_select_provider(self) -> str:
        """Activate the preferred provider, else the alternate, whatever their availability."""
        async with self._select_lock:
            if self.active_provider is not None:
                return self.active_provider
            preferred = self.settings.preferred_provider
            for name in (preferred, self.registry.alternate_of(preferred)):
                provider = self.registry.get(name)
                if provider is None:
                    continue
                if await self._probe(name, provider):
                    logger.info(f"Auto-selected provider: {name}")
                else:
                    logger.warning(f"Provider {name} not fully available, using it anyway")
                self.active_provider = name
                return name
            raise RegistrationError("No providers registered")

    async def fallback_to_alternative_provider(self, failed_provider: str) -> Dict[str, Any]:
        alternative = self.registry.alternate_of(failed_provider)
        provider = self.registry.get(alternative)
        if provider is None:
            raise ProviderUnavailableError("No alternative provider available")
        if not await self._probe(alternative, provider):
            raise ProviderUnavailableError("Both providers are unavailable")

        self.active_provider = alternative
        logger.info(f"Fallback successful: using {alternative} provider")
        return {
            "success": True,
            "provider": alternative,
            "fallback": True,
            "reason": f"{failed_provider} provider unavailable",
        }

    async def set_provider(self, name: str) -> Dict[str, Any]:
        provider = self.registry.get(name)
        if provider is None:
            raise RegistrationError(f"Provider '{name}' not registered")

        if not await self._probe(name, provider):
            if self.settings.auto_fallback:
                logger.warning(f"Provider '{name}' unavailable, attempting fallback")
                return await self.fallback_to_alternative_provider(name)
            raise ProviderUnavailableError(f"Provider '{name}' is not available")

        self.active_provider = name
        self.settings = self.settings.merged({"preferred_provider": name})
        self.store.save(self.settings)
        logger.info(f"Active provider set to: {name}")
        return {"success": True, "provider": name}

    def get_active_provider(self) -> Optional[str]:
        return self.active_provider

    async def get_provider_features(self, provider: BaseProvider) -> Dict[str, bool]:
        try:
            return await provider.features()
        except Exception as e:
            logger.warning(f"Could not read features of {provider.get_name()}: {e}")
            return {feature: False for feature in FEATURE_NAMES}

    async def get_provider_status(self) -> Dict[str, Dict[str, Any]]:
        status = {}
        for name, provider in self.registry.items():
            status[name] = {
                "name": provider.get_name(),
                "available": await self._probe(name, provider),
                "active": name == self.active_provider,
                "features": await self.get_provider_features(provider),
            }
        return status

    async def get_api_status(self) -> Dict[str, Dict[str, Any]]:
        return await self.get_provider_status()

    # Routing ----------------------------------------------------------------
    @staticmethod
    def normalize_response(data: Any, provider: str, fallback: bool, processing_time: float) -> ProviderResponse:
        return ProviderResponse(
            success=True,
            provider=provider,
            data=data,
            error=None,
            metadata=ResponseMetadata(processing_time=processing_time, cached=False, fallback=fallback),
        )

    async def route_request(self, method: str, *args: Any, **kwargs: Any) -> ProviderResponse:
        if self.active_provider is None:
            await self.auto_select_provider()

        name = self.active_provider
        provider = self.registry.require(name)
        started = time.perf_counter()
        try:
            result = await getattr(provider, method)(*args, **kwargs)
            return self.normalize_response(result, name, False, time.perf_counter() - started)
        except NON_RETRYABLE_ERRORS:
            raise
        except Exception as error:
            logger.error(f"Error with {name} provider in {method}: {error}")
            if not self.settings.auto_fallback:
                raise

            logger.info("Attempting automatic fallback")
            try:
                fallback_name = (await self.fallback_to_alternative_provider(name))["provider"]
                result = await getattr(self.registry.require(fallback_name), method)(*args, **kwargs)
            except Exception as fallback_error:
                logger.error(f"Fallback failed: {fallback_error}")
                raise error
            return self.normalize_response(result, fallback_name, True, time.perf_counter() - started)

    # Operations -------------------------------------------------------------
    async def check_grammar(self, text: str | GrammarInput, options: Optional[dict] = None) -> ProviderResponse:
        return await self.route_request("check_grammar", text, options)

    async def translate_text(self, text: str, source_lang: str, target_lang: str,
                             options: Optional[dict] = None) -> ProviderResponse:
        return await self.route_request("translate_text", text, source_lang, target_lang, options)

    async def summarize_content(self, content: str, options: Optional[dict] = None) -> ProviderResponse:
        return await self.route_request("summarize_content", content, options)

    async def summarize_content_streaming(self, content: str, options: Optional[dict] = None,
                                          on_chunk: Optional[OnChunk] = None) -> ProviderResponse:
        return await self.route_request("summarize_content_streaming", content, options, on_chunk)

    async def rewrite_text(self, text: str, options: Optional[dict] = None) -> ProviderResponse:
        return await self.route_request("rewrite_text", text, options)

    async def rewrite_text_streaming(self, text: str, options: Optional[dict] = None,
                                     on_chunk: Optional[OnChunk] = None) -> ProviderResponse:
        return await self.route_request("rewrite_text_streaming", text, options, on_chunk)

    async def generate_content(self, prompt: str, options: Optional[dict] = None) -> ProviderResponse:
        return await self.route_request("generate_content", prompt, options)

    async def generate_content_streaming(self, prompt: str, options: Optional[dict] = None,
                                         on_chunk: Optional[OnChunk] = None) -> ProviderResponse:
        return await self.route_request("generate_content_streaming", prompt, options, on_chunk)

    async def create_prompt_session(self, options: Optional[dict] = None) -> ProviderResponse:
        return await self.route_request("create_prompt_session", options)

    async def prompt(self, session: SessionRef, input: Any, options: Optional[dict] = None) -> ProviderResponse:
        return await self.route_request("prompt", session, input, options)

    async def prompt_streaming(self, session: SessionRef, input: Any, options: Optional[dict] = None,
                               on_chunk: Optional[OnChunk] = None) -> ProviderResponse:
        return await self.route_request("prompt_streaming", session, input, options, on_chunk)

    async def prompt_with_image(self, session: SessionRef, text: str, image: Any,
                                options: Optional[dict] = None) -> ProviderResponse:
        return await self.route_request("prompt_with_image", session, text, image, options)

    async def prompt_with_image_streaming(self, session: SessionRef, text: str, image: Any,
                                          options: Optional[dict] = None,
                                          on_chunk: Optional[OnChunk] = None) -> ProviderResponse:
        return await self.route_request("prompt_with_image_streaming", session, text, image, options, on_chunk)

    async def prompt_with_audio(self, session: SessionRef, text: str, audio: Any,
                                options: Optional[dict] = None) -> ProviderResponse:
        return await self.route_request("prompt_with_audio", session, text, audio, options)

    # Settings ---------------------------------------------------------------
    def get_settings(self) -> Dict[str, Any]:
        return self.settings.to_storage()

    async def update_settings(self, partial: Dict[str, Any]) -> Dict[str, Any]:
        previous = self.settings
        self.settings = previous.merged(partial)
        self.store.save(self.settings)
        logger.info("Provider settings updated")

        if self.settings.cloud_api_key != previous.cloud_api_key:
            self._push_cloud_key()

        preferred = partial.get("preferredProvider", partial.get("preferred_provider"))
        if preferred and preferred != self.active_provider:
            await self.set_provider(preferred)
        return self.get_settings()

    # Housekeeping -----------------------------------------------------------
    def clear_cache(self) -> int:
        removed = 0
        for name, provider in self.registry.items():
            removed += provider.clear_cache()
        logger.info(f"Cleared {removed} cached results")
        return removed

    async def cleanup(self) -> None:
        for name, provider in self.registry.items():
            try:
                await provider.cleanup()
            except Exception as e:
                logger.error(f"Error cleaning up {name} provider: {e}")
        logger.info("AI provider manager cleaned up")
