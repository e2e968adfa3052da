"""AI module: provider routing, caching and sessions."""

from ai.providers import ProviderManager, build_provider_manager

__all__ = ["ProviderManager", "build_provider_manager"]
