"""Construction helpers wiring providers, settings and the manager together."""
from typing import Any, Optional

from core.config import Config, get_settings
from core.errors import RegistrationError
from core.logging import logger
from core.settings_store import SettingsStore

from .base import BaseProvider
from .builtin import BuiltinAIProvider
from .cloud import CloudAIProvider
from .router import ProviderManager
from .runtime import LocalRuntime


def create_provider(kind: str, **kwargs: Any) -> BaseProvider:
    """Instantiate a provider by logical name (``builtin`` or ``cloud``)."""
    if kind == "builtin":
        return BuiltinAIProvider(**kwargs)
    if kind == "cloud":
        return CloudAIProvider(**kwargs)
    raise RegistrationError(f"Unknown provider kind: {kind}")


async def build_provider_manager(
    runtime: Optional[LocalRuntime] = None,
    config: Optional[Config] = None,
    store: Optional[SettingsStore] = None,
) -> ProviderManager:
    """Create and initialize a manager with every provider that can be built.

    The builtin provider is registered only when a runtime is given; the
    cloud provider is always registered and picks its key from the
    environment or, failing that, from the stored settings.
    """
    config = config or get_settings()
    ttl = config.app.CACHE_TTL_SECONDS
    manager = ProviderManager(store=store or SettingsStore(config.app.AI_SETTINGS_PATH))

    if runtime is not None:
        builtin = create_provider("builtin", runtime=runtime, cache_ttl=ttl)
        await builtin.initialize()
        manager.register_provider("builtin", builtin)
    else:
        logger.info("No local runtime supplied, built-in provider not registered")

    cloud = create_provider("cloud", api_key=config.app.GEMINI_API_KEY, config=config.cloud, cache_ttl=ttl)
    manager.register_provider("cloud", cloud)

    await manager.initialize()
    return manager
