"""Registry of the logical providers known to a ProviderManager."""
from typing import Dict, Iterator, Optional, Tuple

from core.config import PROVIDER_NAMES
from core.errors import RegistrationError
from core.logging import logger

from .base import BaseProvider


class ProviderRegistry:
    """Add-only mapping of logical name (``builtin`` / ``cloud``) to provider.

    Once registered, a name keeps its provider for the lifetime of the
    registry; there is no unregister.
    """

    def __init__(self) -> None:
        self._providers: Dict[str, BaseProvider] = {}

    def register(self, name: str, provider: BaseProvider) -> None:
        if name not in PROVIDER_NAMES:
            raise RegistrationError(
                f"Unknown provider name: {name}", details=f"expected one of {', '.join(PROVIDER_NAMES)}"
            )
        if name in self._providers:
            raise RegistrationError(f"Provider already registered: {name}")
        self._providers[name] = provider
        logger.info(f"Registered provider: {name} ({provider.get_name()})")

    def get(self, name: str) -> Optional[BaseProvider]:
        return self._providers.get(name)

    def require(self, name: str) -> BaseProvider:
        provider = self._providers.get(name)
        if provider is None:
            raise RegistrationError(f"Provider not registered: {name}")
        return provider

    @staticmethod
    def alternate_of(name: str) -> str:
        return "cloud" if name == "builtin" else "builtin"

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __len__(self) -> int:
        return len(self._providers)

    def __iter__(self) -> Iterator[str]:
        return iter(self._providers)

    def items(self) -> Iterator[Tuple[str, BaseProvider]]:
        return iter(self._providers.items())
