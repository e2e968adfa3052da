"""Provider layer: a router over an on-device runtime and the Gemini cloud API.

Callers talk to :class:`ProviderManager`; it selects a provider, falls
back to the other one on failure and returns normalized envelopes.
"""

from __future__ import annotations

from .base import BaseProvider
from .builtin import BuiltinAIProvider
from .cache import ResultCache
from .cloud import CloudAIProvider
from .factory import build_provider_manager, create_provider
from .registry import ProviderRegistry
from .router import ProviderManager
from .streaming import StreamingResponse, StreamTermination
from .types import MediaBlob, PreparedPrompt, PromptSessionHandle, ProviderResponse, RawText

__all__ = [
    "BaseProvider",
    "BuiltinAIProvider",
    "CloudAIProvider",
    "ProviderManager",
    "ProviderRegistry",
    "ProviderResponse",
    "PromptSessionHandle",
    "RawText",
    "PreparedPrompt",
    "MediaBlob",
    "ResultCache",
    "StreamingResponse",
    "StreamTermination",
    "build_provider_manager",
    "create_provider",
]
