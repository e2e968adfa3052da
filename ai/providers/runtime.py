"""Contract of the on-device model runtime consumed by ``BuiltinAIProvider``.

The runtime itself is not part of this package.  Anything that satisfies
these protocols (a browser bridge, a local inference server client, a test
fake) can be plugged in.
"""
from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, runtime_checkable

# Capability names probed by the builtin provider
PROOFREADER = "Proofreader"
TRANSLATOR = "Translator"
SUMMARIZER = "Summarizer"
REWRITER = "Rewriter"
WRITER = "Writer"
LANGUAGE_MODEL = "LanguageModel"

CAPABILITIES = (PROOFREADER, TRANSLATOR, SUMMARIZER, REWRITER, WRITER, LANGUAGE_MODEL)

ProgressMonitor = Callable[[float], None]


class AbortError(Exception):
    """Raised by a runtime when an operation is aborted through its cancel signal."""


@runtime_checkable
class CapabilityFactory(Protocol):
    """Entry point of one capability (``Translator``, ``LanguageModel``, ...).

    ``create`` receives the effective configuration plus ``monitor``, a
    callable the runtime invokes with the fractional download progress
    (0.0 to 1.0) while model weights are fetched. ``LanguageModel`` may also
    expose an async ``params()`` returning its temperature and top-k limits.
    """

    async def availability(self, **options: Any) -> str: ...

    async def create(self, **config: Any) -> Any: ...


class LanguageModelSession(Protocol):
    async def prompt(self, input: Any, signal: Optional[asyncio.Event] = None, **options: Any) -> str: ...

    def prompt_streaming(self, input: Any, signal: Optional[asyncio.Event] = None) -> AsyncIterator[str]: ...

    async def append(self, messages: List[Dict[str, Any]]) -> None: ...

    def destroy(self) -> None: ...


class LocalRuntime(Protocol):
    def get_capability(self, name: str) -> Optional[Any]:
        """Return the factory for ``name`` or ``None`` when the runtime lacks it."""
        ...
