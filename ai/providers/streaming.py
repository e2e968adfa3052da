"""Cancellable streaming of incremental text deltas.

``StreamingResponse`` wraps an async iterator of string deltas.  After every
delta the accumulated text is handed to an optional ``on_chunk`` callback.
A stream ends in exactly one of three ways, reported by
:class:`StreamTermination`: the source is exhausted, the caller cancels
(``cancel_event`` set, or the runtime raises ``AbortError``), or the backend
fails.
"""
from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional

from core.errors import PromptCancelledError, StreamingError, classify_error
from core.logging import logger

from .runtime import AbortError

OnChunk = Callable[[str], Any]


class StreamTermination(str, Enum):
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class StreamResult:
    text: str
    reason: StreamTermination
    error: Optional[BaseException] = None

    def unwrap(self) -> str:
        """Return the text, or raise the classified terminal error."""
        if self.reason is StreamTermination.CANCELLED:
            raise PromptCancelledError()
        if self.reason is StreamTermination.ERROR:
            raise classify_error(self.error, fallback=StreamingError)
        return self.text


class StreamingResponse:
    def __init__(
        self,
        source: AsyncIterator[str],
        on_chunk: Optional[OnChunk] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        self._source = source
        self._on_chunk = on_chunk
        self._cancel_event = cancel_event
        self.text = ""
        self.reason: Optional[StreamTermination] = None

    def _cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    async def _emit(self) -> None:
        if self._on_chunk is None:
            return
        result = self._on_chunk(self.text)
        if inspect.isawaitable(result):
            await result

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        if self._cancelled():
            self.reason = StreamTermination.CANCELLED
            return
        async for delta in self._source:
            if self._cancelled():
                self.reason = StreamTermination.CANCELLED
                return
            if not delta:
                continue
            self.text += delta
            await self._emit()
            yield delta
        self.reason = StreamTermination.EXHAUSTED

    async def collect(self) -> StreamResult:
        try:
            async for _ in self:
                pass
        except AbortError as e:
            return StreamResult(self.text, StreamTermination.CANCELLED, e)
        except Exception as e:
            return StreamResult(self.text, StreamTermination.ERROR, e)
        finally:
            await self._close_source()
        return StreamResult(self.text, self.reason or StreamTermination.EXHAUSTED)

    async def _close_source(self) -> None:
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except Exception as e:
                logger.debug(f"Ignoring error while closing stream: {e}")


async def consume(
    source: AsyncIterator[str],
    on_chunk: Optional[OnChunk] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> str:
    """Drain ``source`` and return the full text, raising on cancel/error."""
    result = await StreamingResponse(source, on_chunk, cancel_event).collect()
    return result.unwrap()
