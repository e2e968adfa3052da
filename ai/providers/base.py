"""Uniform operation surface implemented by every AI provider."""
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from core.logging import logger

from .cache import DEFAULT_TTL_SEC, ResultCache
from .sessions import SessionManager
from .streaming import OnChunk
from .types import FEATURE_NAMES, ChatTurn, GrammarInput, PromptSessionHandle, SessionRef, session_id_of


class BaseProvider(ABC):
    """Base class for AI providers.

    A provider owns its result cache and its session table; nothing outside
    the provider mutates either.
    """

    name: str = "provider"
    cache_namespace: str = "provider"

    def __init__(self, cache_ttl: float = DEFAULT_TTL_SEC, clock: Callable[[], float] = time.time):
        self.cache = ResultCache(self.cache_namespace, ttl_sec=cache_ttl, clock=clock)
        self.sessions = SessionManager()

    def get_name(self) -> str:
        return self.name

    @abstractmethod
    async def is_available(self) -> bool:
        """Whether the provider can currently serve requests."""

    async def features(self) -> Dict[str, bool]:
        """Which operation families this provider can serve right now."""
        return {feature: True for feature in FEATURE_NAMES}

    # Operations -------------------------------------------------------------
    @abstractmethod
    async def check_grammar(self, text: Union[str, GrammarInput], options: Optional[dict] = None) -> Any:
        pass

    @abstractmethod
    async def translate_text(self, text: str, source_lang: str, target_lang: str,
                             options: Optional[dict] = None) -> str:
        pass

    @abstractmethod
    async def summarize_content(self, content: str, options: Optional[dict] = None) -> str:
        pass

    @abstractmethod
    async def summarize_content_streaming(self, content: str, options: Optional[dict] = None,
                                          on_chunk: Optional[OnChunk] = None) -> str:
        pass

    @abstractmethod
    async def rewrite_text(self, text: str, options: Optional[dict] = None) -> str:
        pass

    @abstractmethod
    async def rewrite_text_streaming(self, text: str, options: Optional[dict] = None,
                                     on_chunk: Optional[OnChunk] = None) -> str:
        pass

    @abstractmethod
    async def generate_content(self, prompt: str, options: Optional[dict] = None) -> str:
        pass

    @abstractmethod
    async def generate_content_streaming(self, prompt: str, options: Optional[dict] = None,
                                         on_chunk: Optional[OnChunk] = None) -> str:
        pass

    @abstractmethod
    async def create_prompt_session(self, options: Optional[dict] = None) -> PromptSessionHandle:
        pass

    @abstractmethod
    async def prompt(self, session: SessionRef, input: Any, options: Optional[dict] = None) -> Any:
        pass

    @abstractmethod
    async def prompt_streaming(self, session: SessionRef, input: Any, options: Optional[dict] = None,
                               on_chunk: Optional[OnChunk] = None) -> str:
        pass

    @abstractmethod
    async def prompt_with_image(self, session: SessionRef, text: str, image: Any,
                                options: Optional[dict] = None) -> str:
        pass

    @abstractmethod
    async def prompt_with_image_streaming(self, session: SessionRef, text: str, image: Any,
                                          options: Optional[dict] = None,
                                          on_chunk: Optional[OnChunk] = None) -> str:
        pass

    @abstractmethod
    async def prompt_with_audio(self, session: SessionRef, text: str, audio: Any,
                                options: Optional[dict] = None) -> str:
        pass

    # Sessions ---------------------------------------------------------------
    async def destroy_session(self, session: SessionRef) -> bool:
        return await self.sessions.destroy(session_id_of(session))

    def get_chat_history(self, session: SessionRef) -> List[ChatTurn]:
        return self.sessions.history(session_id_of(session))

    def clear_chat_history(self, session: SessionRef) -> None:
        self.sessions.clear_history(session_id_of(session))

    # Cache ------------------------------------------------------------------
    async def _cache_get(self, key: str) -> Optional[Any]:
        try:
            return await self.cache.get(key)
        except Exception as e:
            logger.warning(f"{self.cache_namespace} cache read failed: {e}")
            return None

    async def _cache_set(self, key: str, value: Any) -> None:
        try:
            await self.cache.set(key, value)
        except Exception as e:
            logger.warning(f"{self.cache_namespace} cache write failed: {e}")

    async def _cached(self, method: str, args: Sequence[Any], compute: Callable[[], Awaitable[Any]]) -> Any:
        """Serve ``method(*args)`` from the cache, computing and storing it on a miss."""
        key = self.cache.make_key(method, *args)
        cached = await self._cache_get(key)
        if cached is not None:
            logger.info(f"Using cached {method} result ({self.cache_namespace})")
            return cached
        result = await compute()
        await self._cache_set(key, result)
        return result

    def clear_cache(self) -> int:
        return self.cache.clear()

    def cleanup_cache(self) -> int:
        return self.cache.cleanup()

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()

    async def cleanup(self) -> None:
        """Release every session and handle and drop cached results."""
        await self.sessions.destroy_all()
        self.cache.clear()
        logger.info(f"{self.name} cleaned up")
