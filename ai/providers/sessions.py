"""Session table owned by a single provider.

Two kinds of entries live here:

* pooled capability handles (translator, summarizer, ...) keyed by a
  fingerprint of their effective configuration and reused on every identical
  request, because creating one may trigger a large model download;
* prompt sessions keyed by a fresh opaque id, each with its own chat history
  and a lock that serializes calls against the same session.

A destroyed prompt-session id is never handed out again; any later lookup
raises ``InvalidSessionError``.
"""
from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List

from core.errors import InvalidSessionError
from core.logging import logger

from .types import ChatRole, ChatTurn


@dataclass
class SessionInfo:
    id: str
    instance: Any
    config: Dict[str, Any]
    created: float = field(default_factory=time.time)
    last_used: float = field(default_factory=time.time)
    usage_count: int = 0
    history: List[ChatTurn] = field(default_factory=list)
    multimodal: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


async def _release(instance: Any) -> None:
    destroy = getattr(instance, "destroy", None)
    if destroy is None:
        return
    result = destroy()
    if inspect.isawaitable(result):
        await result


class SessionManager:
    def __init__(self, id_prefix: str = "prompt") -> None:
        self._id_prefix = id_prefix
        self._pooled: Dict[str, Any] = {}
        self._sessions: Dict[str, SessionInfo] = {}
        self._pool_locks: Dict[str, asyncio.Lock] = {}

    # Pooled capability handles -------------------------------------------
    async def get_or_create(self, fingerprint: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        """Return the handle pooled under ``fingerprint``, creating it once."""
        async with self._pool_locks.setdefault(fingerprint, asyncio.Lock()):
            if fingerprint in self._pooled:
                logger.debug(f"Reusing pooled session {fingerprint}")
                return self._pooled[fingerprint]
            instance = await factory()
            self._pooled[fingerprint] = instance
            logger.debug(f"Created pooled session {fingerprint}")
            return instance

    def pooled_keys(self) -> List[str]:
        return list(self._pooled)

    # Prompt sessions -----------------------------------------------------
    def _new_id(self, multimodal: bool) -> str:
        prefix = f"{self._id_prefix}_multimodal" if multimodal else self._id_prefix
        return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex}"

    def register(self, instance: Any, config: Dict[str, Any], multimodal: bool = False) -> SessionInfo:
        info = SessionInfo(
            id=self._new_id(multimodal),
            instance=instance,
            config=config,
            multimodal=multimodal,
        )
        self._sessions[info.id] = info
        logger.info(f"Prompt session created: {info.id}")
        return info

    def get(self, session_id: str) -> SessionInfo:
        info = self._sessions.get(session_id)
        if info is None:
            raise InvalidSessionError(f"Invalid or expired session: {session_id}")
        return info

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    @staticmethod
    def touch(info: SessionInfo) -> None:
        info.last_used = time.time()
        info.usage_count += 1

    @staticmethod
    def append_exchange(info: SessionInfo, user_content: Any, assistant_content: Any) -> None:
        """Record one completed user → assistant exchange."""
        info.history.append(ChatTurn(role=ChatRole.USER, content=user_content))
        info.history.append(ChatTurn(role=ChatRole.ASSISTANT, content=assistant_content))

    def history(self, session_id: str) -> List[ChatTurn]:
        info = self._sessions.get(session_id)
        return list(info.history) if info else []

    def clear_history(self, session_id: str) -> None:
        info = self._sessions.get(session_id)
        if info is not None:
            info.history = []
            logger.info(f"Chat history cleared for session: {session_id}")

    async def destroy(self, session_id: str) -> bool:
        info = self._sessions.pop(session_id, None)
        if info is None:
            logger.warning(f"Session not found: {session_id}")
            return False
        try:
            await _release(info.instance)
        except Exception as e:
            logger.error(f"Error destroying session {session_id}: {e}")
        logger.info(f"Session destroyed: {session_id}")
        return True

    async def destroy_all(self) -> None:
        for session_id in list(self._sessions):
            await self.destroy(session_id)
        pooled, self._pooled = self._pooled, {}
        for fingerprint, instance in pooled.items():
            try:
                await _release(instance)
            except Exception as e:
                logger.error(f"Error destroying pooled session {fingerprint}: {e}")
