"""Provider backed by the hosted Gemini ``generateContent`` API."""
from __future__ import annotations

import asyncio
import json
import time
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional

import httpx

from core.config import CloudConfig, GenerationConfig
from core.errors import (
    ContentBlockedError,
    MalformedResponseError,
    PromptCancelledError,
    PromptExecutionError,
    ProviderUnavailableError,
    StreamingError,
)
from core.logging import logger

from .base import BaseProvider
from .cache import DEFAULT_TTL_SEC
from .media import MediaInput, normalize_audio, normalize_image, to_base64
from .prompts import (
    classify_grammar_input,
    grammar_prompt,
    option,
    parse_corrections,
    rewrite_prompt,
    summarize_prompt,
    translate_prompt,
)
from .sessions import SessionInfo
from .streaming import OnChunk, consume
from .types import ChatRole, MediaBlob, PreparedPrompt, PromptSessionHandle, SessionRef, session_id_of

BLOCKED_FINISH_REASONS = ("SAFETY", "RECITATION")


def unwrap_text(data: Mapping[str, Any]) -> str:
    """Extract ``candidates[0].content.parts[0].text`` from a reply.

    Each missing step raises its own ``MalformedResponseError``; a reply
    without parts that was stopped by the safety filter raises
    ``ContentBlockedError``.
    """
    candidates = data.get("candidates") if isinstance(data, Mapping) else None
    if not candidates:
        raise MalformedResponseError("missing_candidates")
    candidate = candidates[0]
    content = candidate.get("content")
    if not content:
        raise MalformedResponseError("missing_content")
    parts = content.get("parts")
    if not parts:
        finish_reason = candidate.get("finishReason")
        if finish_reason in BLOCKED_FINISH_REASONS:
            raise ContentBlockedError(finish_reason)
        raise MalformedResponseError("missing_parts")
    if not parts[0]:
        raise MalformedResponseError(
            "empty_parts", "API returned unexpected response format: parts array is empty"
        )
    text = parts[0].get("text")
    if not text:
        raise MalformedResponseError(
            "missing_text", "API returned unexpected response format: text content is missing"
        )
    return text


def _chunk_text(chunk: Mapping[str, Any]) -> str:
    """Text carried by one streamed chunk; chunks without text yield ''."""
    candidates = chunk.get("candidates") or []
    if not candidates:
        return ""
    candidate = candidates[0]
    parts = (candidate.get("content") or {}).get("parts") or []
    if not parts and candidate.get("finishReason") in BLOCKED_FINISH_REASONS:
        raise ContentBlockedError(candidate["finishReason"])
    return "".join(part.get("text", "") for part in parts if isinstance(part, Mapping))


def _inline_part(blob: MediaBlob) -> Dict[str, Any]:
    return {"inlineData": {"mimeType": blob.mime_type, "data": to_base64(blob)}}


def to_parts(content: Any) -> List[Dict[str, Any]]:
    """Convert a turn's content (text or typed items) into API ``parts``."""
    if isinstance(content, str):
        return [{"text": content}]
    parts = []
    for item in content:
        value = item["value"]
        if item["type"] == "text":
            if value:
                parts.append({"text": value})
        else:
            parts.append(_inline_part(value))
    return parts


class CloudAIProvider(BaseProvider):
    name = "Cloud API (Gemini)"
    cache_namespace = "cloud"

    def __init__(
        self,
        api_key: Optional[str] = None,
        config: Optional[CloudConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        cache_ttl: float = DEFAULT_TTL_SEC,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(cache_ttl=cache_ttl, clock=clock)
        self.api_key = api_key
        self.config = config or CloudConfig()
        self._transport = transport

    async def initialize(self) -> None:
        logger.info(f"{self.name} initialized, API key {'configured' if self.api_key else 'missing'}")

    def set_api_key(self, api_key: Optional[str]) -> None:
        self.api_key = api_key or None
        logger.info("Cloud API key updated")

    async def is_available(self) -> bool:
        return bool(self.api_key)

    async def features(self) -> Dict[str, bool]:
        available = await self.is_available()
        return {feature: available for feature in await super().features()}

    # HTTP -------------------------------------------------------------------
    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise ProviderUnavailableError("API key not configured")
        return {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self.config.timeout_seconds)

    def _url(self, model: str, method: str) -> str:
        return f"{self.config.base_url.rstrip('/')}/models/{model}:{method}"

    @staticmethod
    def _api_error(response: httpx.Response) -> PromptExecutionError:
        try:
            message = response.json().get("error", {}).get("message")
        except (ValueError, AttributeError):
            message = None
        logger.error(f"Gemini API error {response.status_code}: {message or response.text[:200]}")
        return PromptExecutionError(
            message or f"API request failed: {response.status_code}",
            details=f"HTTP {response.status_code}",
        )

    def _payload(self, contents: List[Dict[str, Any]], generation: GenerationConfig) -> Dict[str, Any]:
        return {"contents": contents, "generationConfig": generation.to_api()}

    async def _generate(self, contents: List[Dict[str, Any]], model: Optional[str] = None,
                        generation: Optional[GenerationConfig] = None) -> str:
        headers = self._headers()
        model = model or self.config.model
        payload = self._payload(contents, generation or self.config.generation)
        logger.debug(f"Calling Gemini {model} with {len(contents)} content turn(s)")
        async with self._client() as client:
            try:
                response = await client.post(self._url(model, "generateContent"), headers=headers, json=payload)
            except httpx.HTTPError as e:
                logger.error(f"Gemini request failed: {e}")
                raise PromptExecutionError(f"API request failed: {e}", details=type(e).__name__) from e
        if response.is_error:
            raise self._api_error(response)
        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError("missing_candidates", "API returned a non-JSON response") from e
        try:
            return unwrap_text(data)
        except (MalformedResponseError, ContentBlockedError):
            logger.error(f"Unexpected Gemini response structure: {json.dumps(data)[:500]}")
            raise

    async def _stream(self, contents: List[Dict[str, Any]], model: Optional[str] = None,
                      generation: Optional[GenerationConfig] = None) -> AsyncIterator[str]:
        """Yield text deltas from the server-sent-events endpoint."""
        headers = self._headers()
        model = model or self.config.model
        payload = self._payload(contents, generation or self.config.generation)
        async with self._client() as client:
            async with client.stream(
                "POST", self._url(model, "streamGenerateContent"),
                params={"alt": "sse"}, headers=headers, json=payload,
            ) as response:
                if response.is_error:
                    await response.aread()
                    raise self._api_error(response)
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if not data or data == "[DONE]":
                        continue
                    try:
                        chunk = json.loads(data)
                    except ValueError as e:
                        raise StreamingError(f"Malformed stream chunk: {data[:80]}") from e
                    text = _chunk_text(chunk)
                    if text:
                        yield text

    def _generation(self, options: Mapping[str, Any], base: Optional[GenerationConfig] = None) -> GenerationConfig:
        base = base or self.config.generation
        overrides = {
            "temperature": options.get("temperature"),
            "top_p": option(options, "top_p"),
            "top_k": option(options, "top_k"),
            "max_output_tokens": option(options, "max_output_tokens"),
        }
        overrides = {key: value for key, value in overrides.items() if value is not None}
        return base.model_copy(update=overrides) if overrides else base

    async def _ask(self, prompt: str, options: Optional[Mapping[str, Any]] = None) -> str:
        return await self._generate([{"role": "user", "parts": [{"text": prompt}]}],
                                    generation=self._generation(options or {}))

    def _ask_streaming(self, prompt: str, options: Optional[Mapping[str, Any]] = None) -> AsyncIterator[str]:
        return self._stream([{"role": "user", "parts": [{"text": prompt}]}],
                            generation=self._generation(options or {}))

    # Grammar / translation / summarization / rewriting ----------------------
    async def check_grammar(self, text, options: Optional[dict] = None) -> Any:
        grammar_input = classify_grammar_input(text)
        if isinstance(grammar_input, PreparedPrompt):
            logger.debug("Grammar input is a prepared prompt, sending as-is")
            return await self._cached(
                "checkGrammar", ["prompt", grammar_input.text], lambda: self._ask(grammar_input.text)
            )

        async def compute() -> List[Dict[str, Any]]:
            return parse_corrections(await self._ask(grammar_prompt(grammar_input.text)))

        return await self._cached("checkGrammar", ["text", grammar_input.text], compute)

    async def translate_text(self, text: str, source_lang: str, target_lang: str,
                             options: Optional[dict] = None) -> str:
        async def compute() -> str:
            return (await self._ask(translate_prompt(text, source_lang, target_lang))).strip()

        return await self._cached("translateText", [text, source_lang, target_lang], compute)

    async def summarize_content(self, content: str, options: Optional[dict] = None) -> str:
        options = options or {}
        return await self._cached(
            "summarizeContent", [content, options], lambda: self._ask(summarize_prompt(content, options))
        )

    async def summarize_content_streaming(self, content: str, options: Optional[dict] = None,
                                          on_chunk: Optional[OnChunk] = None) -> str:
        return await consume(self._ask_streaming(summarize_prompt(content, options)), on_chunk)

    async def rewrite_text(self, text: str, options: Optional[dict] = None) -> str:
        options = options or {}

        async def compute() -> str:
            return (await self._ask(rewrite_prompt(text, options))).strip()

        return await self._cached("rewriteText", [text, options], compute)

    async def rewrite_text_streaming(self, text: str, options: Optional[dict] = None,
                                     on_chunk: Optional[OnChunk] = None) -> str:
        return await consume(self._ask_streaming(rewrite_prompt(text, options)), on_chunk)

    async def generate_content(self, prompt: str, options: Optional[dict] = None) -> str:
        return await self._ask(prompt, options)

    async def generate_content_streaming(self, prompt: str, options: Optional[dict] = None,
                                         on_chunk: Optional[OnChunk] = None) -> str:
        options = options or {}
        return await consume(self._ask_streaming(prompt, options), on_chunk, options.get("cancel_event"))

    # Chat sessions ----------------------------------------------------------
    async def create_prompt_session(self, options: Optional[dict] = None) -> PromptSessionHandle:
        """Open a client-side chat session; the endpoint itself is stateless."""
        if not await self.is_available():
            raise ProviderUnavailableError("API key not configured")
        options = options or {}
        config = {
            "temperature": options.get("temperature", self.config.generation.temperature),
            "top_k": option(options, "top_k", self.config.generation.top_k),
        }
        info = self.sessions.register(None, config)
        return PromptSessionHandle(id=info.id, config=dict(config))

    @staticmethod
    def _contents(info: Optional[SessionInfo], content: Any) -> List[Dict[str, Any]]:
        contents = []
        if info is not None:
            for turn in info.history:
                role = "model" if turn.role is ChatRole.ASSISTANT else "user"
                contents.append({"role": role, "parts": to_parts(turn.content)})
        contents.append({"role": "user", "parts": to_parts(content)})
        return contents

    def _session(self, session: Optional[SessionRef]) -> Optional[SessionInfo]:
        return None if session is None else self.sessions.get(session_id_of(session))

    async def _converse(self, info: Optional[SessionInfo], content: Any, options: Mapping[str, Any],
                        model: Optional[str] = None, base: Optional[GenerationConfig] = None,
                        on_chunk: Optional[OnChunk] = None, streaming: bool = False) -> str:
        cancel_event: Optional[asyncio.Event] = options.get("cancel_event")
        if cancel_event is not None and cancel_event.is_set():
            raise PromptCancelledError()
        merged = dict(info.config) if info is not None else {}
        merged.update(options)
        generation = self._generation(merged, base)
        contents = self._contents(info, content)
        if info is not None:
            self.sessions.touch(info)
        if streaming:
            result = await consume(self._stream(contents, model, generation), on_chunk, cancel_event)
        else:
            result = await self._generate(contents, model, generation)
        if info is not None:
            self.sessions.append_exchange(info, content, result)
        return result

    async def prompt(self, session: SessionRef, input: Any, options: Optional[dict] = None) -> Any:
        options = options or {}
        info = self.sessions.get(session_id_of(session))
        async with info.lock:
            result = await self._converse(info, input, options)
        if option(options, "response_constraint") is not None:
            try:
                return json.loads(result)
            except ValueError:
                logger.warning("Failed to parse constrained response as JSON, returning raw text")
        return result

    async def prompt_streaming(self, session: SessionRef, input: Any, options: Optional[dict] = None,
                               on_chunk: Optional[OnChunk] = None) -> str:
        info = self.sessions.get(session_id_of(session))
        async with info.lock:
            return await self._converse(info, input, options or {}, on_chunk=on_chunk, streaming=True)

    # Multimodal -------------------------------------------------------------
    async def _media_request(self, session: Optional[SessionRef], text: str, blob: MediaBlob, kind: str,
                             options: Mapping[str, Any], on_chunk: Optional[OnChunk] = None,
                             streaming: bool = False) -> str:
        content = [{"type": "text", "value": text}, {"type": kind, "value": blob}]
        info = self._session(session)
        model, base = self.config.vision_model, self.config.vision_generation
        if info is None:
            return await self._converse(None, content, options, model, base, on_chunk, streaming)
        async with info.lock:
            return await self._converse(info, content, options, model, base, on_chunk, streaming)

    async def prompt_with_image(self, session: Optional[SessionRef], text: str, image: MediaInput,
                                options: Optional[dict] = None) -> str:
        blob = await normalize_image(image, transport=self._transport)
        logger.debug(f"Sending image prompt ({blob.mime_type}, {len(blob.data)} bytes)")
        return await self._media_request(session, text, blob, "image", options or {})

    async def prompt_with_image_streaming(self, session: Optional[SessionRef], text: str, image: MediaInput,
                                          options: Optional[dict] = None,
                                          on_chunk: Optional[OnChunk] = None) -> str:
        blob = await normalize_image(image, transport=self._transport)
        return await self._media_request(session, text, blob, "image", options or {},
                                         on_chunk=on_chunk, streaming=True)

    async def prompt_with_audio(self, session: Optional[SessionRef], text: str, audio: MediaInput,
                                options: Optional[dict] = None) -> str:
        blob = normalize_audio(audio)
        return await self._media_request(session, text, blob, "audio", options or {})
