"""Provider backed by the on-device model runtime (Gemini Nano).

Every capability (proofreader, translator, summarizer, rewriter, prompt
model) is probed through the runtime, created lazily and pooled by the
fingerprint of its effective configuration.  Creating a handle may start a
model download; progress is recorded per capability.
"""
from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import httpx

from core.errors import (
    ApiUnavailableError,
    PromptCancelledError,
    SessionCreationError,
    StreamingError,
    classify_error,
)
from core.logging import logger

from .base import BaseProvider
from .cache import DEFAULT_TTL_SEC, canonical_json
from .media import MediaInput, normalize_audio, normalize_image
from .prompts import DEFAULT_CORRECTION_MESSAGE, classify_grammar_input, option
from .runtime import (
    CAPABILITIES,
    LANGUAGE_MODEL,
    PROOFREADER,
    REWRITER,
    SUMMARIZER,
    TRANSLATOR,
    AbortError,
    LocalRuntime,
)
from .sessions import SessionInfo
from .streaming import OnChunk, consume
from .types import (
    Availability,
    AvailabilityStatus,
    MediaBlob,
    PreparedPrompt,
    PromptSessionHandle,
    SessionRef,
    session_id_of,
)

DEFAULT_MODEL_PARAMS = {
    "max_temperature": 2.0,
    "max_top_k": 128,
    "default_temperature": 1.0,
    "default_top_k": 3,
}

# Options passed to availability() so the probe matches a real request
PROBE_OPTIONS: Dict[str, Dict[str, Any]] = {
    TRANSLATOR: {"source_language": "en", "target_language": "es"},
    LANGUAGE_MODEL: {"output_language": "en"},
}

GRAMMAR_PROMPT_CONFIG = {"temperature": 0.3, "top_k": 40}
GENERATE_TEMPERATURE = 1.0
GENERATE_TOP_K = 40


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _clamp(value: float, upper: float) -> float:
    return max(0, min(value, upper))


def format_proofreader_result(result: Any, text: str) -> List[Dict[str, Any]]:
    """Turn a proofreader result into the common correction shape."""
    corrections = _field(result, "corrections") or []
    formatted = []
    for item in corrections:
        start = _field(item, "start_index", 0)
        end = _field(item, "end_index", start)
        formatted.append({
            "error": text[start:end],
            "correction": _field(item, "correction", ""),
            "type": _field(item, "type") or "grammar",
            "message": _field(item, "explanation") or DEFAULT_CORRECTION_MESSAGE,
            "start_index": start,
            "end_index": end,
        })
    return formatted


class BuiltinAIProvider(BaseProvider):
    name = "Built-in AI (Gemini Nano)"
    cache_namespace = "builtin"

    def __init__(
        self,
        runtime: LocalRuntime,
        cache_ttl: float = DEFAULT_TTL_SEC,
        clock: Callable[[], float] = time.time,
        media_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(cache_ttl=cache_ttl, clock=clock)
        self.runtime = runtime
        self.api_status: Dict[str, AvailabilityStatus] = {}
        self.download_progress: Dict[str, Dict[str, Any]] = {}
        self._media_transport = media_transport

    # Availability -----------------------------------------------------------
    async def initialize(self) -> None:
        await self.check_all_apis()
        logger.info(f"{self.name} initialized")

    async def check_api_availability(self, name: str) -> AvailabilityStatus:
        factory = self.runtime.get_capability(name)
        if factory is None:
            status = AvailabilityStatus(False, Availability.UNAVAILABLE, error=f"{name} API not found")
        elif not callable(getattr(factory, "availability", None)):
            status = AvailabilityStatus(
                False, Availability.UNAVAILABLE, error=f"{name} exists but has no availability() method"
            )
        else:
            try:
                raw = await factory.availability(**PROBE_OPTIONS.get(name, {}))
            except Exception as e:
                logger.error(f"Error checking {name} availability: {e}")
                status = AvailabilityStatus(False, Availability.UNAVAILABLE, error=str(e))
            else:
                status = AvailabilityStatus(True, Availability.from_raw(raw))
        self.api_status[name] = status
        return status

    async def check_all_apis(self) -> Dict[str, AvailabilityStatus]:
        for name in CAPABILITIES:
            await self.check_api_availability(name)
        logger.debug(
            "Built-in API status: "
            + ", ".join(f"{name}={status.availability.value}" for name, status in self.api_status.items())
        )
        return self.get_api_status()

    def get_api_status(self) -> Dict[str, AvailabilityStatus]:
        return dict(self.api_status)

    async def is_available(self) -> bool:
        await self.check_all_apis()
        return any(status.usable for status in self.api_status.values())

    def _has(self, name: str) -> bool:
        status = self.api_status.get(name)
        return status is not None and status.availability is not Availability.UNAVAILABLE

    async def features(self) -> Dict[str, bool]:
        if not self.api_status:
            await self.check_all_apis()
        prompt_api = self._has(LANGUAGE_MODEL)
        return {
            "grammar": self._has(PROOFREADER) or prompt_api,
            "translation": self._has(TRANSLATOR),
            "summarization": self._has(SUMMARIZER),
            "rewriting": self._has(REWRITER),
            "generation": prompt_api,
            "chat": prompt_api,
        }

    async def _require(self, name: str, label: Optional[str] = None) -> Any:
        status = self.api_status.get(name) or await self.check_api_availability(name)
        factory = self.runtime.get_capability(name)
        if status.availability is Availability.UNAVAILABLE or factory is None:
            raise ApiUnavailableError(f"{label or name} API not available")
        return factory

    # Download progress ------------------------------------------------------
    def _monitor_download(self, name: str) -> Callable[[float], None]:
        def on_progress(loaded: float) -> None:
            progress = loaded * 100
            self.download_progress[name] = {
                "loaded": loaded,
                "progress": progress,
                "status": "complete" if loaded >= 1 else "downloading",
            }
            logger.info(f"{name} download progress: {progress:.1f}%")

        return on_progress

    def get_download_progress(self, name: Optional[str] = None) -> Optional[Dict[str, Any]]:
        if name is None:
            return {key: dict(value) for key, value in self.download_progress.items()}
        entry = self.download_progress.get(name)
        return dict(entry) if entry else None

    # Pooled capability handles ---------------------------------------------
    async def _create(self, name: str, config: Dict[str, Any], label: Optional[str] = None) -> Any:
        factory = await self._require(name, label)
        try:
            instance = await factory.create(**config, monitor=self._monitor_download(name))
        except Exception as e:
            logger.error(f"Failed to create {name} session: {e}")
            raise classify_error(e, fallback=SessionCreationError) from e
        logger.info(f"{name} session created")
        return instance

    async def _pooled(self, fingerprint: str, name: str, config: Dict[str, Any]) -> Any:
        return await self.sessions.get_or_create(fingerprint, lambda: self._create(name, config))

    @staticmethod
    def _summarizer_config(options: Mapping[str, Any]) -> Dict[str, Any]:
        config = {
            "type": options.get("type") or "key-points",
            "format": options.get("format") or "markdown",
            "length": options.get("length") or "medium",
        }
        shared_context = option(options, "shared_context")
        if shared_context:
            config["shared_context"] = shared_context
        return config

    @staticmethod
    def _rewriter_config(options: Mapping[str, Any]) -> Dict[str, Any]:
        config = {
            "tone": options.get("tone") or "as-is",
            "format": options.get("format") or "markdown",
            "length": options.get("length") or "as-is",
        }
        shared_context = option(options, "shared_context")
        if shared_context:
            config["shared_context"] = shared_context
        return config

    async def _summarizer(self, options: Mapping[str, Any]) -> Any:
        config = self._summarizer_config(options)
        return await self._pooled(f"summarizer_{canonical_json(config)}", SUMMARIZER, config)

    async def _rewriter(self, options: Mapping[str, Any]) -> Any:
        config = self._rewriter_config(options)
        return await self._pooled(f"rewriter_{canonical_json(config)}", REWRITER, config)

    # Grammar ----------------------------------------------------------------
    async def check_grammar(self, text, options: Optional[dict] = None) -> Any:
        grammar_input = classify_grammar_input(text)
        if isinstance(grammar_input, PreparedPrompt):
            return await self._cached(
                "checkGrammar", ["prompt", grammar_input.text],
                lambda: self._check_grammar_with_prompt(grammar_input.text),
            )
        return await self._cached(
            "checkGrammar", ["text", grammar_input.text],
            lambda: self._proofread(grammar_input.text),
        )

    async def _proofread(self, text: str) -> List[Dict[str, Any]]:
        proofreader = await self._pooled("proofreader", PROOFREADER, {"output_language": "en"})
        try:
            result = await proofreader.proofread(text)
        except Exception as e:
            raise classify_error(e) from e
        return format_proofreader_result(result, text)

    async def _check_grammar_with_prompt(self, prompt: str) -> str:
        info = await self._open_prompt_session(dict(GRAMMAR_PROMPT_CONFIG))
        try:
            return await self._run_prompt(info, prompt, {})
        finally:
            await self.sessions.destroy(info.id)

    # Translation / summarization / rewriting --------------------------------
    async def translate_text(self, text: str, source_lang: str, target_lang: str,
                             options: Optional[dict] = None) -> str:
        return await self._cached(
            "translateText", [text, source_lang, target_lang],
            lambda: self._translate(text, source_lang, target_lang),
        )

    async def _translate(self, text: str, source_lang: str, target_lang: str) -> str:
        translator = await self._pooled(
            f"translator_{source_lang}_{target_lang}",
            TRANSLATOR,
            {"source_language": source_lang, "target_language": target_lang},
        )
        try:
            return await translator.translate(text)
        except Exception as e:
            raise classify_error(e) from e

    async def summarize_content(self, content: str, options: Optional[dict] = None) -> str:
        options = options or {}
        return await self._cached(
            "summarizeContent", [content, options], lambda: self._summarize(content, options)
        )

    async def _summarize(self, content: str, options: Mapping[str, Any]) -> str:
        summarizer = await self._summarizer(options)
        try:
            return await summarizer.summarize(content, context=options.get("context"))
        except Exception as e:
            raise classify_error(e) from e

    async def summarize_content_streaming(self, content: str, options: Optional[dict] = None,
                                          on_chunk: Optional[OnChunk] = None) -> str:
        options = options or {}
        summarizer = await self._summarizer(options)
        try:
            stream = summarizer.summarize_streaming(content, context=options.get("context"))
        except Exception as e:
            raise classify_error(e, fallback=StreamingError) from e
        return await consume(stream, on_chunk)

    async def rewrite_text(self, text: str, options: Optional[dict] = None) -> str:
        options = options or {}
        return await self._cached("rewriteText", [text, options], lambda: self._rewrite(text, options))

    async def _rewrite(self, text: str, options: Mapping[str, Any]) -> str:
        rewriter = await self._rewriter(options)
        try:
            return await rewriter.rewrite(text, context=options.get("context"))
        except Exception as e:
            raise classify_error(e) from e

    async def rewrite_text_streaming(self, text: str, options: Optional[dict] = None,
                                     on_chunk: Optional[OnChunk] = None) -> str:
        options = options or {}
        rewriter = await self._rewriter(options)
        try:
            stream = rewriter.rewrite_streaming(text, context=options.get("context"))
        except Exception as e:
            raise classify_error(e, fallback=StreamingError) from e
        return await consume(stream, on_chunk)

    # Prompt sessions --------------------------------------------------------
    async def get_model_params(self) -> Dict[str, float]:
        """Query the prompt model's parameter limits, falling back to defaults."""
        factory = self.runtime.get_capability(LANGUAGE_MODEL)
        params_fn = getattr(factory, "params", None)
        if params_fn is None:
            return dict(DEFAULT_MODEL_PARAMS)
        try:
            params = await params_fn()
        except Exception as e:
            logger.error(f"Error getting model params: {e}")
            return dict(DEFAULT_MODEL_PARAMS)
        if not params:
            return dict(DEFAULT_MODEL_PARAMS)
        return {key: _field(params, key) or default for key, default in DEFAULT_MODEL_PARAMS.items()}

    async def _prompt_config(self, options: Mapping[str, Any], multimodal: bool = False) -> Dict[str, Any]:
        params = await self.get_model_params()
        temperature = options.get("temperature")
        top_k = option(options, "top_k")
        config: Dict[str, Any] = {
            "temperature": (
                _clamp(float(temperature), params["max_temperature"])
                if temperature is not None else params["default_temperature"]
            ),
            "top_k": (
                int(_clamp(int(top_k), params["max_top_k"]))
                if top_k is not None else params["default_top_k"]
            ),
            "output_language": option(options, "output_language", "en"),
        }
        if multimodal:
            config["expected_inputs"] = option(
                options, "expected_inputs", [{"type": "text"}, {"type": "image"}]
            )
            config["expected_outputs"] = option(options, "expected_outputs", [{"type": "text"}])
            initial_prompts = option(options, "initial_prompts")
            if initial_prompts:
                config["initial_prompts"] = initial_prompts
        return config

    async def _open_prompt_session(self, options: Mapping[str, Any], multimodal: bool = False) -> SessionInfo:
        config = await self._prompt_config(options, multimodal)
        instance = await self._create(LANGUAGE_MODEL, config, label="Prompt API (LanguageModel)")
        return self.sessions.register(instance, config, multimodal=multimodal)

    async def create_prompt_session(self, options: Optional[dict] = None) -> PromptSessionHandle:
        info = await self._open_prompt_session(options or {})
        return PromptSessionHandle(id=info.id, config=dict(info.config))

    async def create_multimodal_prompt_session(self, options: Optional[dict] = None) -> PromptSessionHandle:
        info = await self._open_prompt_session(options or {}, multimodal=True)
        return PromptSessionHandle(id=info.id, config=dict(info.config), multimodal=True)

    async def _run_prompt(self, info: SessionInfo, input: Any, options: Mapping[str, Any],
                          user_content: Any = None) -> Any:
        """Send one prompt on a session; the caller holds ``info.lock``."""
        cancel_event: Optional[asyncio.Event] = options.get("cancel_event")
        if cancel_event is not None and cancel_event.is_set():
            raise PromptCancelledError()
        kwargs: Dict[str, Any] = {}
        constraint = option(options, "response_constraint")
        if constraint is not None:
            kwargs["response_constraint"] = constraint
            kwargs["omit_response_constraint_input"] = option(options, "omit_response_constraint_input", False)

        self.sessions.touch(info)
        try:
            result = await info.instance.prompt(input, signal=cancel_event, **kwargs)
        except AbortError as e:
            raise PromptCancelledError() from e
        except Exception as e:
            logger.error(f"Prompt failed on session {info.id}: {e}")
            raise classify_error(e) from e
        self.sessions.append_exchange(info, input if user_content is None else user_content, result)

        if constraint is not None:
            try:
                return json.loads(result)
            except (TypeError, ValueError):
                logger.warning("Failed to parse constrained response as JSON, returning raw text")
        return result

    async def _run_prompt_streaming(self, info: SessionInfo, input: Any, options: Mapping[str, Any],
                                    on_chunk: Optional[OnChunk], user_content: Any = None) -> str:
        cancel_event: Optional[asyncio.Event] = options.get("cancel_event")
        self.sessions.touch(info)
        try:
            stream = info.instance.prompt_streaming(input, signal=cancel_event)
        except Exception as e:
            raise classify_error(e, fallback=StreamingError) from e
        text = await consume(stream, on_chunk, cancel_event)
        self.sessions.append_exchange(info, input if user_content is None else user_content, text)
        return text

    async def prompt(self, session: SessionRef, input: Any, options: Optional[dict] = None) -> Any:
        info = self.sessions.get(session_id_of(session))
        async with info.lock:
            return await self._run_prompt(info, input, options or {})

    async def prompt_streaming(self, session: SessionRef, input: Any, options: Optional[dict] = None,
                               on_chunk: Optional[OnChunk] = None) -> str:
        info = self.sessions.get(session_id_of(session))
        async with info.lock:
            return await self._run_prompt_streaming(info, input, options or {}, on_chunk)

    # Generation -------------------------------------------------------------
    def _generate_options(self, options: Mapping[str, Any]) -> Dict[str, Any]:
        temperature = options.get("temperature")
        top_k = option(options, "top_k")
        return {
            "temperature": GENERATE_TEMPERATURE if temperature is None else temperature,
            "top_k": GENERATE_TOP_K if top_k is None else top_k,
            "output_language": option(options, "output_language", "en"),
        }

    async def generate_content(self, prompt: str, options: Optional[dict] = None) -> str:
        options = options or {}
        info = await self._open_prompt_session(self._generate_options(options))
        try:
            async with info.lock:
                return await self._run_prompt(info, prompt, options)
        finally:
            await self.sessions.destroy(info.id)

    async def generate_content_streaming(self, prompt: str, options: Optional[dict] = None,
                                         on_chunk: Optional[OnChunk] = None) -> str:
        options = options or {}
        info = await self._open_prompt_session(self._generate_options(options))
        try:
            async with info.lock:
                return await self._run_prompt_streaming(info, prompt, options, on_chunk)
        finally:
            await self.sessions.destroy(info.id)

    # Multimodal -------------------------------------------------------------
    async def _append_media(self, info: SessionInfo, text: str, blob: MediaBlob, kind: str) -> List[Dict[str, Any]]:
        content = [{"type": "text", "value": text}, {"type": kind, "value": blob}]
        try:
            await info.instance.append([{"role": "user", "content": content}])
        except Exception as e:
            logger.error(f"Failed to append {kind} to session {info.id}: {e}")
            raise classify_error(e) from e
        return content

    async def _prompt_with_media(self, session: SessionRef, text: str, blob: MediaBlob, kind: str,
                                 options: Mapping[str, Any], on_chunk: Optional[OnChunk] = None,
                                 streaming: bool = False) -> str:
        info = self.sessions.get(session_id_of(session))
        follow_up = option(options, "follow_up_prompt", "")
        async with info.lock:
            content = await self._append_media(info, text, blob, kind)
            if streaming:
                return await self._run_prompt_streaming(info, follow_up, options, on_chunk, user_content=content)
            return await self._run_prompt(info, follow_up, options, user_content=content)

    async def prompt_with_image(self, session: SessionRef, text: str, image: MediaInput,
                                options: Optional[dict] = None) -> str:
        blob = await normalize_image(image, transport=self._media_transport)
        return await self._prompt_with_media(session, text, blob, "image", options or {})

    async def prompt_with_image_streaming(self, session: SessionRef, text: str, image: MediaInput,
                                          options: Optional[dict] = None,
                                          on_chunk: Optional[OnChunk] = None) -> str:
        blob = await normalize_image(image, transport=self._media_transport)
        return await self._prompt_with_media(
            session, text, blob, "image", options or {}, on_chunk=on_chunk, streaming=True
        )

    async def prompt_with_audio(self, session: SessionRef, text: str, audio: Union[bytes, MediaBlob],
                                options: Optional[dict] = None) -> str:
        blob = normalize_audio(audio)
        return await self._prompt_with_media(session, text, blob, "audio", options or {})
