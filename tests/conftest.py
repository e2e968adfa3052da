"""Shared fakes and fixtures for the provider tests."""
import json
from typing import Any, Dict, List, Optional

import httpx
import pytest

from ai.providers.builtin import BuiltinAIProvider
from ai.providers.cloud import CloudAIProvider
from ai.providers.runtime import CAPABILITIES
from core.config import CloudConfig


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeHandle:
    """Stands in for every kind of runtime session handle."""

    def __init__(self, **config):
        self.config = config
        self.replies: List[Any] = []
        self.prompts: List[Any] = []
        self.appended: List[Any] = []
        self.chunks: List[Any] = ["Hel", "lo"]
        self.corrections: List[Dict[str, Any]] = []
        self.error: Optional[Exception] = None
        self.calls = 0
        self.destroyed = False

    async def _stream(self):
        for chunk in self.chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    async def prompt(self, input, signal=None, **options):
        self.calls += 1
        self.prompts.append((input, options))
        if self.error is not None:
            raise self.error
        if self.replies:
            return self.replies.pop(0)
        return f"reply to {input}"

    def prompt_streaming(self, input, signal=None):
        self.calls += 1
        self.prompts.append((input, {}))
        return self._stream()

    async def append(self, messages):
        self.appended.append(messages)

    async def proofread(self, text):
        self.calls += 1
        return {"corrections": self.corrections}

    async def translate(self, text):
        self.calls += 1
        return f"[{self.config['source_language']}->{self.config['target_language']}] {text}"

    async def summarize(self, content, context=None):
        self.calls += 1
        return f"summary of {content}"

    def summarize_streaming(self, content, context=None):
        return self._stream()

    async def rewrite(self, text, context=None):
        self.calls += 1
        return f"rewritten {text}"

    def rewrite_streaming(self, text, context=None):
        return self._stream()

    def destroy(self):
        self.destroyed = True


class FakeCapability:
    def __init__(self, availability: str = "available"):
        self.availability_value = availability
        self.probe_error: Optional[Exception] = None
        self.create_error: Optional[Exception] = None
        self.probe_options: List[Dict[str, Any]] = []
        self.handles: List[FakeHandle] = []
        self.handle_attrs: Dict[str, Any] = {}
        self.model_params: Any = None

    async def availability(self, **options):
        self.probe_options.append(options)
        if self.probe_error is not None:
            raise self.probe_error
        return self.availability_value

    async def create(self, monitor=None, **config):
        if self.create_error is not None:
            raise self.create_error
        if monitor is not None:
            monitor(0.5)
            monitor(1.0)
        handle = FakeHandle(**config)
        for name, value in self.handle_attrs.items():
            setattr(handle, name, value)
        self.handles.append(handle)
        return handle

    async def params(self):
        if isinstance(self.model_params, Exception):
            raise self.model_params
        return self.model_params


class FakeRuntime:
    def __init__(self, availability: Optional[Dict[str, str]] = None, missing=()):
        availability = availability or {}
        self.capabilities = {
            name: FakeCapability(availability.get(name, "available"))
            for name in CAPABILITIES
            if name not in missing
        }

    def get_capability(self, name):
        return self.capabilities.get(name)


def gemini_reply(text: str, finish_reason: str = "STOP") -> Dict[str, Any]:
    return {
        "candidates": [
            {"content": {"role": "model", "parts": [{"text": text}]}, "finishReason": finish_reason}
        ]
    }


def sse_body(*deltas: str) -> str:
    return "".join(f"data: {json.dumps(gemini_reply(delta))}\n\n" for delta in deltas)


class GeminiStub:
    """Records requests and answers them from a queue of canned replies."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.replies: List[Any] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        reply = self.replies.pop(0) if self.replies else gemini_reply("ok")
        if isinstance(reply, httpx.Response):
            return reply
        if isinstance(reply, str):
            return httpx.Response(200, text=reply, headers={"content-type": "text/event-stream"})
        return httpx.Response(200, json=reply)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def body(self, index: int = -1) -> Dict[str, Any]:
        return json.loads(self.requests[index].content)

    def prompt_text(self, index: int = -1) -> str:
        return self.body(index)["contents"][-1]["parts"][0]["text"]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def builtin(runtime, clock):
    return BuiltinAIProvider(runtime, clock=clock)


@pytest.fixture
def gemini():
    return GeminiStub()


@pytest.fixture
def cloud(gemini, clock):
    return CloudAIProvider(api_key="test-key", config=CloudConfig(), transport=gemini.transport, clock=clock)
