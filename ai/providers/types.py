"""Shared data types for AI providers and the provider manager."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class Availability(str, Enum):
    """Availability of a single on-device capability."""
    AVAILABLE = "available"
    DOWNLOADABLE = "downloadable"
    DOWNLOADING = "downloading"
    UNAVAILABLE = "unavailable"

    @classmethod
    def from_raw(cls, raw: Any) -> "Availability":
        """Map runtime-reported values (old and new spellings) onto the enum."""
        if raw in ("readily", "available"):
            return cls.AVAILABLE
        if raw in ("after-download", "downloadable"):
            return cls.DOWNLOADABLE
        if raw == "downloading":
            return cls.DOWNLOADING
        return cls.UNAVAILABLE


@dataclass
class AvailabilityStatus:
    supported: bool
    availability: Availability
    last_checked: float = field(default_factory=time.time)
    error: Optional[str] = None

    @property
    def usable(self) -> bool:
        return self.availability in (Availability.AVAILABLE, Availability.DOWNLOADABLE)


class ChatRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class ChatTurn:
    """One entry of a prompt session's history."""
    role: ChatRole
    content: Any
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RawText:
    """Text to be proofread as-is."""
    text: str


@dataclass(frozen=True)
class PreparedPrompt:
    """A fully-formed instruction prompt; sent to the model without re-wrapping."""
    text: str


GrammarInput = Union[RawText, PreparedPrompt]


@dataclass(frozen=True)
class MediaBlob:
    """Binary media (image or audio) with its MIME type."""
    data: bytes
    mime_type: str
    name: str = "blob"

    @property
    def kind(self) -> str:
        return self.mime_type.split("/", 1)[0]


@dataclass
class PromptSessionHandle:
    """What callers get back from ``create_prompt_session``."""
    id: str
    config: Dict[str, Any] = field(default_factory=dict)
    multimodal: bool = False


SessionRef = Union[PromptSessionHandle, str]


def session_id_of(session: SessionRef) -> str:
    return session if isinstance(session, str) else session.id


FEATURE_NAMES = ("grammar", "translation", "summarization", "rewriting", "generation", "chat")


class ResponseMetadata(BaseModel):
    processing_time: float = Field(..., description="Seconds spent serving the call")
    cached: bool = False
    fallback: bool = False


class ProviderResponse(BaseModel):
    """Normalized envelope returned by every ProviderManager operation.

    ``data`` is the raw provider result and is defined by the operation, not
    by the envelope.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool = True
    provider: str
    data: Any = None
    error: Optional[Dict[str, Any]] = None
    metadata: ResponseMetadata


Corrections = List[Dict[str, Any]]
