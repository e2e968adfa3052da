"""Exception hierarchy for the AI provider layer.

Every error that leaves a provider or the router is an ``AssistError`` with a
machine-readable ``kind`` and a short ``user_message`` for UI collaborators.
"""
from __future__ import annotations

from typing import Any, Optional


class AssistError(Exception):
    """Base exception class for the AI provider layer."""

    kind: str = "unknown"
    default_message: str = "An error occurred"
    default_user_message: str = "Something went wrong. Please try again."

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[str] = None,
        user_message: Optional[str] = None,
    ) -> None:
        self.message = message or self.default_message
        self.details = details
        self.user_message = user_message or self.default_user_message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        result = {
            "kind": self.kind,
            "message": self.message,
            "user_message": self.user_message,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(kind={self.kind!r}, message={self.message!r})"


class ConfigError(AssistError):
    """Raised when settings or configuration values are invalid."""
    kind = "config"
    default_message = "Configuration error"
    default_user_message = "The provider settings are invalid."


class RegistrationError(AssistError):
    """Raised for unknown provider names or when nothing is registered."""
    kind = "registration"
    default_message = "No providers registered"
    default_user_message = "No AI provider is configured."


class ProviderUnavailableError(AssistError):
    """Raised when the requested provider (and any fallback) is unavailable."""
    kind = "unavailable"
    default_message = "Provider is not available"
    default_user_message = "The selected AI provider is not available."


class ApiUnavailableError(AssistError):
    kind = "api_unavailable"
    default_message = "API not available"
    default_user_message = "This AI feature is not available. Please try using Cloud API instead."


class SessionCreationError(AssistError):
    kind = "session_creation_failed"
    default_message = "Failed to create session"
    default_user_message = "Failed to create an AI session. Please try again."


class DownloadFailedError(AssistError):
    kind = "download_failed"
    default_message = "Model download failed"
    default_user_message = "Failed to download the on-device model. Please try again or use Cloud API."


class PromptExecutionError(AssistError):
    kind = "prompt_execution_failed"
    default_message = "Prompt execution failed"
    default_user_message = "Prompt execution failed. Please try again."


class StreamingError(AssistError):
    kind = "streaming_error"
    default_message = "Streaming failed"
    default_user_message = "Streaming generation failed. Please try again."


class InvalidSessionError(AssistError):
    """Raised for destroyed or unknown session ids. Never retried."""
    kind = "invalid_session"
    default_message = "Invalid or expired session"
    default_user_message = "Session is invalid or expired. Please create a new session."


class PromptCancelledError(AssistError):
    """Terminal outcome of a cancelled prompt, surfaced through the error channel."""
    kind = "cancelled"
    default_message = "Prompt cancelled"
    default_user_message = "Prompt was cancelled."


class MalformedResponseError(AssistError):
    """The backend reply failed the response unwrapping contract.

    ``reason`` names the step that failed: ``missing_candidates``,
    ``missing_content``, ``missing_parts``, ``empty_parts`` or ``missing_text``.
    """
    kind = "malformed_response"
    default_message = "API returned unexpected response format"
    default_user_message = "The AI service returned an unexpected response."

    def __init__(self, reason: str, message: Optional[str] = None, **kwargs: Any) -> None:
        self.reason = reason
        super().__init__(message or f"{self.default_message}: {reason.replace('_', ' ')}", **kwargs)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["reason"] = self.reason
        return result


class ContentBlockedError(AssistError):
    kind = "content_blocked"
    default_message = "Content blocked"
    default_user_message = "The request was blocked by the content policy. Please try with different content."

    def __init__(self, finish_reason: str, **kwargs: Any) -> None:
        self.finish_reason = finish_reason
        super().__init__(
            f"Content blocked: {finish_reason}. Please try with different content.", **kwargs
        )


# Errors the router must never retry on the alternate provider.
NON_RETRYABLE_ERRORS = (RegistrationError, InvalidSessionError, PromptCancelledError)


def classify_error(exc: BaseException, fallback: type[AssistError] = PromptExecutionError) -> AssistError:
    """Map an arbitrary backend exception onto the error taxonomy.

    ``AssistError`` instances are returned unchanged. Other exceptions are
    classified by message keywords, the same way the on-device runtime reports
    its failures; ``fallback`` is used when nothing matches.
    """
    if isinstance(exc, AssistError):
        return exc

    text = str(exc)
    lowered = text.lower()
    name = type(exc).__name__

    if "invalid or expired session" in lowered:
        cls: type[AssistError] = InvalidSessionError
    elif "not available" in lowered:
        cls = ApiUnavailableError
    elif name == "AbortError" or "aborterror" in lowered or "cancelled" in lowered:
        cls = PromptCancelledError
    elif "download" in lowered:
        cls = DownloadFailedError
    elif "session" in lowered:
        cls = SessionCreationError
    elif "streaming" in lowered:
        cls = StreamingError
    elif "prompt" in lowered:
        cls = PromptExecutionError
    else:
        cls = fallback

    error = cls(text or cls.default_message, details=name)
    error.__cause__ = exc
    return error
