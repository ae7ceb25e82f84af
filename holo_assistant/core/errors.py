"""Error taxonomy shared by the gateway, the prompting layer and the speech core."""

from __future__ import annotations

from typing import Any, Dict


class AssistantError(Exception):
    """Base class for every error raised by the assistant."""


class BackendConnectionError(AssistantError, ConnectionError):
    """Backend unreachable, or a non-2xx answer while listing models."""


class RequestTimeoutError(AssistantError, TimeoutError):
    """A request exceeded its deadline and was aborted."""


class BackendError(AssistantError):
    """Non-2xx answer (or error record) from a generation endpoint."""

    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self.body = body
        super().__init__(f"Ollama API Error: {status} - {body}")


class StreamAbortedError(AssistantError):
    """A streaming request was cancelled before it finished."""


class ExtractionError(AssistantError, ValueError):
    """No complete bracketed JSON span could be located in a response."""


class ParseError(AssistantError, ValueError):
    """The extracted JSON span is not valid JSON."""


class MicrophonePermissionError(AssistantError, PermissionError):
    """Microphone access was denied."""


class RecognitionError(AssistantError):
    """Any other speech recognition failure."""

    def __init__(self, code: str, message: str | None = None) -> None:
        self.code = code
        super().__init__(message or f"Speech recognition error: {code}")


PERMISSION_DENIED_MESSAGE = "Microphone permission denied. Please enable it in your system settings."


def format_chat_error(exc: BaseException) -> str:
    """Text used both for the replacement assistant message and for speech."""
    message = str(exc) or exc.__class__.__name__
    return f"Sorry, I encountered an error: {message}"


def error_payload(code: str, message: str, *, details: Any | None = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "error": {
            "code": code,
            "message": message,
        }
    }
    if details is not None:
        payload["error"]["details"] = details
    return payload
