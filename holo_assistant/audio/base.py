"""Interfaces the speech core expects from platform speech primitives."""

from __future__ import annotations

from enum import Enum
from typing import Callable, Optional, Protocol

from ..services.schemas import TranscriptEvent

ResultHandler = Callable[[TranscriptEvent], None]
EndHandler = Callable[[], None]
ErrorHandler = Callable[[str], None]


class RecognizerErrorCode(str, Enum):
    """Error codes a recognizer reports through ``on_error``."""

    NOT_ALLOWED = "not-allowed"
    NO_SPEECH = "no-speech"
    AUDIO_CAPTURE = "audio-capture"
    ABORTED = "aborted"
    ENGINE = "engine"


class Recognizer(Protocol):
    """Speech-to-text capability.

    Handlers are plain attributes; the speech engine rebinds them for every
    session and clears them before calling :meth:`stop`. Implementations must
    deliver events on the event-loop thread.
    """

    continuous: bool
    interim_results: bool
    on_result: Optional[ResultHandler]
    on_end: Optional[EndHandler]
    on_error: Optional[ErrorHandler]

    def start(self) -> None: ...

    def stop(self) -> None: ...


class Synthesizer(Protocol):
    """Text-to-speech capability playing one utterance at a time."""

    def speak(
        self,
        text: str,
        on_end: Callable[[], None],
        on_error: Callable[[Exception], None],
    ) -> None: ...

    def cancel(self) -> None: ...
