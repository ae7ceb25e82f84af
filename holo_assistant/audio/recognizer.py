"""Local speech recognizer: microphone, VAD segmentation, faster-whisper."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import sounddevice as sd

from ..services.schemas import TranscriptEvent
from .base import EndHandler, ErrorHandler, RecognizerErrorCode, ResultHandler
from .capture import MicrophoneCapture
from .transcriber import FasterWhisperEngine
from .vad import UtteranceSegmenter, VoiceActivityDetector

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RecognizerConfig:
    """Session shaping for :class:`WhisperRecognizer`."""

    silence_ms: int = 800
    min_speech_ms: int = 200
    session_timeout_sec: float = 8.0


class WhisperRecognizer:
    """Implements the ``Recognizer`` interface on top of local models.

    Audio frames arrive on the PortAudio thread and are handed to the event
    loop with ``call_soon_threadsafe``; transcription runs in the default
    executor. Every ``on_*`` handler therefore fires on the loop thread.

    A session ends naturally after ``session_timeout_sec`` without speech,
    or, in one-shot mode, right after the first utterance is transcribed.
    Only final results are produced.
    """

    def __init__(
        self,
        engine: FasterWhisperEngine,
        capture: MicrophoneCapture,
        vad: VoiceActivityDetector,
        config: RecognizerConfig | None = None,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.engine = engine
        self.capture = capture
        self.vad = vad
        self.config = config or RecognizerConfig()
        self.continuous = False
        self.interim_results = False
        self.on_result: Optional[ResultHandler] = None
        self.on_end: Optional[EndHandler] = None
        self.on_error: Optional[ErrorHandler] = None

        self._loop = loop
        self._segmenter = UtteranceSegmenter(
            frame_ms=capture.config.frame_duration_ms,
            silence_ms=self.config.silence_ms,
            min_speech_ms=self.config.min_speech_ms,
        )
        self._active = False
        self._generation = 0
        self._timeout: Optional[asyncio.TimerHandle] = None
        self._heard_speech = False

    # ------------------------------------------------------------------ #
    # Recognizer interface
    # ------------------------------------------------------------------ #
    def start(self) -> None:
        if self._active:
            return
        loop = self._loop or asyncio.get_running_loop()
        self._loop = loop
        self._generation += 1
        generation = self._generation
        self._segmenter.reset()
        self._heard_speech = False
        self._active = True
        self.capture.bind(lambda frame: loop.call_soon_threadsafe(self._on_frame, generation, frame))
        try:
            self.capture.start()
        except (sd.PortAudioError, OSError) as exc:
            logger.error("Unable to open the microphone: %s", exc)
            self._active = False
            self.capture.bind(None)
            self._emit_error(RecognizerErrorCode.NOT_ALLOWED)
            return
        self._arm_timeout(generation)

    def stop(self) -> None:
        if not self._active:
            return
        self._finish(emit_end=True)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    def _finish(self, *, emit_end: bool) -> None:
        self._active = False
        self._generation += 1
        self._cancel_timeout()
        self.capture.bind(None)
        try:
            self.capture.stop()
        except sd.PortAudioError as exc:  # pragma: no cover - device vanished
            logger.warning("Error while closing the microphone: %s", exc)
        if emit_end and self.on_end:
            self.on_end()

    def _arm_timeout(self, generation: int) -> None:
        self._cancel_timeout()
        assert self._loop is not None
        self._timeout = self._loop.call_later(
            self.config.session_timeout_sec, self._on_timeout, generation
        )

    def _cancel_timeout(self) -> None:
        if self._timeout is not None:
            self._timeout.cancel()
            self._timeout = None

    def _on_timeout(self, generation: int) -> None:
        self._timeout = None
        if generation != self._generation or not self._active:
            return
        if self._segmenter.in_speech:
            self._arm_timeout(generation)
            return
        if not self.continuous and not self._heard_speech:
            self._emit_error(RecognizerErrorCode.NO_SPEECH)
        if generation == self._generation and self._active:
            self._finish(emit_end=True)

    def _on_frame(self, generation: int, frame: bytes) -> None:
        if generation != self._generation or not self._active:
            return
        sample_rate = self.capture.config.sample_rate
        utterance = self._segmenter.push(frame, self.vad.is_speech(frame, sample_rate))
        if self._segmenter.in_speech:
            self._cancel_timeout()
            return
        if utterance is None:
            # too short to keep; the session clock runs again
            if self._timeout is None:
                self._arm_timeout(generation)
            return
        self._heard_speech = True
        if not self.continuous:
            self.capture.bind(None)
            self.capture.stop()
        assert self._loop is not None
        future = self._loop.run_in_executor(None, self.engine.transcribe_pcm, utterance)
        future.add_done_callback(lambda done: self._on_transcribed(generation, done))
        if self.continuous:
            self._arm_timeout(generation)

    def _on_transcribed(self, generation: int, future: "asyncio.Future[Any]") -> None:
        if generation != self._generation or not self._active or future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            if self.continuous:
                # one lost utterance; the session keeps listening
                logger.warning("Transcription failed, still listening: %s", exc)
                return
            logger.error("Transcription failed: %s", exc)
            self._emit_error(RecognizerErrorCode.ENGINE)
            if generation == self._generation and self._active:
                self._finish(emit_end=True)
            return
        text = str(future.result() or "").strip()
        if text and self.on_result:
            self.on_result(TranscriptEvent(text=text, final=True))
        if not self.continuous and generation == self._generation and self._active:
            self._finish(emit_end=True)

    def _emit_error(self, code: RecognizerErrorCode) -> None:
        if self.on_error:
            self.on_error(code.value)
