"""Speech engine: wake-phrase standby, one-shot capture and queued speech output."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import deque
from typing import Callable, Optional

from ..audio.base import Recognizer, RecognizerErrorCode, Synthesizer
from ..config.settings import normalize_trigger
from ..core.config import RuntimeConfig
from ..core.errors import (
    PERMISSION_DENIED_MESSAGE,
    AssistantError,
    MicrophonePermissionError,
    RecognitionError,
)
from ..services.schemas import TranscriptEvent
from ..state.app_state import SpeechState

logger = logging.getLogger(__name__)

StateListener = Callable[[SpeechState, SpeechState], None]

_SENTENCE_RE = re.compile(r"[^.!?\n]+[.!?\n]*|[.!?\n]+")


def split_sentences(text: str) -> list[str]:
    """Cut text after ``.``, ``!``, ``?`` and newlines, dropping blank pieces."""
    return [fragment.strip() for fragment in _SENTENCE_RE.findall(text) if fragment.strip()]


class StandbyRestartGuard:
    """Throttles the automatic restart of standby recognition.

    A few restarts inside ``window`` seconds go through immediately; past that
    each restart waits twice as long as the previous one, up to
    ``max_backoff``. After ``max_consecutive`` empty sessions (0 disables the
    limit) :meth:`next_delay` returns ``None``. Any recognition result resets
    the guard.
    """

    def __init__(
        self,
        *,
        burst: int = 3,
        window: float = 2.0,
        initial_backoff: float = 0.5,
        max_backoff: float = 8.0,
        max_consecutive: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.burst = burst
        self.window = window
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.max_consecutive = max_consecutive
        self._clock = clock
        self._recent: deque[float] = deque()
        self._consecutive = 0
        self._throttled = 0

    @classmethod
    def from_config(cls, config: RuntimeConfig) -> "StandbyRestartGuard":
        return cls(
            burst=config.standby_burst_restarts,
            window=config.standby_burst_window_sec,
            initial_backoff=config.standby_backoff_initial_sec,
            max_backoff=config.standby_backoff_max_sec,
            max_consecutive=config.standby_max_consecutive_restarts,
        )

    def reset(self) -> None:
        self._recent.clear()
        self._consecutive = 0
        self._throttled = 0

    def next_delay(self) -> Optional[float]:
        """Seconds to wait before the next restart, or None to give up."""
        now = self._clock()
        self._consecutive += 1
        if self.max_consecutive and self._consecutive > self.max_consecutive:
            return None
        while self._recent and now - self._recent[0] > self.window:
            self._recent.popleft()
        self._recent.append(now)
        if len(self._recent) <= self.burst:
            return 0.0
        delay = min(self.max_backoff, self.initial_backoff * (2 ** self._throttled))
        self._throttled += 1
        return delay


class SpeechEngine:
    """Owns the authoritative :class:`SpeechState`.

    Only one recognition session exists at a time. Starting a session always
    detaches the previous session's handlers before stopping it, and every
    handler also checks its session id, so a late event from an old session
    cannot touch the new one.

    The sentence queue is FIFO. ``speak`` while playback is running only
    enqueues. State is ``speaking`` while playback runs and no recognition
    session is active; when the queue drains it falls back to the active
    session (if any) or ``idle``.
    """

    def __init__(
        self,
        recognizer: Recognizer,
        synthesizer: Synthesizer,
        *,
        trigger_phrase: str = "",
        on_activation: Optional[Callable[[], None]] = None,
        on_transcript: Optional[Callable[[str], None]] = None,
        restart_guard: Optional[StandbyRestartGuard] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._recognizer = recognizer
        self._synthesizer = synthesizer
        self._trigger_phrase = normalize_trigger(trigger_phrase)
        self.on_activation = on_activation
        self.on_transcript = on_transcript
        self._restart_guard = restart_guard or StandbyRestartGuard()
        self._loop = loop

        self._state = SpeechState.IDLE
        self._listeners: list[StateListener] = []
        self._permission_error: Optional[MicrophonePermissionError] = None
        self._last_error: Optional[AssistantError] = None

        self._session: Optional[SpeechState] = None
        self._session_id = 0
        self._wake_detected = False
        self._transcript_delivered = False
        self._restart_handle: Optional[asyncio.TimerHandle] = None

        self._queue: deque[str] = deque()
        self._playing = False
        self._utterance_token = 0

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #
    @property
    def state(self) -> SpeechState:
        return self._state

    @property
    def permission_error(self) -> Optional[str]:
        """Message of the sticky microphone permission failure, if any."""
        return str(self._permission_error) if self._permission_error is not None else None

    @property
    def last_error(self) -> Optional[AssistantError]:
        return self._last_error

    @property
    def pending(self) -> tuple[str, ...]:
        """Fragments waiting to be spoken (excluding the one playing)."""
        return tuple(self._queue)

    @property
    def is_playing(self) -> bool:
        return self._playing

    @property
    def trigger_phrase(self) -> str:
        return self._trigger_phrase

    @trigger_phrase.setter
    def trigger_phrase(self, phrase: str) -> None:
        self._trigger_phrase = normalize_trigger(phrase)

    def add_state_listener(self, listener: StateListener) -> None:
        """Register ``listener(previous, current)`` for every state change."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------ #
    # Recognition
    # ------------------------------------------------------------------ #
    def start_standby(self) -> None:
        """Listen continuously for the trigger phrase."""
        if self._permission_error:
            logger.debug("Standby ignored: %s", self._permission_error)
            return
        self._teardown_recognition()
        if not self._trigger_phrase:
            logger.warning("No trigger phrase configured; standby disabled")
            self._settle()
            return
        self._restart_guard.reset()
        self._begin_session(SpeechState.STANDBY)

    def start_listening(self) -> None:
        """Capture a single utterance. The speech queue is left untouched."""
        if self._permission_error:
            logger.debug("Listening ignored: %s", self._permission_error)
            return
        self._teardown_recognition()
        self._begin_session(SpeechState.LISTENING)

    def stop(self) -> None:
        """Tear down any recognition session. Pending speech keeps playing."""
        self._teardown_recognition()
        self._settle()

    def clear_permission_error(self) -> None:
        """Explicit user action re-enabling recognition after a denial."""
        if self._permission_error:
            logger.info("Microphone permission error cleared")
        self._permission_error = None

    # ------------------------------------------------------------------ #
    # Speech output
    # ------------------------------------------------------------------ #
    def speak(self, text: str) -> None:
        """Queue ``text`` sentence by sentence; start playback if idle."""
        fragments = split_sentences(text)
        if not fragments:
            return
        self._queue.extend(fragments)
        if not self._playing:
            self._play_next()

    def stop_speaking(self) -> None:
        """Cancel the current utterance and drop everything queued."""
        self._queue.clear()
        if self._playing:
            self._utterance_token += 1
            self._playing = False
            try:
                self._synthesizer.cancel()
            except Exception:
                logger.exception("Failed to cancel speech synthesis")
        self._settle()

    # ------------------------------------------------------------------ #
    # Session handling
    # ------------------------------------------------------------------ #
    def _begin_session(self, kind: SpeechState) -> None:
        self._session_id += 1
        session_id = self._session_id
        self._session = kind
        self._wake_detected = False
        self._transcript_delivered = False

        recognizer = self._recognizer
        continuous = kind is SpeechState.STANDBY
        recognizer.continuous = continuous
        recognizer.interim_results = continuous
        recognizer.on_result = lambda event: self._handle_result(session_id, event)
        recognizer.on_end = lambda: self._handle_end(session_id)
        recognizer.on_error = lambda code: self._handle_error(session_id, code)
        self._set_state(kind)
        self._start_recognizer(session_id)

    def _start_recognizer(self, session_id: int) -> None:
        try:
            self._recognizer.start()
        except Exception:
            logger.exception("Recognizer failed to start")
            self._handle_error(session_id, RecognizerErrorCode.ENGINE.value)

    def _teardown_recognition(self) -> None:
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None
        if self._session is None:
            return
        recognizer = self._recognizer
        recognizer.on_result = None
        recognizer.on_end = None
        recognizer.on_error = None
        self._session = None
        self._session_id += 1
        try:
            recognizer.stop()
        except Exception:
            logger.exception("Recognizer failed to stop")

    def _is_current(self, session_id: int) -> bool:
        return self._session is not None and session_id == self._session_id

    def _handle_result(self, session_id: int, event: TranscriptEvent) -> None:
        if not self._is_current(session_id):
            return
        if self._session is SpeechState.STANDBY:
            self._restart_guard.reset()
            if self._wake_detected:
                return
            heard = " ".join(event.text.lower().split())
            if self._trigger_phrase and self._trigger_phrase in heard:
                self._wake_detected = True
                logger.info("Wake phrase detected")
                if self.on_activation:
                    self.on_activation()
            return

        if self._transcript_delivered or not event.final:
            return
        transcript = event.text.strip()
        if not transcript:
            return
        self._transcript_delivered = True
        logger.info("Transcript captured (%d chars)", len(transcript))
        if self.on_transcript:
            self.on_transcript(transcript)

    def _handle_end(self, session_id: int) -> None:
        if not self._is_current(session_id):
            return
        if self._session is SpeechState.STANDBY and not self._wake_detected:
            delay = self._restart_guard.next_delay()
            if delay is None:
                logger.warning("Standby recognizer keeps ending without input; giving up")
                self._teardown_recognition()
                self._settle()
            elif delay == 0:
                self._restart_standby(session_id)
            else:
                logger.warning("Standby recognizer ending rapidly; restarting in %.1fs", delay)
                loop = self._loop or asyncio.get_running_loop()
                self._restart_handle = loop.call_later(delay, self._restart_standby, session_id)
            return
        self._teardown_recognition()
        self._settle()

    def _restart_standby(self, session_id: int) -> None:
        self._restart_handle = None
        if not self._is_current(session_id) or self._session is not SpeechState.STANDBY:
            return
        logger.debug("Restarting standby recognition")
        self._start_recognizer(session_id)

    def _handle_error(self, session_id: int, code: str) -> None:
        if not self._is_current(session_id):
            return
        code = getattr(code, "value", code)
        if code == RecognizerErrorCode.NOT_ALLOWED.value:
            logger.error("Microphone permission denied")
            self._permission_error = MicrophonePermissionError(PERMISSION_DENIED_MESSAGE)
            self._last_error = self._permission_error
            self._teardown_recognition()
            self._settle()
            return
        if code == RecognizerErrorCode.NO_SPEECH.value:
            logger.debug("No speech detected during %s", self._session.value if self._session else "-")
            return
        logger.warning("Speech recognition error %r during %s", code, self._session.value if self._session else "-")
        self._last_error = RecognitionError(code)
        self._teardown_recognition()
        self._settle()

    # ------------------------------------------------------------------ #
    # Playback handling
    # ------------------------------------------------------------------ #
    def _play_next(self) -> None:
        if not self._queue:
            self._playing = False
            self._settle()
            return
        fragment = self._queue.popleft()
        self._playing = True
        self._utterance_token += 1
        token = self._utterance_token
        if self._session is None:
            self._set_state(SpeechState.SPEAKING)
        try:
            self._synthesizer.speak(
                fragment,
                lambda: self._utterance_done(token),
                lambda exc: self._utterance_failed(token, exc),
            )
        except Exception as exc:
            self._utterance_failed(token, exc)

    def _utterance_done(self, token: int) -> None:
        if token != self._utterance_token:
            return
        self._play_next()

    def _utterance_failed(self, token: int, exc: Exception) -> None:
        if token != self._utterance_token:
            return
        logger.warning("Speech synthesis error: %s", exc)
        self._play_next()

    # ------------------------------------------------------------------ #
    # State
    # ------------------------------------------------------------------ #
    def _settle(self) -> None:
        if self._playing and self._session is None:
            self._set_state(SpeechState.SPEAKING)
        else:
            self._set_state(self._session if self._session is not None else SpeechState.IDLE)

    def _set_state(self, new_state: SpeechState) -> None:
        old = self._state
        if old is new_state:
            return
        self._state = new_state
        logger.debug("Speech: %s -> %s", old.value, new_state.value)
        for listener in list(self._listeners):
            try:
                listener(old, new_state)
            except Exception:
                logger.exception("Speech state listener failed")
