"""Coordinates the speech engine, the conversation history and the inference gateway."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Sequence

from ..config.settings import Settings
from ..core.errors import format_chat_error
from ..services.schemas import ChatMessage, MessageRole
from ..state.app_state import AvatarPose, ChatMode, SpeechState, avatar_pose, status_text
from .speech import SpeechEngine

logger = logging.getLogger(__name__)

ModeCallback = Callable[[ChatMode], None]
MessagesCallback = Callable[[Sequence[ChatMessage]], None]


class ChatGateway(Protocol):
    """Subset of :class:`InferenceGateway` the orchestrator relies on."""

    def stream_chat(
        self,
        base_url: str,
        model_id: str,
        history: Sequence[ChatMessage],
        system_prompt: str,
        temperature: float,
        on_chunk: Callable[[str], None],
        on_complete: Callable[[], None],
        on_error: Callable[[Exception], None],
    ) -> Any: ...

    def abort(self) -> bool: ...


class ChatEvent(str, Enum):
    """Inputs of the conversation state machine."""

    WAKE = "wake"
    TRANSCRIPT = "transcript"
    SUBMIT = "submit"
    LISTEN_ENDED = "listen_ended"
    SPEECH_STARTED = "speech_started"
    SPEECH_ENDED = "speech_ended"
    STREAM_COMPLETE = "stream_complete"


@dataclass(slots=True, frozen=True)
class Transition:
    """Target mode, optional effect method and optional guard method."""

    target: ChatMode
    effect: Optional[str] = None
    guard: Optional[str] = None


# The first transition whose guard passes wins; unlisted pairs are ignored.
TRANSITIONS: dict[tuple[ChatMode, ChatEvent], tuple[Transition, ...]] = {
    (ChatMode.STANDBY, ChatEvent.WAKE): (Transition(ChatMode.LISTENING, "_silence"),),
    (ChatMode.STANDBY, ChatEvent.SUBMIT): (Transition(ChatMode.RESPONDING, "_interrupt_and_respond"),),
    (ChatMode.LISTENING, ChatEvent.TRANSCRIPT): (Transition(ChatMode.RESPONDING, "_respond"),),
    (ChatMode.LISTENING, ChatEvent.LISTEN_ENDED): (Transition(ChatMode.STANDBY),),
    (ChatMode.RESPONDING, ChatEvent.SPEECH_STARTED): (Transition(ChatMode.SPEAKING),),
    (ChatMode.RESPONDING, ChatEvent.STREAM_COMPLETE): (Transition(ChatMode.STANDBY),),
    (ChatMode.SPEAKING, ChatEvent.SPEECH_ENDED): (
        Transition(ChatMode.RESPONDING, guard="_is_streaming"),
        Transition(ChatMode.STANDBY),
    ),
    (ChatMode.SPEAKING, ChatEvent.SUBMIT): (Transition(ChatMode.RESPONDING, "_interrupt_and_respond"),),
}


class ConversationOrchestrator:
    """Owns the single authoritative :class:`ChatMode`.

    Speech engine notifications, gateway callbacks and user actions are all
    turned into :class:`ChatEvent` messages and processed one at a time, in
    order, through :data:`TRANSITIONS`. Events raised while a transition runs
    are queued behind it.
    """

    def __init__(
        self,
        settings: Settings,
        speech: SpeechEngine,
        gateway: ChatGateway,
        *,
        connection_error: Optional[str] = None,
    ) -> None:
        self.settings = settings
        self._speech = speech
        self._gateway = gateway
        self._connection_error = connection_error

        self._mode = ChatMode.STANDBY
        self._messages: list[ChatMessage] = []
        self._events: deque[tuple[ChatEvent, Any]] = deque()
        self._dispatching = False
        self._streaming = False
        self._turn = 0
        self._closed = False

        self._mode_callback: Optional[ModeCallback] = None
        self._messages_callback: Optional[MessagesCallback] = None

        speech.trigger_phrase = settings.trigger_phrase
        speech.on_activation = self.handle_activation
        speech.on_transcript = self.handle_transcript
        speech.add_state_listener(self._on_speech_state)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    @property
    def mode(self) -> ChatMode:
        return self._mode

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        return tuple(self._messages)

    @property
    def speech(self) -> SpeechEngine:
        return self._speech

    @property
    def streaming(self) -> bool:
        return self._streaming

    @property
    def chat_enabled(self) -> bool:
        """Text entry requires a selected model and a reachable backend."""
        return bool(self.settings.model_id) and not self._connection_error

    @property
    def voice_enabled(self) -> bool:
        return self.chat_enabled and not self._speech.permission_error

    def set_mode_callback(self, callback: Optional[ModeCallback]) -> None:
        """Register a callback receiving every mode change."""
        self._mode_callback = callback

    def set_messages_callback(self, callback: Optional[MessagesCallback]) -> None:
        """Register a callback receiving the history whenever it changes."""
        self._messages_callback = callback

    def start(self) -> None:
        """Apply the current mode to the speech engine."""
        self._enter(self._mode)

    def set_connection_error(self, message: Optional[str]) -> None:
        """Record (or clear) a backend connection failure and re-apply the mode."""
        self._connection_error = message
        self._reapply_idle_mode()

    def update_settings(self, settings: Settings) -> None:
        self.settings = settings
        self._speech.trigger_phrase = settings.trigger_phrase
        self._reapply_idle_mode()

    def clear_permission_error(self) -> None:
        """User acknowledged the microphone problem; try recognition again."""
        self._speech.clear_permission_error()
        self._reapply_idle_mode()

    def submit_text(self, text: str) -> bool:
        """Manual message entry. Returns False when the input was refused."""
        text = text.strip()
        if not text or self._closed or not self.chat_enabled:
            return False
        if (self._mode, ChatEvent.SUBMIT) not in TRANSITIONS:
            logger.info("Text submission refused while %s", self._mode.value)
            return False
        self.dispatch(ChatEvent.SUBMIT, text)
        return True

    def handle_activation(self) -> None:
        self.dispatch(ChatEvent.WAKE)

    def handle_transcript(self, transcript: str) -> None:
        transcript = transcript.strip()
        if transcript:
            self.dispatch(ChatEvent.TRANSCRIPT, transcript)
        else:
            self.dispatch(ChatEvent.LISTEN_ENDED)

    def shutdown(self) -> None:
        """Abort generation and silence the speech engine.

        The current turn is retired first, so the abort reported by the
        gateway is not turned into a spoken error. No event is processed
        afterwards.
        """
        self._closed = True
        self._events.clear()
        self._turn += 1
        self._streaming = False
        self._gateway.abort()
        self._speech.stop()
        self._speech.stop_speaking()

    def avatar_pose(self) -> AvatarPose:
        return avatar_pose(self._mode)

    def status_text(self) -> str:
        return status_text(
            self._mode,
            self.settings.trigger_phrase,
            permission_error=self._speech.permission_error,
            connection_error=self._connection_error,
            model_selected=bool(self.settings.model_id),
        )

    # ------------------------------------------------------------------ #
    # State machine
    # ------------------------------------------------------------------ #
    def dispatch(self, event: ChatEvent, payload: Any = None) -> None:
        """Queue an event and drain the queue unless a transition is running."""
        if self._closed:
            logger.debug("Ignoring %s after shutdown", event.value)
            return
        self._events.append((event, payload))
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._events:
                queued, data = self._events.popleft()
                self._step(queued, data)
        finally:
            self._dispatching = False

    def _step(self, event: ChatEvent, payload: Any) -> None:
        candidates = TRANSITIONS.get((self._mode, event), ())
        transition = next(
            (item for item in candidates if item.guard is None or getattr(self, item.guard)()),
            None,
        )
        if transition is None:
            logger.debug("Ignoring %s while %s", event.value, self._mode.value)
            return
        previous = self._mode
        self._mode = transition.target
        logger.debug("Chat: %s --%s--> %s", previous.value, event.value, transition.target.value)
        if transition.target is not previous:
            self._enter(transition.target)
            if self._mode_callback:
                self._mode_callback(transition.target)
        if transition.effect:
            getattr(self, transition.effect)(payload)

    def _enter(self, mode: ChatMode) -> None:
        if mode is ChatMode.STANDBY:
            if self.voice_enabled:
                self._speech.start_standby()
            else:
                self._speech.stop()
        elif mode is ChatMode.LISTENING:
            if self.voice_enabled:
                self._speech.start_listening()
            else:
                self._speech.stop()
        elif mode is ChatMode.RESPONDING:
            self._speech.stop()
        # SPEAKING leaves the engine alone so playback is not cut off.

    def _reapply_idle_mode(self) -> None:
        if self._mode in (ChatMode.STANDBY, ChatMode.LISTENING):
            self._enter(self._mode)

    def _is_streaming(self) -> bool:
        return self._streaming

    def _on_speech_state(self, previous: SpeechState, current: SpeechState) -> None:
        if current is SpeechState.SPEAKING:
            self.dispatch(ChatEvent.SPEECH_STARTED)
        elif previous is SpeechState.SPEAKING:
            self.dispatch(ChatEvent.SPEECH_ENDED)
        elif previous is SpeechState.LISTENING and current is SpeechState.IDLE:
            self.dispatch(ChatEvent.LISTEN_ENDED)

    # ------------------------------------------------------------------ #
    # Effects
    # ------------------------------------------------------------------ #
    def _silence(self, _payload: Any = None) -> None:
        self._speech.stop_speaking()

    def _interrupt_and_respond(self, text: str) -> None:
        self._speech.stop_speaking()
        self._respond(text)

    def _respond(self, text: str) -> None:
        self._messages.append(ChatMessage(MessageRole.USER, text))
        history = list(self._messages)
        placeholder = ChatMessage(MessageRole.ASSISTANT, "")
        self._messages.append(placeholder)
        self._turn += 1
        turn = self._turn
        self._streaming = True
        self._emit_messages()

        settings = self.settings
        self._gateway.stream_chat(
            settings.base_url,
            settings.model_id,
            history,
            settings.system_prompt,
            settings.temperature,
            lambda chunk: self._on_chunk(turn, placeholder, chunk),
            lambda: self._on_stream_complete(turn),
            lambda exc: self._on_stream_error(turn, placeholder, exc),
        )

    def _on_chunk(self, turn: int, message: ChatMessage, chunk: str) -> None:
        if turn != self._turn:
            return
        self._speech.speak(chunk)
        message.content += chunk
        self._emit_messages()

    def _on_stream_error(self, turn: int, message: ChatMessage, exc: Exception) -> None:
        if turn != self._turn:
            return
        logger.error("Streaming error: %s", exc)
        error_text = format_chat_error(exc)
        message.content = error_text
        self._emit_messages()
        self._speech.speak(error_text)

    def _on_stream_complete(self, turn: int) -> None:
        if turn != self._turn:
            return
        self._streaming = False
        self.dispatch(ChatEvent.STREAM_COMPLETE)

    def _emit_messages(self) -> None:
        if self._messages_callback:
            self._messages_callback(tuple(self._messages))
