"""Assembly of the speech stack and the conversation orchestrator."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional

from .config.paths import models_dir
from .config.settings import Settings
from .core.config import RuntimeConfig, get_config
from .core.errors import AssistantError
from .runtime.controller import ChatGateway, ConversationOrchestrator
from .runtime.speech import SpeechEngine, StandbyRestartGuard

logger = logging.getLogger(__name__)


class SilentRecognizer:
    """Recognizer for text-only sessions: accepts start/stop, never hears anything."""

    def __init__(self) -> None:
        self.continuous = False
        self.interim_results = False
        self.on_result = None
        self.on_end = None
        self.on_error = None

    def start(self) -> None:
        return None

    def stop(self) -> None:
        return None


class SilentSynthesizer:
    """Synthesizer for text-only sessions: every utterance ends on the next loop turn."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self._generation = 0

    def speak(
        self,
        text: str,
        on_end: Callable[[], None],
        on_error: Callable[[Exception], None],
    ) -> None:
        loop = self._loop or asyncio.get_running_loop()
        generation = self._generation
        loop.call_soon(self._finish, generation, on_end)

    def cancel(self) -> None:
        self._generation += 1

    def _finish(self, generation: int, on_end: Callable[[], None]) -> None:
        if generation == self._generation:
            on_end()


def build_voice_backends(config: RuntimeConfig, loop: asyncio.AbstractEventLoop):
    """Load the local models and return ``(recognizer, synthesizer)``."""
    if not config.tts_model_path:
        raise AssistantError("No Piper voice configured; set HOLO_TTS_MODEL_PATH")

    from .audio.capture import CaptureConfig, MicrophoneCapture
    from .audio.playback import PlaybackConfig, SpeechPlayback
    from .audio.recognizer import RecognizerConfig, WhisperRecognizer
    from .audio.transcriber import FasterWhisperEngine, WhisperConfig
    from .audio.tts import PiperConfig, PiperSynthesizer, PiperTTS
    from .audio.vad import VADConfig, VoiceActivityDetector

    logger.info("Loading speech models asr=%s tts=%s", config.asr_model, config.tts_model_path)
    engine = FasterWhisperEngine(
        WhisperConfig(
            model=config.asr_model,
            device=config.asr_device,
            compute_type=config.asr_compute_type,
            language=config.asr_language or None,
        )
    )
    recognizer = WhisperRecognizer(
        engine,
        MicrophoneCapture(CaptureConfig(device_name=config.input_device)),
        VoiceActivityDetector(VADConfig(aggressiveness=config.vad_aggressiveness)),
        RecognizerConfig(
            silence_ms=config.recognizer_silence_ms,
            session_timeout_sec=config.recognizer_session_timeout_sec,
        ),
        loop=loop,
    )
    model_path = Path(config.tts_model_path).expanduser()
    if not model_path.is_absolute() and not model_path.exists():
        model_path = models_dir() / model_path
    try:
        tts = PiperTTS(PiperConfig(model_path=model_path, length_scale=config.tts_length_scale))
    except FileNotFoundError as exc:
        raise AssistantError(str(exc)) from exc
    synthesizer = PiperSynthesizer(tts, SpeechPlayback(PlaybackConfig(device_name=config.output_device)), loop=loop)
    return recognizer, synthesizer


def build_orchestrator(
    settings: Settings,
    gateway: ChatGateway,
    *,
    voice: bool = False,
    connection_error: Optional[str] = None,
    config: RuntimeConfig | None = None,
    loop: Optional[asyncio.AbstractEventLoop] = None,
) -> ConversationOrchestrator:
    """Wire a speech engine (real or silent) to a new orchestrator."""
    config = config or get_config()
    loop = loop or asyncio.get_running_loop()
    if voice:
        recognizer, synthesizer = build_voice_backends(config, loop)
    else:
        recognizer, synthesizer = SilentRecognizer(), SilentSynthesizer(loop)
    speech = SpeechEngine(
        recognizer,
        synthesizer,
        trigger_phrase=settings.trigger_phrase,
        restart_guard=StandbyRestartGuard.from_config(config),
        loop=loop,
    )
    return ConversationOrchestrator(settings, speech, gateway, connection_error=connection_error)
