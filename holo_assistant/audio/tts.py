"""Text-to-speech using Piper voices."""

from __future__ import annotations

import asyncio
import logging
import re
import unicodedata
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional

import sounddevice as sd
from piper import PiperVoice, SynthesisConfig

from .playback import SpeechPlayback

LOGGER = logging.getLogger(__name__)

_MARKUP = re.compile(r"[*_`#<>]+")


@dataclass(slots=True)
class PiperConfig:
    """Piper model configuration."""

    model_path: Path
    config_path: Path | None = None
    speaker_id: int | None = None
    length_scale: float = 1.0
    noise_scale: float = 0.667

    def resolved_config_path(self) -> Path:
        return self.config_path or self.model_path.with_name(self.model_path.name + ".json")


class PiperTTS:
    """Thin wrapper around PiperVoice."""

    def __init__(self, config: PiperConfig) -> None:
        self.config = config
        self._voice = self._load_voice(config)

    def synthesize(self, text: str) -> tuple[bytes, int]:
        """Generate int16 PCM for ``text``; returns ``(pcm, sample_rate)``."""
        pcm = bytearray()
        sample_rate = 0
        for chunk, rate, _channels in self.synthesize_stream(text):
            sample_rate = rate
            pcm += chunk
        return bytes(pcm), sample_rate

    def synthesize_stream(self, text: str) -> Iterator[tuple[bytes, int, int]]:
        """Yield audio chunks (bytes, sample_rate, channels)."""
        text = sanitize_text(text)
        if not text:
            return
        kwargs = {}
        if self.config.speaker_id is not None:
            kwargs["speaker_id"] = self.config.speaker_id
        if self.config.length_scale != 1.0:
            kwargs["length_scale"] = self.config.length_scale
        if self.config.noise_scale > 0:
            kwargs["noise_scale"] = self.config.noise_scale
        syn_config = SynthesisConfig(**kwargs) if kwargs else None
        for chunk in self._voice.synthesize(text, syn_config=syn_config):
            yield chunk.audio_int16_bytes, chunk.sample_rate, chunk.sample_channels or 1

    @staticmethod
    def _load_voice(config: PiperConfig) -> PiperVoice:
        config_path = config.resolved_config_path()
        if not config.model_path.exists():
            raise FileNotFoundError(f"Piper model not found: {config.model_path}")
        if not config_path.exists():
            raise FileNotFoundError(f"Piper config not found: {config_path}")
        return PiperVoice.load(str(config.model_path), str(config_path))


def sanitize_text(text: str) -> str:
    """Drop markdown markup so it is not read aloud."""
    cleaned = _MARKUP.sub(" ", unicodedata.normalize("NFC", text))
    return " ".join(cleaned.split())


class PiperSynthesizer:
    """Implements the ``Synthesizer`` interface with Piper and :class:`SpeechPlayback`.

    Synthesis runs in the default executor. Once the audio is queued, the end
    of the utterance is scheduled from its duration; :meth:`cancel` stops the
    output and suppresses the pending ``on_end``.
    """

    def __init__(
        self,
        tts: PiperTTS,
        playback: SpeechPlayback,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        tail_sec: float = 0.15,
    ) -> None:
        self.tts = tts
        self.playback = playback
        self.tail_sec = tail_sec
        self._loop = loop
        self._generation = 0
        self._timer: Optional[asyncio.TimerHandle] = None

    def speak(
        self,
        text: str,
        on_end: Callable[[], None],
        on_error: Callable[[Exception], None],
    ) -> None:
        loop = self._loop or asyncio.get_running_loop()
        self._loop = loop
        self._generation += 1
        generation = self._generation
        future = loop.run_in_executor(None, self.tts.synthesize, text)
        future.add_done_callback(
            lambda done: self._on_synthesized(generation, done, on_end, on_error)
        )

    def cancel(self) -> None:
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self.playback.stop()

    def _on_synthesized(
        self,
        generation: int,
        future: "asyncio.Future[tuple[bytes, int]]",
        on_end: Callable[[], None],
        on_error: Callable[[Exception], None],
    ) -> None:
        if generation != self._generation or future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            LOGGER.error("Speech synthesis failed: %s", exc)
            on_error(exc if isinstance(exc, Exception) else RuntimeError(str(exc)))
            return
        pcm, sample_rate = future.result()
        if not pcm:
            on_end()
            return
        try:
            self.playback.play(pcm, sample_rate)
        except (sd.PortAudioError, OSError) as exc:
            LOGGER.error("Audio output failed: %s", exc)
            on_error(exc)
            return
        delay = self.playback.duration_of(pcm, sample_rate) + self.tail_sec
        assert self._loop is not None
        self._timer = self._loop.call_later(delay, self._on_played, generation, on_end)

    def _on_played(self, generation: int, on_end: Callable[[], None]) -> None:
        self._timer = None
        if generation == self._generation:
            on_end()
