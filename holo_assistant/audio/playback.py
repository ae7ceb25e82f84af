"""Speaker output for synthesized speech."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass

import sounddevice as sd

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class PlaybackConfig:
    """Playback configuration."""

    sample_rate: int = 22_050
    channels: int = 1
    device_name: str | None = None


class SpeechPlayback:
    """Feeds queued int16 PCM buffers to an output stream from the audio thread."""

    def __init__(self, config: PlaybackConfig | None = None) -> None:
        self.config = config or PlaybackConfig()
        self._buffer = deque[bytes]()
        self._lock = threading.RLock()
        self._stream: sd.RawOutputStream | None = None

    def play(self, pcm_data: bytes, sample_rate: int | None = None) -> None:
        """Queue a PCM buffer; reopens the stream when the voice rate changes."""
        if not pcm_data:
            return
        with self._lock:
            if sample_rate and sample_rate != self.config.sample_rate:
                self._close_stream()
                self.config.sample_rate = sample_rate
            self._ensure_stream()
            self._buffer.append(pcm_data)

    def stop(self) -> None:
        """Stop playback and drop everything still queued."""
        with self._lock:
            self._buffer.clear()
            self._close_stream()

    def duration_of(self, pcm_data: bytes, sample_rate: int | None = None) -> float:
        """Seconds of audio in an int16 buffer."""
        rate = sample_rate or self.config.sample_rate
        frame_bytes = 2 * self.config.channels
        return len(pcm_data) / float(frame_bytes * rate) if rate else 0.0

    def _close_stream(self) -> None:
        if self._stream is None:
            return
        try:
            self._stream.stop()
            self._stream.close()
        except sd.PortAudioError as exc:
            LOGGER.warning("Error while closing the output stream: %s", exc)
        self._stream = None

    def _ensure_stream(self) -> None:
        if self._stream is not None:
            if not self._stream.active:
                self._stream.start()
            return
        self._stream = sd.RawOutputStream(
            samplerate=self.config.sample_rate,
            channels=self.config.channels,
            dtype="int16",
            callback=self._on_write,
            device=self.config.device_name,
        )
        self._stream.start()

    def _on_write(self, outdata, frames: int, time, status) -> None:  # noqa: ANN001
        if status:  # pragma: no cover
            LOGGER.debug("Output stream status: %s", status)
        with self._lock:
            written = 0
            while written < len(outdata) and self._buffer:
                chunk = self._buffer.popleft()
                take = min(len(chunk), len(outdata) - written)
                outdata[written : written + take] = chunk[:take]
                if take < len(chunk):
                    self._buffer.appendleft(chunk[take:])
                written += take
            if written < len(outdata):
                outdata[written:] = b"\x00" * (len(outdata) - written)
