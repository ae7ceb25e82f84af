"""Microphone capture for speech recognition."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Protocol

import sounddevice as sd

LOGGER = logging.getLogger(__name__)


class FrameConsumer(Protocol):
    """Receives raw PCM frames on the audio thread."""

    def __call__(self, frame: bytes) -> None: ...


@dataclass(slots=True)
class CaptureConfig:
    """Microphone capture configuration."""

    sample_rate: int = 16_000
    channels: int = 1
    frame_duration_ms: int = 30
    device_name: str | None = None


class MicrophoneCapture:
    """Opens the input device and forwards every fixed-size int16 frame."""

    def __init__(self, config: CaptureConfig | None = None) -> None:
        self.config = config or CaptureConfig()
        self._consumer: Callable[[bytes], None] | None = None
        self._stream: sd.RawInputStream | None = None
        self._lock = Lock()

    def bind(self, consumer: FrameConsumer | None) -> None:
        """Register (or clear) the frame consumer."""
        self._consumer = consumer

    def start(self) -> None:
        """Open the input stream; raises ``sd.PortAudioError`` when the device is unusable."""
        if self._consumer is None:
            raise RuntimeError("No audio consumer registered.")
        with self._lock:
            if self._stream is not None:
                return
            frame_size = int(self.config.sample_rate * self.config.frame_duration_ms / 1000)
            stream = sd.RawInputStream(
                samplerate=self.config.sample_rate,
                channels=self.config.channels,
                dtype="int16",
                blocksize=frame_size,
                callback=self._on_frame,
                device=self.config.device_name,
            )
            stream.start()
            self._stream = stream
            LOGGER.debug("Microphone capture started.")

    def stop(self) -> None:
        """Close the input stream."""
        with self._lock:
            stream, self._stream = self._stream, None
        if stream is None:
            return
        stream.stop()
        stream.close()
        LOGGER.debug("Microphone capture stopped.")

    def _on_frame(self, indata: bytes, frames: int, time, status) -> None:  # type: ignore[override]  # noqa: ANN401
        if status:  # pragma: no cover
            LOGGER.warning("Microphone status: %s", status)
        consumer = self._consumer
        if consumer is not None:
            consumer(bytes(indata))
