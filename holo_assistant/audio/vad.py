"""Voice activity detection utilities."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Optional

import webrtcvad


_VALID_SAMPLE_RATES = (8000, 16_000, 32_000, 48_000)
_VALID_FRAME_DURATIONS_MS = (10, 20, 30)


@dataclass(slots=True)
class VADConfig:
    """WebRTC VAD configuration."""

    aggressiveness: int = 2  # 0 (sensitive) to 3 (strict)


class VoiceActivityDetector:
    """Wrapper around the WebRTC VAD implementation."""

    def __init__(self, config: VADConfig | None = None) -> None:
        self.config = config or VADConfig()
        self.config.aggressiveness = max(0, min(3, self.config.aggressiveness))
        self._vad = webrtcvad.Vad(self.config.aggressiveness)

    def is_speech(self, frame: bytes, sample_rate: int) -> bool:
        """Return True when the frame contains speech."""
        return self._vad.is_speech(self._normalize_frame(frame, sample_rate), sample_rate)

    @staticmethod
    def _normalize_frame(frame: bytes, sample_rate: int) -> bytes:
        """Pad or trim frames to the nearest length WebRTC VAD accepts."""
        if not frame or sample_rate not in _VALID_SAMPLE_RATES:
            return frame
        frame_samples = len(frame) // 2
        if frame_samples == 0:
            return frame
        expected = [sample_rate * duration // 1000 for duration in _VALID_FRAME_DURATIONS_MS]
        target_bytes = min(expected, key=lambda samples: abs(samples - frame_samples)) * 2
        if len(frame) >= target_bytes:
            return frame[:target_bytes]
        return frame + bytes(target_bytes - len(frame))


class UtteranceSegmenter:
    """Groups voiced frames into utterances closed by a run of silence.

    A short pre-roll of silent frames is kept so word onsets are not clipped.
    Utterances with less than ``min_speech_ms`` of voiced audio are dropped.
    """

    def __init__(
        self,
        *,
        frame_ms: int = 30,
        silence_ms: int = 800,
        min_speech_ms: int = 200,
        max_utterance_ms: int = 15_000,
        preroll_frames: int = 8,
    ) -> None:
        self.frame_ms = frame_ms
        self.silence_ms = silence_ms
        self.min_speech_ms = min_speech_ms
        self.max_utterance_ms = max_utterance_ms
        self._preroll: deque[bytes] = deque(maxlen=preroll_frames)
        self._buffer = bytearray()
        self._in_speech = False
        self._voiced_ms = 0
        self._total_ms = 0
        self._silence_run_ms = 0

    @property
    def in_speech(self) -> bool:
        return self._in_speech

    def reset(self) -> None:
        self._preroll.clear()
        self._buffer.clear()
        self._in_speech = False
        self._voiced_ms = 0
        self._total_ms = 0
        self._silence_run_ms = 0

    def push(self, frame: bytes, is_speech: bool) -> Optional[bytes]:
        """Feed one frame; return the PCM of an utterance when one closes."""
        if not self._in_speech:
            if not is_speech:
                self._preroll.append(frame)
                return None
            self._in_speech = True
            for buffered in self._preroll:
                self._buffer.extend(buffered)
            self._total_ms = len(self._preroll) * self.frame_ms
            self._preroll.clear()

        self._buffer.extend(frame)
        self._total_ms += self.frame_ms
        if is_speech:
            self._voiced_ms += self.frame_ms
            self._silence_run_ms = 0
        else:
            self._silence_run_ms += self.frame_ms

        if self._silence_run_ms >= self.silence_ms or self._total_ms >= self.max_utterance_ms:
            return self._close()
        return None

    def _close(self) -> Optional[bytes]:
        audio = bytes(self._buffer)
        voiced = self._voiced_ms
        self.reset()
        if voiced < self.min_speech_ms:
            return None
        return audio
