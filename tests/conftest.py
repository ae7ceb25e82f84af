from __future__ import annotations

from typing import Any, Callable, Optional

import pytest

from holo_assistant.config.settings import Settings
from holo_assistant.core.config import get_config
from holo_assistant.runtime.speech import SpeechEngine, StandbyRestartGuard
from holo_assistant.services.schemas import TranscriptEvent


class FakeRecognizer:
    """Recognizer driven by the test through ``emit_*``."""

    def __init__(self) -> None:
        self.continuous = False
        self.interim_results = False
        self.on_result = None
        self.on_end = None
        self.on_error = None
        self.starts = 0
        self.stops = 0
        self.active = False

    def start(self) -> None:
        self.starts += 1
        self.active = True

    def stop(self) -> None:
        self.stops += 1
        self.active = False

    def emit_result(self, text: str, final: bool = True) -> None:
        if self.on_result:
            self.on_result(TranscriptEvent(text=text, final=final))

    def emit_end(self) -> None:
        self.active = False
        if self.on_end:
            self.on_end()

    def emit_error(self, code: str) -> None:
        if self.on_error:
            self.on_error(code)


class FakeSynthesizer:
    """Synthesizer whose utterances end only when the test says so."""

    def __init__(self) -> None:
        self.spoken: list[str] = []
        self.cancelled = 0
        self._on_end: Optional[Callable[[], None]] = None
        self._on_error: Optional[Callable[[Exception], None]] = None

    @property
    def busy(self) -> bool:
        return self._on_end is not None

    def speak(self, text: str, on_end, on_error) -> None:  # noqa: ANN001
        self.spoken.append(text)
        self._on_end = on_end
        self._on_error = on_error

    def cancel(self) -> None:
        self.cancelled += 1
        self._on_end = None
        self._on_error = None

    def finish(self) -> None:
        callback, self._on_end, self._on_error = self._on_end, None, None
        assert callback is not None, "nothing is being spoken"
        callback()

    def finish_all(self) -> None:
        while self._on_end is not None:
            self.finish()

    def fail(self, exc: Exception | None = None) -> None:
        callback, self._on_end, self._on_error = self._on_error, None, None
        assert callback is not None, "nothing is being spoken"
        callback(exc or RuntimeError("tts failed"))


class FakeLoop:
    """Collects ``call_later`` requests instead of scheduling them."""

    def __init__(self) -> None:
        self.scheduled: list[tuple[float, Callable[..., Any], tuple[Any, ...]]] = []

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any):
        self.scheduled.append((delay, callback, args))
        return _Handle()

    def run_scheduled(self) -> None:
        pending, self.scheduled = self.scheduled, []
        for _delay, callback, args in pending:
            callback(*args)


class _Handle:
    def cancel(self) -> None:
        return None


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    monkeypatch.setenv("HOLO_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("HOLO_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("HOLO_SETTINGS_PATH", str(tmp_path / "home" / "settings.json"))
    get_config.cache_clear()
    yield
    get_config.cache_clear()


@pytest.fixture
def recognizer() -> FakeRecognizer:
    return FakeRecognizer()


@pytest.fixture
def synthesizer() -> FakeSynthesizer:
    return FakeSynthesizer()


@pytest.fixture
def fake_loop() -> FakeLoop:
    return FakeLoop()


@pytest.fixture
def engine(recognizer, synthesizer, fake_loop) -> SpeechEngine:
    return SpeechEngine(
        recognizer,
        synthesizer,
        trigger_phrase="hey assistant",
        restart_guard=StandbyRestartGuard(clock=lambda: 0.0),
        loop=fake_loop,
    )


@pytest.fixture
def settings() -> Settings:
    return Settings()
