"""User settings record for the assistant."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_MODEL = "gemma2:2b"
DEFAULT_SYSTEM_PROMPT = "You are a helpful and concise AI assistant."
DEFAULT_TEMPERATURE = 0.7
DEFAULT_TRIGGER_PHRASE = "hey assistant"

MIN_TEMPERATURE = 0.0
MAX_TEMPERATURE = 2.0


def clamp_temperature(value: float) -> float:
    """Clamp a sampling temperature to the supported range."""
    return max(MIN_TEMPERATURE, min(MAX_TEMPERATURE, float(value)))


def normalize_trigger(phrase: str) -> str:
    """Trigger phrases are matched case-insensitively and stored lowercase."""
    return " ".join(phrase.split()).lower()


@dataclass(slots=True)
class Settings:
    """Connection and conversation settings, persisted between runs."""

    base_url: str = DEFAULT_BASE_URL
    model_id: str = DEFAULT_MODEL
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    temperature: float = DEFAULT_TEMPERATURE
    trigger_phrase: str = DEFAULT_TRIGGER_PHRASE

    def __post_init__(self) -> None:
        self.base_url = self.base_url.rstrip("/")
        self.temperature = clamp_temperature(self.temperature)
        self.trigger_phrase = normalize_trigger(self.trigger_phrase)
