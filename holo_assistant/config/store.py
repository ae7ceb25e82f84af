"""Persistence of the user settings record."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..core.errors import AssistantError
from ..services.schemas import OllamaModel
from .paths import config_dir
from .settings import Settings, clamp_temperature, normalize_trigger

if TYPE_CHECKING:
    from ..services.ollama import InferenceGateway

logger = logging.getLogger(__name__)

CONNECTION_ERROR_MESSAGE = (
    "Failed to connect to Ollama. Please check the URL and ensure Ollama is running."
)

# On-disk key -> Settings attribute
_FIELD_MAP = {
    "ollamaUrl": "base_url",
    "selectedModel": "model_id",
    "systemPrompt": "system_prompt",
    "temperature": "temperature",
    "triggerWord": "trigger_phrase",
}


def default_settings_path() -> Path:
    """Primary path for persisted settings."""
    return config_dir() / "settings.json"


def settings_from_record(data: dict[str, Any]) -> Settings:
    """Build Settings from a stored record; unknown keys are ignored."""
    kwargs = {attr: data[key] for key, attr in _FIELD_MAP.items() if key in data and data[key] is not None}
    if "temperature" in kwargs:
        try:
            kwargs["temperature"] = float(kwargs["temperature"])
        except (TypeError, ValueError):
            kwargs.pop("temperature")
    return Settings(**kwargs)


def settings_to_record(settings: Settings) -> dict[str, Any]:
    return {key: getattr(settings, attr) for key, attr in _FIELD_MAP.items()}


class SettingsStore:
    """Owns the Settings record: loads it, persists every change, tracks models."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or default_settings_path()
        self.settings = self._load()
        self.available_models: list[OllamaModel] = []
        self.connection_error: str | None = None

    # ------------------------------------------------------------------ #
    # Setters
    # ------------------------------------------------------------------ #
    def set_base_url(self, url: str) -> None:
        self.settings.base_url = url.strip().rstrip("/")
        self.save()

    def set_model(self, model_id: str) -> None:
        self.settings.model_id = model_id.strip()
        self.save()

    def set_system_prompt(self, prompt: str) -> None:
        self.settings.system_prompt = prompt
        self.save()

    def set_temperature(self, value: float) -> None:
        self.settings.temperature = clamp_temperature(value)
        self.save()

    def set_trigger_phrase(self, phrase: str) -> None:
        self.settings.trigger_phrase = normalize_trigger(phrase)
        self.save()

    # ------------------------------------------------------------------ #
    # Models
    # ------------------------------------------------------------------ #
    async def refresh_models(self, gateway: "InferenceGateway") -> list[OllamaModel]:
        """Fetch the model list; fall back to the first model if the selection vanished."""
        self.connection_error = None
        try:
            models = await gateway.list_models(self.settings.base_url)
        except AssistantError as exc:
            logger.error("Model refresh failed: %s", exc)
            self.connection_error = CONNECTION_ERROR_MESSAGE
            self.available_models = []
            return []
        self.available_models = models
        names = [model.name for model in models]
        if names and self.settings.model_id not in names:
            logger.info("Model %s not available, selecting %s", self.settings.model_id, names[0])
            self.set_model(names[0])
        return models

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #
    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(settings_to_record(self.settings), indent=2), encoding="utf-8")

    def _load(self) -> Settings:
        if not self.path.exists():
            return Settings()
        try:
            raw_text = self.path.read_text(encoding="utf-8").lstrip("\ufeff")
            data = json.loads(raw_text)
        except (OSError, ValueError) as exc:
            logger.error("Failed to load settings from %s: %s", self.path, exc)
            return Settings()
        if not isinstance(data, dict):
            logger.error("Settings file %s does not hold an object", self.path)
            return Settings()
        return settings_from_record(data)
