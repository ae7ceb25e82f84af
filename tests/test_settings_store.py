from __future__ import annotations

import json
from pathlib import Path

import pytest

from holo_assistant.config.settings import Settings
from holo_assistant.config.store import CONNECTION_ERROR_MESSAGE, SettingsStore
from holo_assistant.core.errors import BackendConnectionError
from holo_assistant.services.schemas import OllamaModel


class ModelsGateway:
    def __init__(self, names=None, error: Exception | None = None) -> None:
        self.names = names or []
        self.error = error
        self.urls: list[str] = []

    async def list_models(self, base_url: str):
        self.urls.append(base_url)
        if self.error:
            raise self.error
        return [OllamaModel(name=name) for name in self.names]


def test_missing_file_yields_defaults(tmp_path: Path):
    store = SettingsStore(tmp_path / "settings.json")
    assert store.settings == Settings()
    assert store.settings.base_url == "http://localhost:11434"
    assert store.settings.model_id == "gemma2:2b"
    assert store.settings.system_prompt == "You are a helpful and concise AI assistant."
    assert store.settings.temperature == 0.7
    assert store.settings.trigger_phrase == "hey assistant"


def test_setters_persist_with_stored_key_names(tmp_path: Path):
    path = tmp_path / "nested" / "settings.json"
    store = SettingsStore(path)
    store.set_base_url(" http://gpu-box:11434/ ")
    store.set_model("llama3")
    store.set_system_prompt("Answer in French.")
    store.set_temperature(5)
    store.set_trigger_phrase("  Hey   HOLO ")

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data == {
        "ollamaUrl": "http://gpu-box:11434",
        "selectedModel": "llama3",
        "systemPrompt": "Answer in French.",
        "temperature": 2.0,
        "triggerWord": "hey holo",
    }
    assert SettingsStore(path).settings == store.settings


def test_partial_record_falls_back_per_key(tmp_path: Path):
    path = tmp_path / "settings.json"
    path.write_text("\ufeff" + json.dumps({"selectedModel": "phi3", "temperature": "hot"}), encoding="utf-8")
    settings = SettingsStore(path).settings
    assert settings.model_id == "phi3"
    assert settings.temperature == 0.7
    assert settings.base_url == "http://localhost:11434"


@pytest.mark.parametrize("content", ["{not json", "[1, 2]"])
def test_unreadable_file_yields_defaults(tmp_path: Path, content: str):
    path = tmp_path / "settings.json"
    path.write_text(content, encoding="utf-8")
    assert SettingsStore(path).settings == Settings()


@pytest.mark.asyncio
async def test_refresh_models_selects_first_when_selection_missing(tmp_path: Path):
    store = SettingsStore(tmp_path / "settings.json")
    gateway = ModelsGateway(["llama3", "phi3"])
    models = await store.refresh_models(gateway)

    assert [m.name for m in models] == ["llama3", "phi3"]
    assert store.settings.model_id == "llama3"
    assert store.connection_error is None
    assert gateway.urls == ["http://localhost:11434"]
    assert json.loads((tmp_path / "settings.json").read_text())["selectedModel"] == "llama3"


@pytest.mark.asyncio
async def test_refresh_models_keeps_available_selection(tmp_path: Path):
    store = SettingsStore(tmp_path / "settings.json")
    await store.refresh_models(ModelsGateway(["llama3", "gemma2:2b"]))
    assert store.settings.model_id == "gemma2:2b"


@pytest.mark.asyncio
async def test_refresh_models_empty_list_keeps_selection(tmp_path: Path):
    store = SettingsStore(tmp_path / "settings.json")
    await store.refresh_models(ModelsGateway([]))
    assert store.settings.model_id == "gemma2:2b"
    assert store.available_models == []


@pytest.mark.asyncio
async def test_refresh_models_records_connection_error(tmp_path: Path):
    store = SettingsStore(tmp_path / "settings.json")
    models = await store.refresh_models(ModelsGateway(error=BackendConnectionError("refused")))
    assert models == []
    assert store.connection_error == CONNECTION_ERROR_MESSAGE

    await store.refresh_models(ModelsGateway(["gemma2:2b"]))
    assert store.connection_error is None
