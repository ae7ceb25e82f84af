"""Runtime configuration for the assistant."""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class RuntimeConfig(BaseSettings):
    """Process-level tuning read from the environment (prefix ``HOLO_``)."""

    model_config = SettingsConfigDict(
        env_prefix="HOLO_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="allow",
    )

    # HTTP
    request_timeout_sec: float = 15.0
    stream_read_timeout_sec: float = 120.0

    # Logs
    log_dir: str | None = None
    log_level: str = "INFO"
    log_rotate_mb: int = 5
    log_retention_days: int = 7

    # Persisted user settings
    settings_path: str | None = None

    # Standby restart guard
    standby_burst_restarts: int = 3
    standby_burst_window_sec: float = 2.0
    standby_backoff_initial_sec: float = 0.5
    standby_backoff_max_sec: float = 8.0
    standby_max_consecutive_restarts: int = 100

    # Audio
    input_device: str | None = None
    output_device: str | None = None
    vad_aggressiveness: int = 2
    asr_model: str = "base.en"
    asr_device: str = "cpu"
    asr_compute_type: str = "int8"
    asr_language: str = "en"
    tts_model_path: str | None = None
    tts_length_scale: float = 1.0
    recognizer_silence_ms: int = 800
    recognizer_session_timeout_sec: float = 8.0


@lru_cache()
def get_config() -> RuntimeConfig:
    """Return a cached RuntimeConfig instance."""
    return RuntimeConfig()
