"""Filesystem helpers for the assistant."""

from __future__ import annotations

import os
from pathlib import Path


def app_root() -> Path:
    """Return the per-user data root (``HOLO_HOME`` overrides it)."""
    override = os.environ.get("HOLO_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".holo_assistant"


def config_dir() -> Path:
    """Directory storing the persisted settings record."""
    root = app_root() / "config"
    root.mkdir(parents=True, exist_ok=True)
    return root


def log_dir() -> Path:
    """Directory receiving the JSON log files."""
    return app_root() / "logs"


def models_dir() -> Path:
    """Directory storing speech models."""
    root = app_root() / "models"
    root.mkdir(parents=True, exist_ok=True)
    return root
