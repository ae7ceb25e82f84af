"""Holographic voice assistant backed by a local Ollama server."""

from __future__ import annotations

from typing import Any

__all__ = ["run"]


def run(*args: Any, **kwargs: Any) -> Any:
    """Entry point for the ``holo`` command line (lazy import)."""
    from .cli import cli

    return cli(*args, **kwargs)
