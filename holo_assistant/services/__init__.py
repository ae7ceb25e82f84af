"""Ollama access and prompting strategies."""
