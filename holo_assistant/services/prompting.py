"""Prompting strategies for constrained single-shot generation.

Each strategy composes one prompt, delegates to
:meth:`InferenceGateway.generate_once` and post-processes the raw answer.
They keep no state between calls.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from ..core.errors import ExtractionError, ParseError
from .ollama import InferenceGateway

JSON_TEMPERATURE = 0.2
TEXT_TEMPERATURE = 0.7
RICH_TEMPERATURE = 0.8
GROUNDED_TEMPERATURE = 0.5


@dataclass(slots=True)
class GenerateOptions:
    """Target backend and sampling temperature for one strategy call."""

    base_url: str
    model: str
    temperature: Optional[float] = None

    def temperature_or(self, default: float) -> float:
        return default if self.temperature is None else self.temperature


def extract_json(text: str) -> str:
    """Return the bracketed JSON span of a model answer.

    Whichever of ``{`` or ``[`` appears first decides between object and
    array; the span runs to the last matching closing bracket. Raises
    :class:`ExtractionError` when no complete span exists.
    """
    text = text.strip()
    first_brace = text.find("{")
    first_bracket = text.find("[")
    if first_brace == -1 and first_bracket == -1:
        raise ExtractionError(f"Model did not return a valid JSON object. Raw response: {text}")

    if first_brace != -1 and (first_bracket == -1 or first_brace < first_bracket):
        start, closing = first_brace, "}"
    else:
        start, closing = first_bracket, "]"
    end = text.rfind(closing)
    if end <= start:
        raise ExtractionError(f"Model did not return a valid JSON object. Raw response: {text}")
    return text[start : end + 1]


def build_json_prompt(prompt: str, schema_description: str) -> str:
    return (
        "Your response MUST be a single JSON object that adheres to the following description: "
        f'"{schema_description}". Do not include markdown fences, introductory text, explanations, '
        "or any other text. Only provide the raw JSON object.\n\n"
        f'User request: "{prompt}"'
    )


def build_constrained_prompt(text: str, task: str) -> str:
    return (
        f"{task}\n\n"
        "Your response must contain ONLY the result, with no preamble, labels, or explanation.\n\n"
        f'Text: "{text}"'
    )


def build_rich_prompt(prompt: str, persona: str, output_format: str, structure: Sequence[str] | None = None) -> str:
    full_prompt = f"As {persona}, {prompt}.\n\nGenerate a detailed response in {output_format} format."
    if structure:
        full_prompt += f"\nThe response must include the following sections: {', '.join(structure)}."
    return full_prompt


def build_grounded_prompt(context: str, question: str) -> str:
    return (
        "You are an AI assistant. Your task is to answer the user's question based ONLY on the "
        "context provided below. Do not use any external knowledge.\n\n"
        f"--- CONTEXT ---\n{context}\n\n"
        f"--- QUESTION ---\n{question}"
    )


async def generate_json(
    gateway: InferenceGateway,
    options: GenerateOptions,
    prompt: str,
    schema_description: str,
) -> Any:
    """Strategy 1: structured output, parsed into Python objects."""
    raw = await gateway.generate_once(
        options.base_url,
        options.model,
        build_json_prompt(prompt, schema_description),
        options.temperature_or(JSON_TEMPERATURE),
        format_hint="json",
    )
    span = extract_json(raw)
    try:
        return json.loads(span)
    except ValueError as exc:
        raise ParseError(f"Failed to parse JSON. Raw response: {raw}") from exc


async def generate_constrained_text(
    gateway: InferenceGateway,
    options: GenerateOptions,
    text: str,
    task: str,
) -> str:
    """Strategy 2: one restrictive task, trimmed answer."""
    raw = await gateway.generate_once(
        options.base_url,
        options.model,
        build_constrained_prompt(text, task),
        options.temperature_or(TEXT_TEMPERATURE),
    )
    return raw.strip()


async def generate_rich_content(
    gateway: InferenceGateway,
    options: GenerateOptions,
    prompt: str,
    persona: str,
    output_format: str = "Markdown",
    structure: Sequence[str] | None = None,
) -> str:
    """Strategy 3: persona-driven formatted content, returned untrimmed."""
    return await gateway.generate_once(
        options.base_url,
        options.model,
        build_rich_prompt(prompt, persona, output_format, structure),
        options.temperature_or(RICH_TEMPERATURE),
    )


async def generate_grounded_response(
    gateway: InferenceGateway,
    options: GenerateOptions,
    context: str,
    question: str,
) -> str:
    """Strategy 4: answer only from the supplied context."""
    raw = await gateway.generate_once(
        options.base_url,
        options.model,
        build_grounded_prompt(context, question),
        options.temperature_or(GROUNDED_TEMPERATURE),
    )
    return raw.strip()
