from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, NoReturn, Optional, Sequence

import typer

from holo_assistant.app import build_orchestrator
from holo_assistant.config.store import SettingsStore, settings_to_record
from holo_assistant.core.config import get_config
from holo_assistant.core.errors import AssistantError, BackendConnectionError, error_payload
from holo_assistant.core.logger import configure_logging
from holo_assistant.services import prompting
from holo_assistant.services.ollama import InferenceGateway
from holo_assistant.services.schemas import ChatMessage, MessageRole
from holo_assistant.state.app_state import ChatMode

cli = typer.Typer(name="holo", help="Local voice assistant on top of Ollama", no_args_is_help=True)
playground_cli = typer.Typer(help="Single-shot prompting strategies")
config_cli = typer.Typer(help="Persisted settings")

cli.add_typer(playground_cli, name="playground")
cli.add_typer(config_cli, name="config")

DEFAULT_JSON_PROMPT = "Describe a UI button component"
DEFAULT_JSON_SCHEMA = (
    'A JSON object with keys: "name" (string), "category" (one of: "Input", "Display", "Action"), '
    'and "summary" (a one-line string description).'
)
DEFAULT_TEXT = (
    "Ollama is a powerful tool that allows you to run open-source large language models, such as "
    "Llama 3, locally. It bundles model weights, configuration, and data into a single package, "
    "managed by a Modelfile."
)
DEFAULT_TASK = "Summarize this into a concise, one-line description."
DEFAULT_RICH_PROMPT = "Explain the benefits of local AI models."
DEFAULT_PERSONA = "an expert in AI privacy and security"
DEFAULT_CONTEXT = (
    "Inventory:\n- Item A (Qty: 5, Color: Blue)\n- Item B (Qty: 2, Color: Red)\n- Item C (Qty: 10, Color: Blue)"
)
DEFAULT_QUESTION = "How many blue items are in the inventory?"

# Accepted keys for `config set`: stored names and attribute names.
_SETTERS = {
    "ollamaUrl": "set_base_url",
    "base_url": "set_base_url",
    "selectedModel": "set_model",
    "model_id": "set_model",
    "model": "set_model",
    "systemPrompt": "set_system_prompt",
    "system_prompt": "set_system_prompt",
    "temperature": "set_temperature",
    "triggerWord": "set_trigger_phrase",
    "trigger_phrase": "set_trigger_phrase",
}


def _store() -> SettingsStore:
    config = get_config()
    return SettingsStore(Path(config.settings_path) if config.settings_path else None)


def _gateway() -> InferenceGateway:
    return InferenceGateway(get_config())


def _fail(exc: Exception, as_json: bool = False) -> NoReturn:
    if as_json:
        typer.echo(json.dumps(error_payload(type(exc).__name__, str(exc)), ensure_ascii=False))
    else:
        typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=1)


def _run(coro: Any, as_json: bool = False) -> Any:
    configure_logging()
    try:
        return asyncio.run(coro)
    except AssistantError as exc:
        _fail(exc, as_json)


async def _with_gateway(call) -> Any:  # noqa: ANN001
    gateway = _gateway()
    try:
        return await call(gateway)
    finally:
        await gateway.aclose()


def _options(url: Optional[str], model: Optional[str], temperature: Optional[float]) -> prompting.GenerateOptions:
    settings = _store().settings
    return prompting.GenerateOptions(
        base_url=url or settings.base_url,
        model=model or settings.model_id,
        temperature=temperature,
    )


@cli.command()
def models(as_json: bool = typer.Option(False, "--json", help="JSON output")) -> None:
    """List the models installed on the Ollama server."""
    base_url = _store().settings.base_url
    items = _run(_with_gateway(lambda gateway: gateway.list_models(base_url)), as_json)
    if as_json:
        payload = [{"name": m.name, "size": m.size_bytes, "modified_at": m.modified_at} for m in items]
        typer.echo(json.dumps({"models": payload}, ensure_ascii=False))
        return
    if not items:
        typer.echo("No models installed.")
    for model in items:
        typer.echo(model.name)


class _ReplyPrinter:
    """Echo the assistant message as it grows."""

    def __init__(self) -> None:
        self._count = 0
        self._shown = ""
        self._open = False

    def __call__(self, messages: Sequence[ChatMessage]) -> None:
        if not messages or messages[-1].role is not MessageRole.ASSISTANT:
            return
        if len(messages) != self._count:
            self._count = len(messages)
            self._shown = ""
            self._open = True
            typer.echo("assistant: ", nl=False)
        content = messages[-1].content
        if content.startswith(self._shown):
            typer.echo(content[len(self._shown) :], nl=False)
        else:
            # error replacement
            typer.echo(f"\n{content}", nl=False)
        self._shown = content

    def end_turn(self) -> None:
        if self._open:
            typer.echo("")
            self._open = False


async def _chat_session(store: SettingsStore, voice: bool) -> None:
    config = get_config()
    gateway = _gateway()
    orchestrator = None
    try:
        await store.refresh_models(gateway)
        if store.connection_error:
            raise BackendConnectionError(store.connection_error)
        if not store.settings.model_id:
            raise AssistantError("No model selected; run `holo config set selectedModel <name>`")
        orchestrator = build_orchestrator(store.settings, gateway, voice=voice, config=config)

        printer = _ReplyPrinter()
        idle = asyncio.Event()
        idle.set()

        def on_mode(mode: ChatMode) -> None:
            if mode is ChatMode.STANDBY:
                printer.end_turn()
                idle.set()
            else:
                idle.clear()

        orchestrator.set_messages_callback(printer)
        orchestrator.set_mode_callback(on_mode)
        orchestrator.start()
        typer.echo(f"{orchestrator.status_text()} (/quit to leave)")

        loop = asyncio.get_running_loop()
        while True:
            await idle.wait()
            try:
                line = await loop.run_in_executor(None, input, "> ")
            except EOFError:
                break
            line = line.strip()
            if line in ("/quit", "/exit"):
                break
            if not line:
                continue
            if not orchestrator.submit_text(line):
                typer.echo(orchestrator.status_text())
    finally:
        if orchestrator is not None:
            orchestrator.shutdown()
        await gateway.aclose()


@cli.command()
def chat(voice: bool = typer.Option(False, "--voice", help="Enable microphone and speech output")) -> None:
    """Interactive conversation with the selected model."""
    _run(_chat_session(_store(), voice))


@playground_cli.command("json")
def playground_json(
    prompt: str = typer.Option(DEFAULT_JSON_PROMPT, "--prompt"),
    schema: str = typer.Option(DEFAULT_JSON_SCHEMA, "--schema", help="Plain-language description of the object"),
    url: Optional[str] = typer.Option(None, "--url"),
    model: Optional[str] = typer.Option(None, "--model"),
    temperature: Optional[float] = typer.Option(None, "--temperature"),
    as_json: bool = typer.Option(False, "--json", help="JSON error output"),
) -> None:
    """Structured data extraction."""
    options = _options(url, model, temperature)
    result = _run(_with_gateway(lambda gateway: prompting.generate_json(gateway, options, prompt, schema)), as_json)
    typer.echo(json.dumps(result, indent=2, ensure_ascii=False))


@playground_cli.command("text")
def playground_text(
    text: str = typer.Option(DEFAULT_TEXT, "--text"),
    task: str = typer.Option(DEFAULT_TASK, "--task"),
    url: Optional[str] = typer.Option(None, "--url"),
    model: Optional[str] = typer.Option(None, "--model"),
    temperature: Optional[float] = typer.Option(None, "--temperature"),
    as_json: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Constrained text transformation."""
    options = _options(url, model, temperature)
    result = _run(
        _with_gateway(lambda gateway: prompting.generate_constrained_text(gateway, options, text, task)), as_json
    )
    typer.echo(json.dumps({"result": result}, ensure_ascii=False) if as_json else result)


@playground_cli.command("rich")
def playground_rich(
    prompt: str = typer.Option(DEFAULT_RICH_PROMPT, "--prompt"),
    persona: str = typer.Option(DEFAULT_PERSONA, "--persona"),
    output_format: str = typer.Option("Markdown", "--format"),
    sections: Optional[list[str]] = typer.Option(None, "--section", help="Required section (repeatable)"),
    url: Optional[str] = typer.Option(None, "--url"),
    model: Optional[str] = typer.Option(None, "--model"),
    temperature: Optional[float] = typer.Option(None, "--temperature"),
    as_json: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Persona-driven formatted content."""
    options = _options(url, model, temperature)
    result = _run(
        _with_gateway(
            lambda gateway: prompting.generate_rich_content(
                gateway, options, prompt, persona, output_format, sections or None
            )
        ),
        as_json,
    )
    typer.echo(json.dumps({"result": result}, ensure_ascii=False) if as_json else result)


@playground_cli.command("grounded")
def playground_grounded(
    context: str = typer.Option(DEFAULT_CONTEXT, "--context"),
    question: str = typer.Option(DEFAULT_QUESTION, "--question"),
    url: Optional[str] = typer.Option(None, "--url"),
    model: Optional[str] = typer.Option(None, "--model"),
    temperature: Optional[float] = typer.Option(None, "--temperature"),
    as_json: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Answer from the supplied context only."""
    options = _options(url, model, temperature)
    result = _run(
        _with_gateway(
            lambda gateway: prompting.generate_grounded_response(gateway, options, context, question)
        ),
        as_json,
    )
    typer.echo(json.dumps({"result": result}, ensure_ascii=False) if as_json else result)


@config_cli.command("show")
def config_show() -> None:
    store = _store()
    record = settings_to_record(store.settings)
    typer.echo(json.dumps({"path": str(store.path), "settings": record}, ensure_ascii=False, indent=2))


@config_cli.command("set")
def config_set(key: str, value: str) -> None:
    setter = _SETTERS.get(key)
    if setter is None:
        typer.echo(f"Unknown setting: {key}. Valid keys: {', '.join(sorted(_SETTERS))}", err=True)
        raise typer.Exit(code=1)
    store = _store()
    parsed: Any = value
    if setter == "set_temperature":
        try:
            parsed = float(value)
        except ValueError:
            typer.echo(f"Invalid temperature: {value}", err=True)
            raise typer.Exit(code=1)
    getattr(store, setter)(parsed)
    typer.echo(json.dumps(settings_to_record(store.settings), ensure_ascii=False))


if __name__ == "__main__":
    cli()
