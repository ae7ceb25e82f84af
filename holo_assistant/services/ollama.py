"""HTTP client for the local Ollama generation backend."""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Optional, TypeVar

import httpx

from ..core.config import RuntimeConfig, get_config
from ..core.errors import (
    AssistantError,
    BackendConnectionError,
    BackendError,
    RequestTimeoutError,
    StreamAbortedError,
)
from ..core.trace import new_trace_id
from .schemas import ChatMessage, MessageRole, OllamaModel

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]
CompleteCallback = Callable[[], None]
ErrorCallback = Callable[[Exception], None]

T = TypeVar("T")


class StreamBuffer:
    """Accumulates streamed bytes and hands back complete lines."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, data: bytes) -> list[str]:
        """Add raw bytes; return the non-blank lines completed by them."""
        self._pending += self._decoder.decode(data)
        *lines, self._pending = self._pending.split("\n")
        return [line for line in lines if line.strip()]

    def flush(self) -> list[str]:
        """Return whatever is left once the stream has ended."""
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return [tail] if tail.strip() else []


class _StreamCallbacks:
    """Guarantees a single error delivery and a single finalizer call."""

    __slots__ = ("_on_chunk", "_on_complete", "_on_error", "_failed", "_completed")

    def __init__(self, on_chunk: ChunkCallback, on_complete: CompleteCallback, on_error: ErrorCallback) -> None:
        self._on_chunk = on_chunk
        self._on_complete = on_complete
        self._on_error = on_error
        self._failed = False
        self._completed = False

    def chunk(self, text: str) -> None:
        self._on_chunk(text)

    def error(self, exc: Exception) -> None:
        if self._failed or self._completed:
            return
        self._failed = True
        self._on_error(exc)

    def complete(self) -> None:
        if self._completed:
            return
        self._completed = True
        self._on_complete()


class InferenceGateway:
    """Async client for the model listing, one-shot generation and streamed chat endpoints."""

    def __init__(
        self,
        config: RuntimeConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or get_config()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._stream_task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    async def list_models(self, base_url: str) -> list[OllamaModel]:
        """Return the models installed on the backend."""
        url = f"{base_url.rstrip('/')}/api/tags"
        try:
            response = await self._with_deadline(self._http().get(url), "Model listing")
        except RequestTimeoutError as exc:
            raise BackendConnectionError(f"Failed to fetch models from Ollama: {exc}") from exc
        except httpx.HTTPError as exc:
            raise BackendConnectionError(f"Failed to fetch models from Ollama: {exc}") from exc
        if not response.is_success:
            raise BackendConnectionError(
                f"Failed to fetch models from Ollama: {response.status_code} {response.text}"
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise BackendConnectionError(f"Non-JSON model listing: {response.text[:200]}") from exc
        raw_models = data.get("models") if isinstance(data, dict) else None
        return [OllamaModel.from_payload(item) for item in raw_models or [] if isinstance(item, dict)]

    async def generate_once(
        self,
        base_url: str,
        model_id: str,
        prompt: str,
        temperature: float,
        format_hint: str | None = None,
    ) -> str:
        """Single blocking generation; returns the raw ``response`` text."""
        url = f"{base_url.rstrip('/')}/api/generate"
        body: dict[str, Any] = {
            "model": model_id,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": temperature},
        }
        if format_hint:
            body["format"] = format_hint
        new_trace_id()
        logger.info("generate model=%s prompt_chars=%d format=%s", model_id, len(prompt), format_hint)
        try:
            response = await self._with_deadline(self._http().post(url, json=body), "Generation request")
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(f"Generation request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise BackendConnectionError(f"Unable to reach Ollama at {base_url}: {exc}") from exc
        if not response.is_success:
            raise BackendError(response.status_code, response.text)
        try:
            data = response.json()
        except ValueError as exc:
            raise BackendError(response.status_code, f"Non-JSON response: {response.text[:200]}") from exc
        if not isinstance(data, dict):
            raise BackendError(response.status_code, f"Unexpected response: {data!r}")
        raw = data.get("response", "")
        return raw if isinstance(raw, str) else str(raw)

    async def iter_chat(
        self,
        base_url: str,
        model_id: str,
        history: Iterable[ChatMessage],
        system_prompt: str,
        temperature: float,
    ) -> AsyncIterator[str]:
        """Yield message chunks of a streamed chat completion in arrival order."""
        messages = [ChatMessage(MessageRole.SYSTEM, system_prompt), *history]
        body = {
            "model": model_id,
            "messages": [message.to_payload() for message in messages],
            "stream": True,
            "options": {"temperature": temperature},
        }
        client = self._http()
        request = client.build_request("POST", f"{base_url.rstrip('/')}/api/chat", json=body)
        try:
            response = await self._with_deadline(client.send(request, stream=True), "Chat request")
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(f"Chat request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise BackendConnectionError(f"Unable to reach Ollama at {base_url}: {exc}") from exc

        try:
            if not response.is_success:
                await response.aread()
                raise BackendError(response.status_code, f"{response.reason_phrase} - {response.text}")
            buffer = StreamBuffer()
            received = 0
            async for data in response.aiter_bytes():
                received += len(data)
                for line in buffer.feed(data):
                    text = self._decode_record(line)
                    if text:
                        yield text
            for line in buffer.flush():
                text = self._decode_record(line)
                if text:
                    yield text
            if received == 0:
                raise BackendError(response.status_code, "empty response body")
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(f"Chat stream stalled: {exc}") from exc
        except httpx.HTTPError as exc:
            raise BackendConnectionError(f"Chat stream interrupted: {exc}") from exc
        finally:
            await response.aclose()

    def stream_chat(
        self,
        base_url: str,
        model_id: str,
        history: Iterable[ChatMessage],
        system_prompt: str,
        temperature: float,
        on_chunk: ChunkCallback,
        on_complete: CompleteCallback,
        on_error: ErrorCallback,
    ) -> asyncio.Task[None]:
        """Stream a chat completion through callbacks.

        ``on_chunk`` fires once per non-empty content record, in arrival order.
        ``on_error`` fires at most once, for any failure including an abort.
        ``on_complete`` always fires exactly once, last. Starting a new stream
        aborts the one still in flight.
        """
        self.abort()
        callbacks = _StreamCallbacks(on_chunk, on_complete, on_error)
        snapshot = [ChatMessage(message.role, message.content) for message in history]
        task = asyncio.get_running_loop().create_task(
            self._consume_stream(base_url, model_id, snapshot, system_prompt, temperature, callbacks)
        )
        task.add_done_callback(lambda finished: self._finalize_stream(finished, callbacks))
        self._stream_task = task
        return task

    def abort(self) -> bool:
        """Cancel the in-flight stream, if any. Returns True when one was cancelled."""
        task = self._stream_task
        if task is None or task.done():
            return False
        logger.info("Aborting in-flight chat stream")
        task.cancel()
        return True

    @property
    def in_flight(self) -> bool:
        """Return True while a streamed chat is running."""
        return self._stream_task is not None and not self._stream_task.done()

    async def aclose(self) -> None:
        """Abort any stream and close the underlying HTTP client."""
        self.abort()
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            timeout = httpx.Timeout(
                connect=self.config.request_timeout_sec,
                read=self.config.stream_read_timeout_sec,
                write=self.config.request_timeout_sec,
                pool=self.config.request_timeout_sec,
            )
            self._client = httpx.AsyncClient(timeout=timeout, transport=self._transport)
        return self._client

    async def _with_deadline(self, awaitable: Awaitable[T], what: str) -> T:
        """Await with the request timeout; expiry cancels the request."""
        timeout = self.config.request_timeout_sec
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except RequestTimeoutError:
            raise
        except asyncio.TimeoutError as exc:
            raise RequestTimeoutError(f"{what} timed out after {timeout:g}s") from exc

    async def _consume_stream(
        self,
        base_url: str,
        model_id: str,
        history: list[ChatMessage],
        system_prompt: str,
        temperature: float,
        callbacks: _StreamCallbacks,
    ) -> None:
        trace_id = new_trace_id()
        logger.info("chat stream start model=%s messages=%d trace=%s", model_id, len(history) + 1, trace_id)
        chunks = 0
        try:
            async for text in self.iter_chat(base_url, model_id, history, system_prompt, temperature):
                chunks += 1
                callbacks.chunk(text)
        except asyncio.CancelledError:
            logger.info("chat stream aborted after %d chunks", chunks)
            callbacks.error(StreamAbortedError("The request was aborted."))
            raise
        except AssistantError as exc:
            logger.error("chat stream failed: %s", exc)
            callbacks.error(exc)
        except Exception as exc:
            logger.exception("chat stream crashed")
            callbacks.error(exc)
        else:
            logger.info("chat stream done chunks=%d", chunks)
        finally:
            callbacks.complete()

    def _finalize_stream(self, task: asyncio.Task[None], callbacks: _StreamCallbacks) -> None:
        # A task cancelled before its first step never runs its own finally.
        if task.cancelled():
            callbacks.error(StreamAbortedError("The request was aborted."))
        callbacks.complete()
        if self._stream_task is task:
            self._stream_task = None

    @staticmethod
    def _decode_record(line: str) -> str | None:
        try:
            record = json.loads(line)
        except ValueError:
            logger.warning("Failed to parse stream chunk: %r", line[:200])
            return None
        if not isinstance(record, dict):
            logger.warning("Ignoring non-object stream record: %r", line[:200])
            return None
        if record.get("error"):
            raise BackendError(200, str(record["error"]))
        message = record.get("message")
        if not isinstance(message, dict):
            return None
        content = message.get("content")
        if not content:
            return None
        return content if isinstance(content, str) else str(content)
