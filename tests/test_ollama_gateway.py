from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from holo_assistant.core.config import RuntimeConfig
from holo_assistant.core.errors import (
    BackendConnectionError,
    BackendError,
    RequestTimeoutError,
    StreamAbortedError,
)
from holo_assistant.services.ollama import InferenceGateway, StreamBuffer
from holo_assistant.services.schemas import ChatMessage, MessageRole

BASE_URL = "http://ollama.test"


def _gateway(handler, **config) -> InferenceGateway:
    return InferenceGateway(RuntimeConfig(**config), transport=httpx.MockTransport(handler))


def _ndjson(*records: dict) -> bytes:
    return b"".join(json.dumps(record).encode("utf-8") + b"\n" for record in records)


class Recorder:
    def __init__(self) -> None:
        self.chunks: list[str] = []
        self.errors: list[Exception] = []
        self.completed = 0
        self.first_chunk = asyncio.Event()

    def on_chunk(self, text: str) -> None:
        self.chunks.append(text)
        self.first_chunk.set()

    def on_complete(self) -> None:
        self.completed += 1

    def on_error(self, exc: Exception) -> None:
        self.errors.append(exc)

    def callbacks(self):
        return self.on_chunk, self.on_complete, self.on_error


def _start(gateway: InferenceGateway, recorder: Recorder, history=None) -> asyncio.Task:
    history = history if history is not None else [ChatMessage(MessageRole.USER, "hello")]
    return gateway.stream_chat(BASE_URL, "gemma2:2b", history, "Be brief.", 0.7, *recorder.callbacks())


def test_stream_buffer_handles_split_lines_and_utf8():
    buffer = StreamBuffer()
    encoded = '{"message":{"content":"café"}}\n'.encode("utf-8")
    cut = encoded.index(b"\xc3") + 1
    assert buffer.feed(encoded[:cut]) == []
    assert buffer.feed(encoded[cut:] + b"\n  \n{\"partial\"") == ['{"message":{"content":"café"}}']
    assert buffer.flush() == ['{"partial"']
    assert buffer.flush() == []


@pytest.mark.asyncio
async def test_list_models_parses_tags():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [{"name": "gemma2:2b", "size": 123, "modified_at": "2024-06-01"}, {"name": "llama3"}]})

    gateway = _gateway(handler)
    models = await gateway.list_models(BASE_URL + "/")
    await gateway.aclose()
    assert [m.name for m in models] == ["gemma2:2b", "llama3"]
    assert models[0].size_bytes == 123


@pytest.mark.asyncio
async def test_list_models_failures_are_connection_errors():
    def failing(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="oops")

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    for handler in (failing, unreachable):
        gateway = _gateway(handler)
        with pytest.raises(BackendConnectionError) as excinfo:
            await gateway.list_models(BASE_URL)
        assert isinstance(excinfo.value, ConnectionError)
        await gateway.aclose()


@pytest.mark.asyncio
async def test_generate_once_sends_non_streaming_request():
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"response": '{"ok": true}', "done": True})

    gateway = _gateway(handler)
    raw = await gateway.generate_once(BASE_URL, "gemma2:2b", "Say hi", 0.2, format_hint="json")
    await gateway.aclose()

    assert raw == '{"ok": true}'
    assert captured["path"] == "/api/generate"
    assert captured["body"] == {
        "model": "gemma2:2b",
        "prompt": "Say hi",
        "stream": False,
        "options": {"temperature": 0.2},
        "format": "json",
    }


@pytest.mark.asyncio
async def test_generate_once_non_2xx_is_backend_error():
    gateway = _gateway(lambda request: httpx.Response(404, text="model 'x' not found"))
    with pytest.raises(BackendError) as excinfo:
        await gateway.generate_once(BASE_URL, "x", "hi", 0.7)
    await gateway.aclose()
    assert excinfo.value.status == 404
    assert str(excinfo.value) == "Ollama API Error: 404 - model 'x' not found"


@pytest.mark.asyncio
async def test_generate_once_times_out():
    async def slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1)
        return httpx.Response(200, json={"response": "late"})

    gateway = _gateway(slow, request_timeout_sec=0.05)
    with pytest.raises(RequestTimeoutError) as excinfo:
        await gateway.generate_once(BASE_URL, "gemma2:2b", "hi", 0.7)
    await gateway.aclose()
    assert isinstance(excinfo.value, TimeoutError)


@pytest.mark.asyncio
async def test_stream_chat_delivers_chunks_in_order():
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        body = _ndjson(
            {"message": {"role": "assistant", "content": "Hi"}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": False},
            {"message": {"role": "assistant", "content": " there"}, "done": False},
        ) + b'{"message":{"role":"assistant","content":"!"},"done":true}'
        return httpx.Response(200, content=body)

    gateway = _gateway(handler)
    recorder = Recorder()
    await _start(gateway, recorder)
    await gateway.aclose()

    assert recorder.chunks == ["Hi", " there", "!"]
    assert recorder.errors == []
    assert recorder.completed == 1
    body = captured["body"]
    assert body["stream"] is True
    assert body["options"] == {"temperature": 0.7}
    assert body["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "hello"},
    ]


@pytest.mark.asyncio
async def test_stream_chat_reassembles_chunked_body():
    payload = _ndjson({"message": {"content": "Bonjour à "}}, {"message": {"content": "vous"}})

    async def pieces():
        for start in range(0, len(payload), 7):
            yield payload[start : start + 7]

    gateway = _gateway(lambda request: httpx.Response(200, content=pieces()))
    recorder = Recorder()
    await _start(gateway, recorder)
    await gateway.aclose()
    assert recorder.chunks == ["Bonjour à ", "vous"]


@pytest.mark.asyncio
async def test_stream_chat_skips_malformed_lines():
    body = _ndjson({"message": {"content": "A"}}) + b"not json\n[1, 2]\n" + _ndjson({"message": {"content": "B"}})
    gateway = _gateway(lambda request: httpx.Response(200, content=body))
    recorder = Recorder()
    await _start(gateway, recorder)
    await gateway.aclose()
    assert recorder.chunks == ["A", "B"]
    assert recorder.errors == []
    assert recorder.completed == 1


@pytest.mark.asyncio
async def test_stream_chat_error_record_ends_stream():
    body = _ndjson({"message": {"content": "A"}}, {"error": "model crashed"}, {"message": {"content": "B"}})
    gateway = _gateway(lambda request: httpx.Response(200, content=body))
    recorder = Recorder()
    await _start(gateway, recorder)
    await gateway.aclose()
    assert recorder.chunks == ["A"]
    assert len(recorder.errors) == 1
    assert isinstance(recorder.errors[0], BackendError)
    assert "model crashed" in str(recorder.errors[0])
    assert recorder.completed == 1


@pytest.mark.asyncio
async def test_stream_chat_http_error_status():
    gateway = _gateway(lambda request: httpx.Response(500, text="internal"))
    recorder = Recorder()
    await _start(gateway, recorder)
    await gateway.aclose()
    assert recorder.chunks == []
    assert [type(e) for e in recorder.errors] == [BackendError]
    assert recorder.errors[0].status == 500
    assert recorder.completed == 1


@pytest.mark.asyncio
async def test_stream_chat_empty_body_is_an_error():
    gateway = _gateway(lambda request: httpx.Response(200, content=b""))
    recorder = Recorder()
    await _start(gateway, recorder)
    await gateway.aclose()
    assert [type(e) for e in recorder.errors] == [BackendError]
    assert recorder.completed == 1


@pytest.mark.asyncio
async def test_stream_chat_unreachable_backend():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    gateway = _gateway(handler)
    recorder = Recorder()
    await _start(gateway, recorder)
    await gateway.aclose()
    assert [type(e) for e in recorder.errors] == [BackendConnectionError]
    assert recorder.completed == 1


@pytest.mark.asyncio
async def test_stream_chat_times_out_waiting_for_headers():
    async def slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1)
        return httpx.Response(200, content=_ndjson({"message": {"content": "late"}}))

    gateway = _gateway(slow, request_timeout_sec=0.05)
    recorder = Recorder()
    await _start(gateway, recorder)
    await gateway.aclose()

    assert recorder.chunks == []
    assert [type(e) for e in recorder.errors] == [RequestTimeoutError]
    assert isinstance(recorder.errors[0], TimeoutError)
    assert recorder.completed == 1


@pytest.mark.asyncio
async def test_list_models_timeout_is_a_connection_error():
    async def slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1)
        return httpx.Response(200, json={"models": []})

    gateway = _gateway(slow, request_timeout_sec=0.05)
    with pytest.raises(BackendConnectionError) as excinfo:
        await gateway.list_models(BASE_URL)
    await gateway.aclose()
    assert isinstance(excinfo.value.__cause__, RequestTimeoutError)

def _hanging_handler():
    release = asyncio.Event()

    async def body():
        yield _ndjson({"message": {"content": "first"}})
        await release.wait()
        yield _ndjson({"message": {"content": "never"}})

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body())

    return handler


@pytest.mark.asyncio
async def test_abort_reports_error_then_completes():
    gateway = _gateway(_hanging_handler())
    recorder = Recorder()
    task = _start(gateway, recorder)
    await asyncio.wait_for(recorder.first_chunk.wait(), timeout=1)
    assert gateway.in_flight

    assert gateway.abort() is True
    with pytest.raises(asyncio.CancelledError):
        await task
    await gateway.aclose()

    assert recorder.chunks == ["first"]
    assert [type(e) for e in recorder.errors] == [StreamAbortedError]
    assert recorder.completed == 1
    assert not gateway.in_flight
    assert gateway.abort() is False


@pytest.mark.asyncio
async def test_new_stream_supersedes_previous():
    first_handler = _hanging_handler()

    def handler(request: httpx.Request) -> httpx.Response:
        history = json.loads(request.content)["messages"]
        if history[-1]["content"] == "first question":
            return first_handler(request)
        return httpx.Response(200, content=_ndjson({"message": {"content": "second answer"}}))

    gateway = _gateway(handler)
    first, second = Recorder(), Recorder()
    first_task = _start(gateway, first, [ChatMessage(MessageRole.USER, "first question")])
    second_task = _start(gateway, second, [ChatMessage(MessageRole.USER, "second question")])

    results = await asyncio.gather(first_task, second_task, return_exceptions=True)
    await gateway.aclose()

    assert isinstance(results[0], asyncio.CancelledError)
    assert [type(e) for e in first.errors] == [StreamAbortedError]
    assert first.completed == 1
    assert second.chunks == ["second answer"]
    assert second.errors == []
    assert second.completed == 1


@pytest.mark.asyncio
async def test_stream_chat_snapshots_history():
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["messages"] = json.loads(request.content)["messages"]
        return httpx.Response(200, content=_ndjson({"message": {"content": "ok"}}))

    gateway = _gateway(handler)
    history = [ChatMessage(MessageRole.USER, "hello")]
    recorder = Recorder()
    task = _start(gateway, recorder, history)
    history.append(ChatMessage(MessageRole.ASSISTANT, "mutated"))
    history[0].content = "changed"
    await task
    await gateway.aclose()
    assert captured["messages"][1:] == [{"role": "user", "content": "hello"}]
