import asyncio
import json

import httpx

from chat_service.core import generation
from chat_service.core.errors import GenerationFailure
from chat_service.core.generation import HttpGenerationClient, build_messages, iter_sse_deltas
from chat_service.core.history import HistoryEntry


def _sse(event, data):
    payload = data if isinstance(data, str) else json.dumps(data)
    return [f"event: {event}", f"data: {payload}", ""]


def _fake_client(calls, status_code=200, lines=None, error=None):
    class FakeStreamResponse:
        def __init__(self):
            self.status_code = status_code

        async def aiter_lines(self):
            for line in lines or []:
                yield line

    class FakeStreamContext:
        async def __aenter__(self):
            if error is not None:
                raise error
            return FakeStreamResponse()

        async def __aexit__(self, exc_type, exc, tb):
            return False

    class FakeAsyncClient:
        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        def stream(self, method, url, json=None, headers=None, timeout=None):
            calls.append({"method": method, "url": url, "json": json})
            return FakeStreamContext()

    return FakeAsyncClient


def _collect(client):
    chunks, errors = [], []

    async def _run():
        task = client.stream_response(
            "hello",
            "",
            [HistoryEntry(role="user", content="earlier", timestamp="2024-05-01T10:00:00")],
            chunks.append,
            errors.append,
        )
        await task

    asyncio.run(_run())
    return chunks, errors


def test_build_messages_with_and_without_context():
    history = [
        HistoryEntry(role="user", content="hi", timestamp="t"),
        HistoryEntry(role="assistant", content="hello!", timestamp="t"),
    ]

    grounded = build_messages("refund?", "[1] (refund.md) 3 days\n", history)
    ungrounded = build_messages("refund?", "", [])

    assert grounded[0]["role"] == "system"
    assert "[1] (refund.md) 3 days" in grounded[0]["content"]
    assert grounded[1:] == [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello!"},
        {"role": "user", "content": "refund?"},
    ]
    assert "No reference passages" in ungrounded[0]["content"]
    assert ungrounded[-1] == {"role": "user", "content": "refund?"}


def test_iter_sse_deltas_reads_gateway_and_openai_shapes():
    lines = (
        _sse("meta", {"model": "toy"})
        + _sse("delta", {"delta": "Hi"})
        + ["data: " + json.dumps({"choices": [{"delta": {"content": " there"}}]}), ""]
        + ["data: [DONE]", ""]
        + _sse("done", {"status": "ok"})
    )

    async def _run():
        async def _lines():
            for line in lines:
                yield line

        return [delta async for delta in iter_sse_deltas(_lines())]

    assert asyncio.run(_run()) == ["Hi", " there"]


def test_stream_response_forwards_deltas(monkeypatch):
    calls = []
    lines = _sse("delta", {"delta": "Hi"}) + _sse("delta", {"delta": " there"}) + _sse("done", {"status": "ok"})
    monkeypatch.setattr(generation.httpx, "AsyncClient", _fake_client(calls, lines=lines))

    chunks, errors = _collect(HttpGenerationClient(base_url="http://llm", model="toy"))

    assert chunks == ["Hi", " there"]
    assert errors == []
    assert calls[0]["url"] == "http://llm/v1/generate?stream=true"
    assert calls[0]["json"]["stream"] is True
    assert calls[0]["json"]["model"] == "toy"
    assert calls[0]["json"]["messages"][-1] == {"role": "user", "content": "hello"}


def test_stream_response_reports_http_error(monkeypatch):
    monkeypatch.setattr(generation.httpx, "AsyncClient", _fake_client([], status_code=503))

    chunks, errors = _collect(HttpGenerationClient(base_url="http://llm"))

    assert chunks == []
    assert len(errors) == 1
    assert isinstance(errors[0], GenerationFailure)
    assert "http_503" in str(errors[0])


def test_stream_response_reports_timeout(monkeypatch):
    error = httpx.ReadTimeout("read timed out")
    monkeypatch.setattr(generation.httpx, "AsyncClient", _fake_client([], error=error))

    _, errors = _collect(HttpGenerationClient(base_url="http://llm"))

    assert isinstance(errors[0], GenerationFailure)
    assert errors[0].cause is error


def test_stream_response_reports_provider_error_event(monkeypatch):
    lines = _sse("delta", {"delta": "partial"}) + _sse("error", {"code": "PROVIDER_TIMEOUT"})
    monkeypatch.setattr(generation.httpx, "AsyncClient", _fake_client([], lines=lines))

    chunks, errors = _collect(HttpGenerationClient(base_url="http://llm"))

    assert chunks == ["partial"]
    assert isinstance(errors[0], GenerationFailure)
