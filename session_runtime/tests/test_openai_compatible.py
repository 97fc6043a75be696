import json

import httpx
import pytest

from session_runtime.domain.models import CancellationToken, StreamAborted, StreamDelta, StreamDone, StreamError
from session_runtime.providers import create_text_source
from session_runtime.providers.openai_compatible import OpenAICompatibleSource, build_endpoint_url


class SettingsStub:
    llm_api_key = "sk-test-1234567890"
    llm_base_url = "https://llm.example.com/v1"
    http_timeout = 1.0
    default_provider = "openai-compatible"
    thinking_model = None
    task_model = None


def sse(token):
    return "data: " + json.dumps({"choices": [{"delta": {"content": token}}]})


class FakeResponse:
    def __init__(self, status_code=200, lines=(), body=b""):
        self.status_code = status_code
        self._lines = list(lines)
        self._body = body

    async def aiter_lines(self):
        for line in self._lines:
            yield line

    async def aread(self):
        return self._body


def fake_client(resp, captured, error=None):
    class StreamCtx:
        async def __aenter__(self):
            return resp

        async def __aexit__(self, *a):
            return False

    class Client:
        def __init__(self, *a, **kw):
            captured["client_kwargs"] = kw

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

        def stream(self, method, url, **kw):
            if error is not None:
                raise error
            captured.update(method=method, url=url, **kw)
            return StreamCtx()

    return Client


async def collect(source, token=None, **kwargs):
    kwargs.setdefault("batching_interval_ms", 0)
    return [item async for item in source.start_text_stream(["p1", "p2"], signal=token or CancellationToken(), **kwargs)]


@pytest.mark.asyncio
async def test_stream_parses_sse_lines(monkeypatch):
    captured = {}
    lines = [sse("He"), "", ": keep-alive", "data: not-json", sse("llo"), "data: [DONE]", sse("ignored")]
    monkeypatch.setattr("httpx.AsyncClient", fake_client(FakeResponse(lines=lines), captured))

    items = await collect(OpenAICompatibleSource(SettingsStub()))
    assert items == [StreamDelta(text="He"), StreamDelta(text="llo"), StreamDone()]

    assert captured["method"] == "POST"
    assert captured["url"] == "https://llm.example.com/v1/chat/completions"
    assert captured["headers"]["Authorization"] == "Bearer sk-test-1234567890"
    payload = captured["json"]
    assert payload["model"] == "gpt-4o"
    assert payload["stream"] is True
    assert payload["temperature"] == 0.6
    assert payload["max_tokens"] == 4096
    assert payload["messages"] == [{"role": "user", "content": "p1"}, {"role": "user", "content": "p2"}]
    assert captured["client_kwargs"]["timeout"] == 1.0


@pytest.mark.asyncio
async def test_stream_batches_deltas(monkeypatch):
    lines = [sse("a"), sse("b"), sse("c"), "data: [DONE]"]
    monkeypatch.setattr("httpx.AsyncClient", fake_client(FakeResponse(lines=lines), {}))
    items = await collect(OpenAICompatibleSource(SettingsStub()), batching_interval_ms=60_000)
    assert items == [StreamDelta(text="abc"), StreamDone()]


@pytest.mark.asyncio
async def test_stream_without_done_marker_still_finishes(monkeypatch):
    monkeypatch.setattr("httpx.AsyncClient", fake_client(FakeResponse(lines=[sse("x")]), {}))
    items = await collect(OpenAICompatibleSource(SettingsStub()), batching_interval_ms=60_000)
    assert items == [StreamDelta(text="x"), StreamDone()]


@pytest.mark.asyncio
async def test_task_model_and_temperature(monkeypatch):
    captured = {}
    monkeypatch.setattr("httpx.AsyncClient", fake_client(FakeResponse(lines=["data: [DONE]"]), captured))
    await collect(OpenAICompatibleSource(SettingsStub()), model_override="gpt-4o-mini", temperature=0.2)
    assert captured["json"]["model"] == "gpt-4o-mini"
    assert captured["json"]["max_tokens"] == 256
    assert captured["json"]["temperature"] == 0.2


@pytest.mark.asyncio
async def test_rate_limit_is_retryable_error(monkeypatch):
    monkeypatch.setattr("httpx.AsyncClient", fake_client(FakeResponse(status_code=429), {}))
    items = await collect(OpenAICompatibleSource(SettingsStub()))
    assert len(items) == 1
    assert isinstance(items[0], StreamError)
    assert items[0].retryable is True


@pytest.mark.asyncio
async def test_http_error_body_becomes_message(monkeypatch):
    resp = FakeResponse(status_code=500, body=b'{"error": "upstream down"}')
    monkeypatch.setattr("httpx.AsyncClient", fake_client(resp, {}))
    items = await collect(OpenAICompatibleSource(SettingsStub()))
    assert items == [StreamError(message='{"error": "upstream down"}')]


@pytest.mark.asyncio
async def test_network_error_becomes_error_item(monkeypatch):
    monkeypatch.setattr("httpx.AsyncClient", fake_client(None, {}, error=httpx.ConnectError("connection refused")))
    items = await collect(OpenAICompatibleSource(SettingsStub()))
    # 网络错误经 NetworkError 转成可重发的错误条目
    assert items == [StreamError(message="connection refused", retryable=True)]


@pytest.mark.asyncio
async def test_cancelled_signal_yields_aborted(monkeypatch):
    monkeypatch.setattr("httpx.AsyncClient", fake_client(FakeResponse(lines=[sse("a"), sse("b")]), {}))
    token = CancellationToken()
    token.cancel("user")
    items = await collect(OpenAICompatibleSource(SettingsStub()), token=token)
    assert items == [StreamAborted(reason="user")]


@pytest.mark.asyncio
async def test_missing_api_key(monkeypatch):
    class NoKey(SettingsStub):
        llm_api_key = None

    def boom(*a, **kw):
        raise AssertionError("client should not be created")

    monkeypatch.setattr("httpx.AsyncClient", boom)
    items = await collect(OpenAICompatibleSource(NoKey()))
    assert len(items) == 1
    assert items[0].message.startswith("MISSING_API_KEY")


def test_build_endpoint_url():
    assert build_endpoint_url("https://x.com/v1") == "https://x.com/v1/chat/completions"
    assert build_endpoint_url("https://x.com/api/v3/") == "https://x.com/api/v3/chat/completions"
    assert build_endpoint_url("https://x.com") == "https://x.com/v1/chat/completions"
    assert build_endpoint_url("https://x.com/v1/chat/completions/") == "https://x.com/v1/chat/completions"
    assert build_endpoint_url(None) == "https://api.openai.com/v1/chat/completions"


def test_create_text_source():
    assert isinstance(create_text_source("OpenAI_Compatible"), OpenAICompatibleSource)
    with pytest.raises(KeyError):
        create_text_source("unknown-vendor")
