import asyncio
from datetime import date

import httpx
import pytest

from chat_core.domain.conversation import Message
from chat_core.domain.exceptions import NetworkError, RequestAborted, StreamError, UnauthorizedError
from chat_core.providers.openai_client import OpenAIClient


class SettingsStub:
    openai_url = "https://api.example.com/"
    chat_path = "v1/chat/completions"
    usage_path = "dashboard/billing/usage"
    subscription_path = "dashboard/billing/subscription"
    api_key = "sk-test-key-123456"
    access_code = None
    enable_access_control = False
    access_code_prefix = "ak-"
    request_timeout = 1.0
    stream_idle_timeout = 1.0
    stream_format = "text"
    default_model = "gpt-3.5-turbo"
    default_temperature = 1.0
    default_presence_penalty = 0.0
    default_summary_level = "incremental"
    default_compress_threshold = 1000
    summary_check_flag = True
    inject_summary_intro = False
    persona_prompt = None


class WordCounter:
    def count_text(self, text):
        return len(text.split())


STALL = object()


class FakeStreamResponse:
    def __init__(self, status_code=200, chunks=(), body=b"", read_delay=0):
        self.status_code = status_code
        self._chunks = list(chunks)
        self._body = body
        self._read_delay = read_delay
        self.closed = False

    async def aiter_bytes(self):
        for chunk in self._chunks:
            if chunk is STALL:
                await asyncio.sleep(10)
                continue
            yield chunk

    async def aread(self):
        if self._read_delay:
            await asyncio.sleep(self._read_delay)
        return self._body

    async def aclose(self):
        self.closed = True


def install_stream(monkeypatch, response, captured, send_delay=0):
    class Client:
        def __init__(self, *args, **kwargs):
            captured["client_kwargs"] = kwargs

        async def __aenter__(self):
            return self

        async def __aexit__(self, *exc):
            return False

        def build_request(self, method, url, json=None, headers=None):
            captured.update(method=method, url=url, json=json, headers=headers)
            return object()

        async def send(self, request, stream=False):
            captured["stream"] = stream
            if send_delay:
                await asyncio.sleep(send_delay)
            return response

    monkeypatch.setattr("httpx.AsyncClient", Client)


class Recorder:
    def __init__(self):
        self.messages = []
        self.errors = []
        self.handles = []

    def on_message(self, text, done, prompt_tokens=None, completion_tokens=None):
        self.messages.append((text, done))

    def on_error(self, error, status):
        self.errors.append((error, status))

    def on_controller(self, handle):
        self.handles.append(handle)


async def _run(client, rec, messages=None):
    messages = messages or [Message(id=1, role="user", content="hello there")]
    await client.request_chat_stream(
        messages,
        on_message=rec.on_message,
        on_error=rec.on_error,
        on_controller=rec.on_controller,
    )


@pytest.mark.asyncio
async def test_stream_accumulates_and_finishes_once(monkeypatch):
    captured = {}
    response = FakeStreamResponse(chunks=[b"Hel", b"lo"])
    install_stream(monkeypatch, response, captured)
    client = OpenAIClient(SettingsStub(), token_counter=WordCounter())
    rec = Recorder()

    await _run(client, rec)

    assert rec.messages == [("Hel", False), ("Hello", False), ("Hello", True)]
    assert rec.errors == []
    assert len(rec.handles) == 1
    assert rec.handles[0].aborted
    assert response.closed
    assert captured["url"] == "https://api.example.com/v1/chat/completions"
    assert captured["stream"] is True
    assert captured["json"]["stream"] is True
    assert captured["headers"]["Authorization"] == "Bearer sk-test-key-123456"
    assert captured["headers"]["Content-Type"] == "application/json"


@pytest.mark.asyncio
async def test_stream_token_counts_reported(monkeypatch):
    install_stream(monkeypatch, FakeStreamResponse(chunks=[b"one two", b" three"]), {})
    client = OpenAIClient(SettingsStub(), token_counter=WordCounter())
    events = []

    def on_message(text, done, prompt_tokens=None, completion_tokens=None):
        events.append((done, prompt_tokens, completion_tokens))

    await client.request_chat_stream(
        [Message(id=1, role="user", content="hello there")],
        on_message=on_message,
        on_error=lambda e, s: None,
    )
    assert events[-1] == (True, 2, 3)


@pytest.mark.asyncio
async def test_idle_timeout_finishes_with_accumulated_text(monkeypatch):
    stub = SettingsStub()
    stub.stream_idle_timeout = 0.05
    install_stream(monkeypatch, FakeStreamResponse(chunks=[b"Hel", STALL, b"never"]), {})
    rec = Recorder()

    await _run(OpenAIClient(stub), rec)

    assert rec.messages == [("Hel", False), ("Hel", True)]
    assert rec.errors == []


@pytest.mark.asyncio
async def test_unauthorized_reports_error_only(monkeypatch):
    install_stream(monkeypatch, FakeStreamResponse(status_code=401), {})
    rec = Recorder()

    await _run(OpenAIClient(SettingsStub()), rec)

    assert rec.messages == []
    assert len(rec.errors) == 1
    error, status = rec.errors[0]
    assert isinstance(error, UnauthorizedError)
    assert status == 401
    assert rec.handles == []


@pytest.mark.asyncio
async def test_server_error_reports_stream_error(monkeypatch):
    install_stream(monkeypatch, FakeStreamResponse(status_code=500, body=b"boom"), {})
    rec = Recorder()

    await _run(OpenAIClient(SettingsStub()), rec)

    assert rec.messages == []
    assert len(rec.errors) == 1
    error, status = rec.errors[0]
    assert isinstance(error, StreamError)
    assert status == 500


@pytest.mark.asyncio
async def test_request_timeout_reports_network_error(monkeypatch):
    stub = SettingsStub()
    stub.request_timeout = 0.05
    install_stream(monkeypatch, FakeStreamResponse(chunks=[b"late"]), {}, send_delay=10)
    rec = Recorder()

    await _run(OpenAIClient(stub), rec)

    assert rec.messages == []
    assert len(rec.errors) == 1
    error, status = rec.errors[0]
    assert isinstance(error, NetworkError)
    assert error.code == "REQUEST_TIMEOUT"
    assert status is None


@pytest.mark.asyncio
async def test_stop_through_handle_reports_abort(monkeypatch):
    install_stream(monkeypatch, FakeStreamResponse(chunks=[b"Hel", b"lo", b" world"]), {})
    rec = Recorder()

    def on_message(text, done, prompt_tokens=None, completion_tokens=None):
        rec.messages.append((text, done))
        rec.handles[0].abort("stopped")

    await OpenAIClient(SettingsStub()).request_chat_stream(
        [Message(id=1, role="user", content="hi")],
        on_message=on_message,
        on_error=rec.on_error,
        on_controller=rec.on_controller,
    )

    assert rec.messages == [("Hel", False)]
    assert len(rec.errors) == 1
    assert isinstance(rec.errors[0][0], RequestAborted)
    assert rec.errors[0][0].reason == "stopped"


@pytest.mark.asyncio
async def test_multibyte_characters_split_across_chunks(monkeypatch):
    encoded = "你好".encode("utf-8")
    install_stream(monkeypatch, FakeStreamResponse(chunks=[encoded[:2], encoded[2:]]), {})
    rec = Recorder()

    await _run(OpenAIClient(SettingsStub()), rec)

    assert rec.messages == [("", False), ("你好", False), ("你好", True)]


@pytest.mark.asyncio
async def test_sse_stream_format(monkeypatch):
    stub = SettingsStub()
    stub.stream_format = "sse"
    chunks = [
        b'data: {"choices":[{"delta":{"content":"He"}}]}\n\nda',
        b'ta: {"choices":[{"delta":{"content":"y"}}]}\n\ndata: [DONE]\n\n',
    ]
    install_stream(monkeypatch, FakeStreamResponse(chunks=chunks), {})
    rec = Recorder()

    await _run(OpenAIClient(stub), rec)

    assert rec.messages[-1] == ("Hey", True)
    assert [done for _, done in rec.messages].count(True) == 1


@pytest.mark.asyncio
async def test_open_stream_iterates_once(monkeypatch):
    install_stream(monkeypatch, FakeStreamResponse(chunks=[b"ok"]), {})
    stream = OpenAIClient(SettingsStub()).open_stream([Message(id=1, role="user", content="hi")])

    events = [event async for event in stream]

    assert [(e.text, e.done) for e in events] == [("ok", False), ("ok", True)]
    with pytest.raises(RuntimeError):
        stream.__aiter__()


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else ""

    def json(self):
        if self._payload is None:
            raise ValueError("not json")
        return self._payload


def install_plain(monkeypatch, responses, captured):
    class Client:
        def __init__(self, *args, **kwargs):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, *exc):
            return False

        async def post(self, url, json=None, headers=None):
            captured.update(url=url, json=json, headers=headers)
            return responses["post"]

        async def get(self, url, params=None, headers=None):
            captured.setdefault("gets", []).append((url, params))
            return responses[url.rsplit("/", 1)[-1]]

    monkeypatch.setattr("httpx.AsyncClient", Client)


@pytest.mark.asyncio
async def test_request_chat_parses_result(monkeypatch):
    captured = {}
    payload = {
        "choices": [{"index": 0, "message": {"role": "assistant", "content": "pong"}}],
        "usage": {"prompt_tokens": 4, "completion_tokens": 1, "total_tokens": 5},
    }
    install_plain(monkeypatch, {"post": FakeResponse(payload=payload)}, captured)

    res = await OpenAIClient(SettingsStub()).request_chat(
        [Message(id=1, role="user", content="ping")],
        model="gpt-4",
        temperature=0.7,
    )

    assert res.content == "pong"
    assert res.usage.completion_tokens == 1
    assert captured["json"]["stream"] is False
    assert captured["json"]["model"] == "gpt-4"
    assert captured["json"]["temperature"] == 0.7


@pytest.mark.asyncio
async def test_request_chat_malformed_body_returns_none(monkeypatch):
    install_plain(monkeypatch, {"post": FakeResponse(payload=None, text="<html>")}, {})

    res = await OpenAIClient(SettingsStub()).request_chat([Message(id=1, role="user", content="ping")])

    assert res is None


@pytest.mark.asyncio
async def test_request_chat_unauthorized_raises(monkeypatch):
    install_plain(monkeypatch, {"post": FakeResponse(status_code=401)}, {})

    with pytest.raises(UnauthorizedError):
        await OpenAIClient(SettingsStub()).request_chat([Message(id=1, role="user", content="ping")])


@pytest.mark.asyncio
async def test_request_with_prompt_appends_user_prompt(monkeypatch):
    captured = {}
    payload = {"choices": [{"message": {"role": "assistant", "content": "done"}}]}
    install_plain(monkeypatch, {"post": FakeResponse(payload=payload)}, captured)

    reply = await OpenAIClient(SettingsStub()).request_with_prompt(
        [Message(id=3, role="user", content="context")],
        "Summarize",
    )

    assert reply == "done"
    assert captured["json"]["messages"][-1] == {"role": "user", "content": "Summarize"}


@pytest.mark.asyncio
async def test_request_usage_rounds_values(monkeypatch):
    captured = {}
    install_plain(
        monkeypatch,
        {
            "usage": FakeResponse(payload={"total_usage": 1234.4}),
            "subscription": FakeResponse(payload={"hard_limit_usd": 120.456}),
        },
        captured,
    )

    report = await OpenAIClient(SettingsStub()).request_usage(today=date(2024, 5, 15))

    assert report.used == 12.34
    assert report.subscription == 120.46
    usage_call = [params for url, params in captured["gets"] if url.endswith("usage")][0]
    assert usage_call == {"start_date": "2024-05-01", "end_date": "2024-05-16"}


@pytest.mark.asyncio
async def test_request_usage_error_is_shown(monkeypatch):
    shown = []
    install_plain(
        monkeypatch,
        {
            "usage": FakeResponse(payload={"error": {"type": "invalid_request", "message": "no billing"}}),
            "subscription": FakeResponse(payload={}),
        },
        {},
    )

    report = await OpenAIClient(SettingsStub(), show_error=shown.append).request_usage(today=date(2024, 5, 15))

    assert report is None
    assert shown == ["no billing"]


def test_access_code_used_without_api_key():
    stub = SettingsStub()
    stub.api_key = None
    stub.enable_access_control = True
    stub.access_code = "secret"

    headers = OpenAIClient(stub).headers()

    assert headers == {"Authorization": "Bearer ak-secret"}


def test_no_credentials_no_authorization_header():
    stub = SettingsStub()
    stub.api_key = ""
    stub.enable_access_control = True
    stub.access_code = None

    assert OpenAIClient(stub).headers(content_type=True) == {"Content-Type": "application/json"}


@pytest.mark.asyncio
async def test_stalled_error_body_still_reports_once(monkeypatch):
    stub = SettingsStub()
    stub.request_timeout = 0.05
    stub.stream_idle_timeout = 0.05
    response = FakeStreamResponse(status_code=500, read_delay=10)
    install_stream(monkeypatch, response, {})
    rec = Recorder()

    await asyncio.wait_for(_run(OpenAIClient(stub), rec), timeout=2)

    assert rec.messages == []
    assert len(rec.errors) == 1
    error, status = rec.errors[0]
    assert isinstance(error, StreamError)
    assert status == 500
    assert response.closed


@pytest.mark.asyncio
async def test_request_chat_odd_shape_yields_no_content(monkeypatch):
    install_plain(monkeypatch, {"post": FakeResponse(payload={"choices": [None, {"message": "x"}]})}, {})

    res = await OpenAIClient(SettingsStub()).request_chat([Message(id=1, role="user", content="ping")])

    assert [c.message.content for c in res.choices] == [""]


def install_invalid_url(monkeypatch):
    class Client:
        def __init__(self, *args, **kwargs):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, *exc):
            return False

        async def post(self, url, json=None, headers=None):
            raise httpx.InvalidURL("Invalid URL")

        async def get(self, url, params=None, headers=None):
            raise httpx.InvalidURL("Invalid URL")

    monkeypatch.setattr("httpx.AsyncClient", Client)


@pytest.mark.asyncio
async def test_request_chat_invalid_url_is_network_error(monkeypatch):
    install_invalid_url(monkeypatch)

    with pytest.raises(NetworkError) as exc:
        await OpenAIClient(SettingsStub()).request_chat([Message(id=1, role="user", content="ping")])
    assert exc.value.code == "NETWORK_ERROR"


@pytest.mark.asyncio
async def test_request_usage_invalid_url_is_network_error(monkeypatch):
    install_invalid_url(monkeypatch)

    with pytest.raises(NetworkError):
        await OpenAIClient(SettingsStub()).request_usage(today=date(2024, 5, 15))
