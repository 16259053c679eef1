from __future__ import annotations

import json
from types import SimpleNamespace

import pytest
import requests

from src.xrai.domain.errors import ProviderStreamError
from src.xrai.services import chat_ai
from src.xrai.services.chat_ai import (
    AnthropicClient,
    GenerationRequest,
    LangChainChatClient,
    OpenAICompatibleClient,
    RoutedProvider,
    build_provider_client,
    describe_provider_error,
)
from src.xrai.services.model_router import ModelRouter


class FakeResponse:
    def __init__(self, lines, status_code=200, body=None):
        self._lines = lines
        self.status_code = status_code
        self._body = body or {}
        self.text = json.dumps(self._body)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def iter_lines(self):
        for line in self._lines:
            yield line.encode("utf-8")

    def json(self):
        return self._body


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


def _openai_line(text):
    return "data: " + json.dumps({"choices": [{"delta": {"content": text}}]})


REQUEST = GenerationRequest(prompt="make a cube", model="m", temperature=0.7, top_p=0.9, system_prompt="sys")


def test_openai_compatible_stream_parses_sse():
    session = FakeSession(FakeResponse([": keep-alive", _openai_line("Hel"), "", _openai_line("lo"), "data: [DONE]", _openai_line("ignored")]))
    client = OpenAICompatibleClient("https://api.together.xyz/v1/", "default", "key", provider_name="together", session=session)

    deltas = list(client.stream(REQUEST))

    assert [d.text for d in deltas] == ["Hel", "lo", ""]
    assert deltas[-1].is_final
    url, kwargs = session.calls[0]
    assert url == "https://api.together.xyz/v1/chat/completions"
    assert kwargs["headers"]["Authorization"] == "Bearer key"
    assert kwargs["json"]["messages"][0] == {"role": "system", "content": "sys"}
    assert kwargs["json"]["temperature"] == 0.7 and kwargs["json"]["top_p"] == 0.9
    assert kwargs["stream"] is True


@pytest.mark.parametrize(
    "status,kind",
    [(401, "authentication"), (403, "authentication"), (429, "rate_limit"), (500, "unknown")],
)
def test_http_errors_are_classified(status, kind):
    session = FakeSession(FakeResponse([], status_code=status, body={"error": {"message": "nope"}}))
    client = OpenAICompatibleClient("http://x", "m", "k", session=session)
    with pytest.raises(ProviderStreamError) as excinfo:
        list(client.stream(REQUEST))
    assert excinfo.value.kind == kind
    assert excinfo.value.status_code == status


def test_transport_errors_are_classified():
    timeout_client = OpenAICompatibleClient("http://x", "m", session=FakeSession(error=requests.exceptions.ReadTimeout("slow")))
    with pytest.raises(ProviderStreamError) as excinfo:
        list(timeout_client.stream(REQUEST))
    assert excinfo.value.kind == "timeout"

    network_client = OpenAICompatibleClient("http://x", "m", session=FakeSession(error=requests.exceptions.ConnectionError("refused")))
    with pytest.raises(ProviderStreamError) as excinfo:
        list(network_client.stream(REQUEST))
    assert excinfo.value.kind == "network"


def test_empty_stream_is_an_error():
    client = OpenAICompatibleClient("http://x", "m", session=FakeSession(FakeResponse(["data: [DONE]"])))
    with pytest.raises(ProviderStreamError) as excinfo:
        list(client.stream(REQUEST))
    assert excinfo.value.kind == "empty_response"


def test_anthropic_stream_parses_content_block_deltas():
    lines = [
        "event: message_start",
        "data: " + json.dumps({"type": "message_start"}),
        "event: content_block_delta",
        "data: " + json.dumps({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "A "}}),
        "data: " + json.dumps({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "cube"}}),
        "data: " + json.dumps({"type": "message_stop"}),
    ]
    session = FakeSession(FakeResponse(lines))
    client = AnthropicClient("key", "claude-3-5-sonnet-latest", session=session)

    assert "".join(d.text for d in client.stream(REQUEST)) == "A cube"
    url, kwargs = session.calls[0]
    assert url.endswith("/messages")
    assert kwargs["headers"]["x-api-key"] == "key"
    assert kwargs["json"]["system"] == "sys"
    assert kwargs["json"]["messages"] == [{"role": "user", "content": "make a cube"}]


def test_anthropic_error_event():
    lines = ["data: " + json.dumps({"type": "error", "error": {"type": "overloaded_error", "message": "busy"}})]
    client = AnthropicClient("key", "claude", session=FakeSession(FakeResponse(lines)))
    with pytest.raises(ProviderStreamError) as excinfo:
        list(client.stream(REQUEST))
    assert excinfo.value.kind == "rate_limit"


def test_langchain_client_streams_chunks():
    captured = {}

    class FakeLLM:
        def stream(self, messages):
            captured["messages"] = messages
            yield SimpleNamespace(content="Hi ")
            yield SimpleNamespace(content="")
            yield SimpleNamespace(content="there")

    client = LangChainChatClient("key", "gpt-4o-mini", llm=FakeLLM())
    assert "".join(d.text for d in client.stream(REQUEST)) == "Hi there"
    assert captured["messages"] == [("system", "sys"), ("human", "make a cube")]


def test_langchain_sdk_errors_classified_by_name():
    class RateLimitError(Exception):
        status_code = 429

    class FakeLLM:
        def stream(self, messages):
            raise RateLimitError("slow down")
            yield  # pragma: no cover

    client = LangChainChatClient("key", "gpt-4o-mini", llm=FakeLLM())
    with pytest.raises(ProviderStreamError) as excinfo:
        list(client.stream(REQUEST))
    assert excinfo.value.kind == "rate_limit"


def test_breaker_cycle(monkeypatch):
    monkeypatch.setattr(chat_ai, "_BREAKER_STATE", {"fails": 0, "opened_at": 0.0}, raising=False)
    monkeypatch.setattr(chat_ai, "_BREAKER_THRESHOLD", 2, raising=False)
    monkeypatch.setattr(chat_ai, "_BREAKER_COOLDOWN", 5.0, raising=False)

    clock = SimpleNamespace(current=100.0)
    monkeypatch.setattr(chat_ai, "time", SimpleNamespace(time=lambda: clock.current))

    chat_ai._record_fail()
    assert not chat_ai._breaker_open()
    chat_ai._record_fail()
    assert chat_ai._breaker_open()

    client = OpenAICompatibleClient("http://x", "m", session=FakeSession(FakeResponse([_openai_line("never")])))
    with pytest.raises(ProviderStreamError) as excinfo:
        list(client.stream(REQUEST))
    assert excinfo.value.kind == "circuit_open"

    clock.current += 10.0
    assert not chat_ai._breaker_open()
    chat_ai._record_fail()
    chat_ai._record_success()
    assert chat_ai._BREAKER_STATE["fails"] == 0


def test_build_provider_client_requires_key():
    selection = ModelRouter(env={}).resolve_provider("together")
    with pytest.raises(ProviderStreamError) as excinfo:
        build_provider_client(selection, env={})
    assert excinfo.value.kind == "configuration"


def test_build_provider_client_picks_client_per_provider():
    env = {"TOGETHER_API_KEY": "t", "OPENAI_API_KEY": "o", "ANTHROPIC_API_KEY": "a"}
    router = ModelRouter(env=env)
    assert isinstance(build_provider_client(router.resolve_provider("together"), env), OpenAICompatibleClient)
    assert isinstance(build_provider_client(router.resolve_provider("openai"), env), LangChainChatClient)
    assert isinstance(build_provider_client(router.resolve_provider("anthropic"), env), AnthropicClient)


def test_routed_provider_without_keys_fails_as_configuration():
    provider = RoutedProvider(env={})
    with pytest.raises(ProviderStreamError) as excinfo:
        list(provider.stream(REQUEST))
    assert excinfo.value.kind == "configuration"


@pytest.mark.parametrize(
    "kind,needle",
    [
        ("configuration", "No AI provider is configured"),
        ("authentication", "Authentication failed"),
        ("rate_limit", "Rate limit exceeded"),
        ("timeout", "took too long"),
        ("network", "Network error"),
        ("circuit_open", "temporarily unavailable"),
        ("empty_response", "Empty response"),
        ("unknown", "something went wrong"),
    ],
)
def test_describe_provider_error(kind, needle):
    text = describe_provider_error(ProviderStreamError("raw detail", kind=kind))
    assert needle in text
    assert "raw detail" not in text
