from __future__ import annotations

import io
import json
from urllib.error import HTTPError, URLError

import pytest

from toolloop.core import llm_provider as llm_provider_module
from toolloop.core.llm_provider import (
    MockModelClient,
    ModelTransportError,
    OpenAIChatModelClient,
    resolve_model_client,
)
from toolloop.core.models import Message


class _FakeHTTPResponse:
    def __init__(self, payload: dict) -> None:
        self._raw = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self._raw

    def __enter__(self) -> "_FakeHTTPResponse":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        return False


def _success_payload(content: str = '{"step":"final","answer":"ok"}') -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def _http_error(code: int, body: bytes) -> HTTPError:
    return HTTPError(
        url="https://api.openai.com/v1/chat/completions",
        code=code,
        msg="error",
        hdrs=None,
        fp=io.BytesIO(body),
    )


def _messages() -> list[Message]:
    return [Message.system("sys"), Message.user("hi")]


def test_chat_client_sends_messages_and_reads_content(monkeypatch) -> None:
    captured: list[tuple[str, dict, dict]] = []

    def _fake_urlopen(request, timeout=0):  # type: ignore[no-untyped-def]
        captured.append((request.full_url, json.loads(request.data.decode("utf-8")), dict(request.headers)))
        return _FakeHTTPResponse(_success_payload())

    monkeypatch.setattr(llm_provider_module, "urlopen", _fake_urlopen)

    client = OpenAIChatModelClient(api_key="test-key", model="gpt-4.1-mini", base_url="https://example.test/v1/")
    text = client.complete(_messages(), temperature=0.3, max_tokens=256)

    assert text == '{"step":"final","answer":"ok"}'
    url, body, headers = captured[0]
    assert url == "https://example.test/v1/chat/completions"
    assert body["messages"] == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "hi"},
    ]
    assert body["temperature"] == 0.3
    assert body["max_tokens"] == 256
    assert headers["Authorization"] == "Bearer test-key"


def test_chat_client_omits_temperature_for_gpt5(monkeypatch) -> None:
    captured: list[dict] = []

    def _fake_urlopen(request, timeout=0):  # type: ignore[no-untyped-def]
        captured.append(json.loads(request.data.decode("utf-8")))
        return _FakeHTTPResponse(_success_payload())

    monkeypatch.setattr(llm_provider_module, "urlopen", _fake_urlopen)

    OpenAIChatModelClient(api_key="k", model="gpt-5-mini").complete(_messages(), temperature=0.7)
    assert "temperature" not in captured[0]
    assert "max_tokens" not in captured[0]


def test_chat_client_retries_without_temperature(monkeypatch) -> None:
    captured: list[dict] = []

    def _fake_urlopen(request, timeout=0):  # type: ignore[no-untyped-def]
        captured.append(json.loads(request.data.decode("utf-8")))
        if len(captured) == 1:
            raise _http_error(
                400, b'{"error":{"message":"Unsupported parameter: \'temperature\'"}}'
            )
        return _FakeHTTPResponse(_success_payload("hi"))

    monkeypatch.setattr(llm_provider_module, "urlopen", _fake_urlopen)

    text = OpenAIChatModelClient(api_key="k", model="gpt-4.1").complete(_messages(), temperature=0.2)
    assert text == "hi"
    assert captured[0]["temperature"] == 0.2
    assert "temperature" not in captured[1]


def test_chat_client_retries_on_rate_limit(monkeypatch) -> None:
    attempts = {"count": 0}

    def _fake_urlopen(request, timeout=0):  # type: ignore[no-untyped-def]
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise _http_error(429, b"slow down")
        return _FakeHTTPResponse(_success_payload("after retry"))

    monkeypatch.setattr(llm_provider_module, "urlopen", _fake_urlopen)
    monkeypatch.setattr(llm_provider_module.time, "sleep", lambda _s: None)

    client = OpenAIChatModelClient(api_key="k", model="gpt-4.1", max_retries=1)
    assert client.complete(_messages(), temperature=0.5) == "after retry"
    assert attempts["count"] == 2


def test_chat_client_raises_transport_error(monkeypatch) -> None:
    def _fake_urlopen(request, timeout=0):  # type: ignore[no-untyped-def]
        raise URLError("connection refused")

    monkeypatch.setattr(llm_provider_module, "urlopen", _fake_urlopen)

    with pytest.raises(ModelTransportError):
        OpenAIChatModelClient(api_key="k", model="m").complete(_messages(), temperature=0.5)


def test_chat_client_rejects_empty_content(monkeypatch) -> None:
    monkeypatch.setattr(
        llm_provider_module,
        "urlopen",
        lambda request, timeout=0: _FakeHTTPResponse({"choices": []}),
    )
    with pytest.raises(ModelTransportError):
        OpenAIChatModelClient(api_key="k", model="m").complete(_messages(), temperature=0.5)


def test_content_parts_are_joined(monkeypatch) -> None:
    payload = {
        "choices": [
            {"message": {"content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}}
        ]
    }
    monkeypatch.setattr(
        llm_provider_module, "urlopen", lambda request, timeout=0: _FakeHTTPResponse(payload)
    )
    assert OpenAIChatModelClient(api_key="k", model="m").complete(_messages(), temperature=0.5) == "ab"


def test_mock_client_returns_final_step() -> None:
    reply = MockModelClient("hello").complete(_messages(), temperature=0.0)
    assert json.loads(reply) == {"step": "final", "answer": "hello"}


def test_resolve_model_client() -> None:
    assert isinstance(resolve_model_client("mock"), MockModelClient)
    client = resolve_model_client("openrouter", api_key="k", model="openai/gpt-4o-mini")
    assert isinstance(client, OpenAIChatModelClient)
    assert client.base_url == "https://openrouter.ai/api/v1"
    with pytest.raises(ValueError):
        resolve_model_client("openai", model="gpt-4.1")
    with pytest.raises(ValueError):
        resolve_model_client("openai", api_key="k")
