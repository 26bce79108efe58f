from __future__ import annotations

import asyncio

import httpx
import pytest

from fateforge.modules.llm_boundary import client


class _FakeResponse:
    def __init__(self, *, status_code: int, payload: dict | None = None, text: str = ""):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = text
        self.request = httpx.Request("POST", "https://api.example.test/v1/chat/completions")

    def json(self) -> dict:
        return self._payload


class _FakeAsyncClient:
    scenarios: list[object] = []
    requests: list[dict] = []

    def __init__(self, *, timeout):
        self.timeout = timeout

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def post(self, url: str, *, headers: dict, json: dict):
        _FakeAsyncClient.requests.append({"url": url, "headers": headers, "json": json})
        if not _FakeAsyncClient.scenarios:
            raise RuntimeError("no fake scenario configured")
        outcome = _FakeAsyncClient.scenarios.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _install(monkeypatch: pytest.MonkeyPatch, *scenarios: object) -> None:
    _FakeAsyncClient.scenarios = list(scenarios)
    _FakeAsyncClient.requests = []
    monkeypatch.setattr(client.httpx, "AsyncClient", _FakeAsyncClient)


def _chat(**overrides) -> str:
    kwargs = {
        "api_key": "k",
        "base_url": "https://api.example.test/v1/",
        "path": client.CHAT_COMPLETIONS_PATH,
        "model": "m",
        "messages": [{"role": "system", "content": "gm"}, {"role": "user", "content": "act"}, {"role": "tool"}],
        "response_format": {"type": "json_object"},
        "timeout_s": 5.0,
    }
    kwargs.update(overrides)
    return asyncio.run(client.call_chat_completions(**kwargs))


def test_chat_completion_request_shape(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(
        monkeypatch,
        _FakeResponse(status_code=200, payload={"choices": [{"message": {"content": '{"narration":"ok"}'}}]}),
    )

    assert _chat() == '{"narration":"ok"}'

    req = _FakeAsyncClient.requests[0]
    assert req["url"] == "https://api.example.test/v1/chat/completions"
    assert req["headers"]["Authorization"] == "Bearer k"
    assert req["json"]["model"] == "m"
    assert req["json"]["response_format"] == {"type": "json_object"}
    assert req["json"]["messages"][0] == {"role": "system", "content": client.STRICT_SYSTEM_PROMPT}
    assert [m["role"] for m in req["json"]["messages"]] == ["system", "system", "user"]


def test_chat_completion_429_is_rate_limited(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, _FakeResponse(status_code=429, text="slow down"))

    with pytest.raises(client.LLMRateLimitedError) as exc:
        _chat()
    assert exc.value.status_code == 429
    assert client.is_rate_limit_error(exc.value)


def test_chat_completion_resource_exhausted_body_is_rate_limited(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, _FakeResponse(status_code=400, text='{"error": "RESOURCE_EXHAUSTED"}'))
    with pytest.raises(client.LLMRateLimitedError):
        _chat()


def test_chat_completion_server_error_is_plain_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, _FakeResponse(status_code=500, text="oops"))
    with pytest.raises(client.LLMCallError) as exc:
        _chat()
    assert not client.is_rate_limit_error(exc.value)


def test_transport_error_becomes_call_error(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, httpx.ConnectError("refused"))
    with pytest.raises(client.LLMCallError, match="transport error"):
        _chat()


def test_empty_content_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, _FakeResponse(status_code=200, payload={"choices": [{"message": {"content": "  "}}]}))
    with pytest.raises(client.LLMCallError, match="empty model content"):
        _chat()


def test_image_generation_prefers_inline_data(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, _FakeResponse(status_code=200, payload={"data": [{"b64_json": "QUJD"}]}))
    url = asyncio.run(
        client.call_image_generation(api_key="k", base_url="https://api.example.test/v1", model="img", prompt="p", timeout_s=5)
    )
    assert url == "data:image/png;base64,QUJD"
    assert _FakeAsyncClient.requests[0]["url"] == "https://api.example.test/v1/images/generations"
    assert client.extract_image_url({"data": [{"url": "https://img.example/x.png"}]}) == "https://img.example/x.png"
    with pytest.raises(client.LLMCallError):
        client.extract_image_url({"data": [{}]})
