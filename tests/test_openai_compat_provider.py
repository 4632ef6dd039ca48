import asyncio
import json as json_module

import httpx
import pytest

from taleturn.modules.llm.errors import EmptyCompletionError, UpstreamFailure
from taleturn.modules.llm.providers.openai_compat import OpenAICompatProvider
from tests.support.pipeline import RecordedSleep, make_client


class _FakeResponse:
    def __init__(self, data: dict | None, *, text: str = ""):
        self._data = data
        self._text = text

    def raise_for_status(self) -> None:
        return None

    def json(self) -> dict:
        if self._data is None:
            return json_module.loads(self._text)
        return self._data


class _FakeAsyncClient:
    last_init_timeout = None
    last_request = None
    content = '{"txt":"ok"}'
    body: dict | None = None
    raw_text: str | None = None

    def __init__(self, *, timeout):
        _FakeAsyncClient.last_init_timeout = timeout

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def post(self, url: str, *, headers: dict, json: dict):
        _FakeAsyncClient.last_request = {
            "url": url,
            "headers": headers,
            "json": json,
        }
        if _FakeAsyncClient.raw_text is not None:
            return _FakeResponse(None, text=_FakeAsyncClient.raw_text)
        if _FakeAsyncClient.body is not None:
            return _FakeResponse(_FakeAsyncClient.body)
        return _FakeResponse(
            {
                "choices": [{"message": {"content": _FakeAsyncClient.content}}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 34},
            }
        )


def _messages() -> list[dict]:
    return [{"role": "system", "content": "sys"}, {"role": "user", "content": "hello"}]


def test_payload_uses_configured_temperature_and_max_tokens(monkeypatch) -> None:
    monkeypatch.setattr("taleturn.modules.llm.providers.openai_compat.httpx.AsyncClient", _FakeAsyncClient)
    _FakeAsyncClient.content = '{"txt":"ok"}'
    provider = OpenAICompatProvider(
        api_key="test-key",
        base_url="http://example.test/v1/",
        temperature=0.1,
        max_tokens=512,
    )

    result, usage = asyncio.run(provider.generate(_messages(), timeout_s=30.0, model="story-model"))

    assert result == '{"txt":"ok"}'
    assert usage["prompt_tokens"] == 12
    assert usage["completion_tokens"] == 34
    assert usage["provider"] == "openai_compat"

    req = _FakeAsyncClient.last_request or {}
    assert req["url"] == "http://example.test/v1/chat/completions"
    assert req["headers"]["authorization"] == "Bearer test-key"
    assert req["json"]["temperature"] == 0.1
    assert req["json"]["max_tokens"] == 512
    assert req["json"]["messages"] == _messages()
    assert req["json"]["response_format"] == {"type": "json_object"}
    assert isinstance(_FakeAsyncClient.last_init_timeout, httpx.Timeout)


def test_overrides_win_over_configured_values(monkeypatch) -> None:
    monkeypatch.setattr("taleturn.modules.llm.providers.openai_compat.httpx.AsyncClient", _FakeAsyncClient)
    _FakeAsyncClient.content = '{"txt":"ok"}'
    provider = OpenAICompatProvider(api_key="k", base_url="http://example.test/v1", max_tokens=512)

    asyncio.run(
        provider.generate(
            _messages(),
            timeout_s=5.0,
            model="m",
            max_tokens_override=64,
            temperature_override=0.0,
        )
    )

    req = _FakeAsyncClient.last_request or {}
    assert req["json"]["max_tokens"] == 64
    assert req["json"]["temperature"] == 0.0


def test_empty_completion_is_reported(monkeypatch) -> None:
    monkeypatch.setattr("taleturn.modules.llm.providers.openai_compat.httpx.AsyncClient", _FakeAsyncClient)
    _FakeAsyncClient.content = "   "
    provider = OpenAICompatProvider(api_key="k", base_url="http://example.test/v1")

    with pytest.raises(EmptyCompletionError):
        asyncio.run(provider.generate(_messages(), timeout_s=5.0, model="m"))


@pytest.mark.parametrize("body", [{"choices": []}, {"usage": {}}, {"choices": None}, {"choices": ["text"]}])
def test_missing_choices_is_reported_as_empty_completion(monkeypatch, body) -> None:
    monkeypatch.setattr("taleturn.modules.llm.providers.openai_compat.httpx.AsyncClient", _FakeAsyncClient)
    monkeypatch.setattr(_FakeAsyncClient, "body", body)
    provider = OpenAICompatProvider(api_key="k", base_url="http://example.test/v1")

    with pytest.raises(EmptyCompletionError):
        asyncio.run(provider.generate(_messages(), timeout_s=5.0, model="m"))


def test_undecodable_body_is_reported_as_empty_completion(monkeypatch) -> None:
    monkeypatch.setattr("taleturn.modules.llm.providers.openai_compat.httpx.AsyncClient", _FakeAsyncClient)
    monkeypatch.setattr(_FakeAsyncClient, "raw_text", "<html>bad gateway</html>")
    provider = OpenAICompatProvider(api_key="k", base_url="http://example.test/v1")

    with pytest.raises(EmptyCompletionError):
        asyncio.run(provider.generate(_messages(), timeout_s=5.0, model="m"))


def test_empty_choices_are_retried_then_surface_as_upstream_failure(monkeypatch) -> None:
    monkeypatch.setattr("taleturn.modules.llm.providers.openai_compat.httpx.AsyncClient", _FakeAsyncClient)
    monkeypatch.setattr(_FakeAsyncClient, "body", {"choices": []})
    sleep = RecordedSleep()
    client = make_client(OpenAICompatProvider(api_key="k", base_url="http://example.test/v1"), sleep=sleep)

    with pytest.raises(UpstreamFailure) as exc:
        asyncio.run(client.call_with_retry(_messages()))

    assert exc.value.attempts == 3
    assert isinstance(exc.value.last_error, EmptyCompletionError)
    assert sleep.delays == [1.0, 2.0]
