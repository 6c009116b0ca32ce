"""Tests for the Gemini REST adapter using httpx.MockTransport."""

from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import pytest

from contentforge.adapters.outbound.llm import GeminiBackend, classify_error
from contentforge.domain.exceptions import (
    CredentialRevokedError,
    MalformedRequestError,
    NetworkTransientError,
    QuotaExhaustedError,
    ServerError,
    TransientThrottleError,
)
from contentforge.shared.providers import CallRequest

BASE = "https://gemini.test/v1beta"


def _candidate(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}], "role": "model"}}]}


def _error(code: int, status: str, message: str) -> dict:
    return {"error": {"code": code, "status": status, "message": message}}


def _backend(handler: Callable[[httpx.Request], httpx.Response]) -> GeminiBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GeminiBackend(model="gemini-test", base_url=BASE, client=client)


def _request(**kwargs) -> CallRequest:
    kwargs.setdefault("instruction", "system prompt")
    kwargs.setdefault("content", "user prompt")
    return CallRequest(**kwargs)


# ═══════════════════════════════════════════════════════════════
#  Error classification
# ═══════════════════════════════════════════════════════════════
class TestClassifyError:
    def test_plain_rate_limit(self) -> None:
        body = json.dumps(_error(429, "RESOURCE_EXHAUSTED", "Resource has been exhausted (e.g. check quota)."))
        assert isinstance(classify_error(429, body), TransientThrottleError)

    def test_daily_quota(self) -> None:
        body = json.dumps(
            _error(429, "RESOURCE_EXHAUSTED", "You exceeded your current quota, please check your plan and billing details.")
        )
        exc = classify_error(429, body)
        assert isinstance(exc, QuotaExhaustedError)
        assert not exc.pool_wide

    def test_per_day_quota_id(self) -> None:
        body = json.dumps(_error(429, "RESOURCE_EXHAUSTED", "Quota exceeded for GenerateRequestsPerDayPerProjectPerModel"))
        assert isinstance(classify_error(429, body), QuotaExhaustedError)

    def test_invalid_key_on_400(self) -> None:
        body = json.dumps(_error(400, "INVALID_ARGUMENT", "API key not valid. Please pass a valid API key."))
        assert isinstance(classify_error(400, body), CredentialRevokedError)

    def test_forbidden(self) -> None:
        body = json.dumps(_error(403, "PERMISSION_DENIED", "Your API key was reported as leaked."))
        assert isinstance(classify_error(403, body), CredentialRevokedError)

    def test_other_400_is_malformed_request(self) -> None:
        body = json.dumps(_error(400, "INVALID_ARGUMENT", "Invalid JSON payload received."))
        assert isinstance(classify_error(400, body), MalformedRequestError)

    def test_server_error_keeps_status(self) -> None:
        exc = classify_error(503, "upstream overloaded")
        assert isinstance(exc, ServerError)
        assert exc.status_code == 503


# ═══════════════════════════════════════════════════════════════
#  generateContent
# ═══════════════════════════════════════════════════════════════
class TestGenerate:
    @pytest.mark.asyncio
    async def test_builds_request_and_returns_text(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=_candidate('{"a": 1}'))

        backend = _backend(handler)
        text = await backend.generate("secret-key", _request(json_mode=True, temperature=0.3, max_output_size=1024))

        assert text == '{"a": 1}'
        req = seen[0]
        assert req.url.path == "/v1beta/models/gemini-test:generateContent"
        assert req.headers["x-goog-api-key"] == "secret-key"
        assert "key=" not in str(req.url)
        body = json.loads(req.content)
        assert body["system_instruction"] == {"parts": [{"text": "system prompt"}]}
        assert body["contents"][0]["parts"][0]["text"] == "user prompt"
        assert body["generationConfig"] == {
            "maxOutputTokens": 1024,
            "temperature": 0.3,
            "responseMimeType": "application/json",
        }
        assert "tools" not in body
        await backend.close()

    @pytest.mark.asyncio
    async def test_grounding_adds_search_tool_and_drops_json_mime(self) -> None:
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=_candidate("grounded"))

        backend = _backend(handler)
        await backend.generate("k", _request(json_mode=True, grounding=True))

        assert bodies[0]["tools"] == [{"google_search": {}}]
        assert "responseMimeType" not in bodies[0]["generationConfig"]

    @pytest.mark.asyncio
    async def test_request_model_overrides_default(self) -> None:
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(200, json=_candidate("x"))

        await _backend(handler).generate("k", _request(model="gemini-2.0-flash"))
        assert paths == ["/v1beta/models/gemini-2.0-flash:generateContent"]

    @pytest.mark.asyncio
    async def test_multi_part_candidate_is_joined(self) -> None:
        payload = {"candidates": [{"content": {"parts": [{"text": "Hello, "}, {"text": "world"}]}}]}
        backend = _backend(lambda request: httpx.Response(200, json=payload))
        assert await backend.generate("k", _request()) == "Hello, world"

    @pytest.mark.asyncio
    async def test_error_status_is_classified(self) -> None:
        backend = _backend(
            lambda request: httpx.Response(429, json=_error(429, "RESOURCE_EXHAUSTED", "Too many requests"))
        )
        with pytest.raises(TransientThrottleError):
            await backend.generate("k", _request())

    @pytest.mark.asyncio
    async def test_missing_candidate_is_server_error(self) -> None:
        backend = _backend(
            lambda request: httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})
        )
        with pytest.raises(ServerError, match="SAFETY"):
            await backend.generate("k", _request())

    @pytest.mark.asyncio
    async def test_non_json_body_is_server_error(self) -> None:
        backend = _backend(lambda request: httpx.Response(200, content=b"<html>oops</html>"))
        with pytest.raises(ServerError):
            await backend.generate("k", _request())

    @pytest.mark.asyncio
    async def test_transport_failure_is_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(NetworkTransientError):
            await _backend(handler).generate("k", _request())

    @pytest.mark.asyncio
    async def test_timeout_is_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(NetworkTransientError):
            await _backend(handler).generate("k", _request())


# ═══════════════════════════════════════════════════════════════
#  streamGenerateContent (SSE)
# ═══════════════════════════════════════════════════════════════
def _sse(*events: dict) -> bytes:
    return "".join(f"data: {json.dumps(e)}\r\n\r\n" for e in events).encode()


class TestStream:
    @pytest.mark.asyncio
    async def test_yields_text_from_events(self) -> None:
        urls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            urls.append(str(request.url))
            return httpx.Response(
                200,
                content=_sse(_candidate("Once "), _candidate("upon "), {"usageMetadata": {}}, _candidate("a time")),
                headers={"content-type": "text/event-stream"},
            )

        backend = _backend(handler)
        chunks = [c async for c in backend.stream("k", _request(stream=True))]

        assert chunks == ["Once ", "upon ", "a time"]
        assert urls[0].endswith("/models/gemini-test:streamGenerateContent?alt=sse")

    @pytest.mark.asyncio
    async def test_error_status_raises_on_first_chunk(self) -> None:
        backend = _backend(
            lambda request: httpx.Response(403, json=_error(403, "PERMISSION_DENIED", "API key leaked"))
        )
        stream = backend.stream("k", _request(stream=True))
        with pytest.raises(CredentialRevokedError):
            await stream.__anext__()

    @pytest.mark.asyncio
    async def test_unparseable_event_is_server_error(self) -> None:
        backend = _backend(lambda request: httpx.Response(200, content=b"data: {not json\n\n"))
        with pytest.raises(ServerError):
            [c async for c in backend.stream("k", _request(stream=True))]

    @pytest.mark.asyncio
    async def test_error_event_is_classified(self) -> None:
        body = _sse(_candidate("partial"), _error(500, "INTERNAL", "Internal error"))
        backend = _backend(lambda request: httpx.Response(200, content=body))

        received: list[str] = []
        with pytest.raises(ServerError):
            async for chunk in backend.stream("k", _request(stream=True)):
                received.append(chunk)
        assert received == ["partial"]
