"""Gemini REST adapter.

Pure HTTP: one call per method, no retries and no key selection.  The
dispatcher owns rotation; this module only turns Gemini responses into text
and Gemini failures into the ``BackendError`` taxonomy.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog

from contentforge.domain.exceptions import (
    BackendError,
    CredentialRevokedError,
    MalformedRequestError,
    NetworkTransientError,
    QuotaExhaustedError,
    ServerError,
    TransientThrottleError,
)
from contentforge.ports.outbound import GenerativeBackendPort
from contentforge.shared.providers.types import CallRequest

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

_QUOTA_MARKERS = ("exceeded your current quota", "billing", "per day", "perday")
_REVOKED_MARKERS = ("api_key_invalid", "api key not valid", "leaked", "permission_denied")


def classify_error(status_code: int, body: str) -> BackendError:
    """Map a Gemini error response onto the backend error taxonomy."""
    message, status = _error_details(body)
    haystack = f"{message} {body}".lower()

    if status_code == 429 or status == "RESOURCE_EXHAUSTED":
        if any(marker in haystack for marker in _QUOTA_MARKERS):
            return QuotaExhaustedError(f"Daily quota exhausted: {message}", status_code=status_code)
        return TransientThrottleError(f"Rate limited: {message}", status_code=status_code)
    if status_code in (401, 403) or any(marker in haystack for marker in _REVOKED_MARKERS):
        return CredentialRevokedError(f"API key rejected: {message}", status_code=status_code)
    if status_code == 400:
        return MalformedRequestError(f"Bad request: {message}", status_code=status_code)
    return ServerError(f"Gemini error {status_code}: {message}", status_code=status_code)


def _error_details(body: str) -> tuple[str, str]:
    try:
        error = json.loads(body).get("error", {})
    except (json.JSONDecodeError, AttributeError):
        return body[:300] or "no response body", ""
    if not isinstance(error, dict):
        return body[:300], ""
    return str(error.get("message", ""))[:300], str(error.get("status", ""))


def _candidate_text(data: dict[str, Any]) -> str:
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(p.get("text", "") for p in parts if isinstance(p, dict))


class GeminiBackend(GenerativeBackendPort):
    """Gemini ``generateContent`` / ``streamGenerateContent`` over httpx."""

    def __init__(
        self,
        *,
        model: str = "gemini-2.5-flash",
        base_url: str = DEFAULT_BASE_URL,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._model = model
        self._base_url = base_url.rstrip("/")
        # Per-call timeouts are enforced by the dispatcher.
        self._client = client or httpx.AsyncClient(timeout=None)

    # ── Request building ─────────────────────────────────────
    def _url(self, request: CallRequest, *, streaming: bool) -> str:
        model = request.model or self._model
        if streaming:
            return f"{self._base_url}/models/{model}:streamGenerateContent?alt=sse"
        return f"{self._base_url}/models/{model}:generateContent"

    @staticmethod
    def _headers(api_key: str) -> dict[str, str]:
        return {"x-goog-api-key": api_key, "Content-Type": "application/json"}

    @staticmethod
    def _body(request: CallRequest) -> dict[str, Any]:
        generation_config: dict[str, Any] = {"maxOutputTokens": request.max_output_size}
        if request.temperature is not None:
            generation_config["temperature"] = request.temperature
        # Grounded calls cannot use a JSON response MIME type.
        if request.json_mode and not request.grounding:
            generation_config["responseMimeType"] = "application/json"

        body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": request.content}]}],
            "generationConfig": generation_config,
        }
        if request.instruction:
            body["system_instruction"] = {"parts": [{"text": request.instruction}]}
        if request.grounding:
            body["tools"] = [{"google_search": {}}]
        return body

    # ── GenerativeBackendPort ────────────────────────────────
    async def generate(self, api_key: str, request: CallRequest) -> str:
        try:
            response = await self._client.post(
                self._url(request, streaming=False),
                headers=self._headers(api_key),
                json=self._body(request),
            )
        except httpx.TimeoutException as exc:
            raise NetworkTransientError(f"Gemini request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise NetworkTransientError(f"Gemini connection failed: {exc}") from exc

        if response.status_code >= 400:
            raise classify_error(response.status_code, response.text)

        try:
            data = response.json()
        except ValueError as exc:
            raise ServerError("Gemini returned a non-JSON body", status_code=response.status_code) from exc

        text = _candidate_text(data) if isinstance(data, dict) else ""
        if not text:
            reason = (data.get("promptFeedback") or {}).get("blockReason") if isinstance(data, dict) else None
            raise ServerError(
                f"Gemini returned no candidate text{f' (blocked: {reason})' if reason else ''}",
                status_code=response.status_code,
            )
        return text

    async def stream(self, api_key: str, request: CallRequest) -> AsyncIterator[str]:
        try:
            async with self._client.stream(
                "POST",
                self._url(request, streaming=True),
                headers=self._headers(api_key),
                json=self._body(request),
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise classify_error(response.status_code, response.text)

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    payload = line[len("data:"):].strip()
                    if not payload or payload == "[DONE]":
                        continue
                    try:
                        data = json.loads(payload)
                    except json.JSONDecodeError as exc:
                        raise ServerError("Gemini stream sent an unparseable event") from exc
                    if isinstance(data, dict) and "error" in data:
                        raise classify_error(int(data["error"].get("code", 500)), payload)
                    text = _candidate_text(data) if isinstance(data, dict) else ""
                    if text:
                        yield text
        except httpx.TimeoutException as exc:
            raise NetworkTransientError(f"Gemini stream timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise NetworkTransientError(f"Gemini stream connection failed: {exc}") from exc

    async def close(self) -> None:
        await self._client.aclose()
