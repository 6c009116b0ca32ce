"""Shared test fixtures."""

from __future__ import annotations

import math
from collections.abc import AsyncIterator
from typing import Any, Callable

import pytest

from contentforge.ports.outbound import GenerativeBackendPort
from contentforge.shared.providers import CallDispatcher, CallRequest, CredentialPool, RateGate

NO_GATE = ((math.inf, 0.0),)


class FakeClock:
    """Monotonic clock that only moves when told to (or when something sleeps on it)."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeBackend(GenerativeBackendPort):
    """Scripted backend.

    ``script`` maps an API key to the outcomes of successive calls made with
    that key.  An outcome is a string (returned), an exception (raised), or
    for streaming a list of chunks where any exception item is raised in
    place.  Once a key's script runs out, calls return ``default_text``.
    """

    def __init__(
        self,
        script: dict[str, list[Any]] | None = None,
        *,
        default_text: str = '{"ok": true}',
        clock: FakeClock | None = None,
        latency: float = 0.0,
    ) -> None:
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.default_text = default_text
        self.calls: list[tuple[str, CallRequest]] = []
        self.closed = False
        self._clock = clock
        self._latency = latency

    def _next(self, api_key: str, request: CallRequest) -> Any:
        self.calls.append((api_key, request))
        if self._clock is not None:
            self._clock.advance(self._latency)
        queue = self.script.get(api_key)
        if queue:
            return queue.pop(0)
        return self.default_text

    @property
    def keys_called(self) -> list[str]:
        return [k for k, _ in self.calls]

    async def generate(self, api_key: str, request: CallRequest) -> str:
        outcome = self._next(api_key, request)
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, list):
            return "".join(outcome)
        return outcome

    async def stream(self, api_key: str, request: CallRequest) -> AsyncIterator[str]:
        outcome = self._next(api_key, request)
        if isinstance(outcome, BaseException):
            raise outcome
        chunks = outcome if isinstance(outcome, list) else [outcome]
        for chunk in chunks:
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_pool(clock: FakeClock) -> Callable[..., CredentialPool]:
    def _make(secrets: list[str], **kwargs: Any) -> CredentialPool:
        kwargs.setdefault("clock", clock)
        return CredentialPool(secrets, **kwargs)

    return _make


@pytest.fixture
def make_dispatcher(clock: FakeClock) -> Callable[..., CallDispatcher]:
    """Dispatcher with no rate-gate spacing, no backoff, and the fake clock's sleep."""

    def _make(pool: CredentialPool, backend: GenerativeBackendPort, **kwargs: Any) -> CallDispatcher:
        kwargs.setdefault("gate", RateGate(NO_GATE))
        kwargs.setdefault("throttle_backoff", (0.0, 0.0))
        kwargs.setdefault("server_backoff", (0.0, 0.0))
        kwargs.setdefault("sleep", clock.sleep)
        kwargs.setdefault("fallback_model", "fallback-model")
        return CallDispatcher(pool, backend, **kwargs)

    return _make


@pytest.fixture
def keys() -> list[str]:
    return ["AIzaKey-000-aaaaaaaa", "AIzaKey-111-bbbbbbbb", "AIzaKey-222-cccccccc"]
