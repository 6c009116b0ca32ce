"""Call dispatcher: one logical backend request over the credential pool.

Callers hand in a :class:`CallRequest`; the dispatcher picks a credential,
honours the rate gate and cooldowns, classifies failures, updates pool
health, and retries on the next credential until the attempt budget runs
out.  Streaming calls get the same treatment up to the first chunk; after
that a failure is surfaced to the consumer and never silently restarted.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, RetryError, retry_if_exception, stop_after_attempt

from contentforge.domain.exceptions import (
    AllCredentialsFailedError,
    BackendError,
    CredentialRevokedError,
    MalformedOutputError,
    MalformedRequestError,
    NetworkTransientError,
    QuotaExhaustedError,
    ServerError,
    StreamInterruptedError,
    TransientThrottleError,
)
from contentforge.ports.outbound import GenerativeBackendPort
from contentforge.shared.observability.metrics import BACKEND_CALL_LATENCY, BACKEND_CALLS_TOTAL
from contentforge.shared.providers.cooldown import backoff_with_jitter
from contentforge.shared.providers.extractor import StructuredExtractor
from contentforge.shared.providers.key_pool import CredentialPool
from contentforge.shared.providers.rate_gate import RateGate
from contentforge.shared.providers.types import CallOutcome, CallRecord, CallRequest, Credential

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_POOL_EXHAUSTED_MSG = (
    "All Gemini API keys daily quota exhausted. "
    "Wait for quota reset or add keys from different Google Cloud projects."
)

_RETRYABLE = (
    TransientThrottleError,
    QuotaExhaustedError,
    CredentialRevokedError,
    ServerError,
    NetworkTransientError,
    MalformedOutputError,
)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, QuotaExhaustedError) and exc.pool_wide:
        return False
    return isinstance(exc, _RETRYABLE)


def _outcome_for(exc: BaseException) -> CallOutcome:
    if isinstance(exc, QuotaExhaustedError):
        return CallOutcome.QUOTA_EXHAUSTED
    if isinstance(exc, TransientThrottleError):
        return CallOutcome.THROTTLED
    if isinstance(exc, CredentialRevokedError):
        return CallOutcome.REVOKED
    if isinstance(exc, MalformedRequestError):
        return CallOutcome.MALFORMED_REQUEST
    if isinstance(exc, MalformedOutputError):
        return CallOutcome.MALFORMED_OUTPUT
    if isinstance(exc, NetworkTransientError):
        return CallOutcome.NETWORK_ERROR
    return CallOutcome.SERVER_ERROR


@dataclass
class _DispatchState:
    """Per-call scratch space shared by the attempts of one logical request."""

    request: CallRequest
    errors: list[Exception] = field(default_factory=list)
    attempt: int = 0


@dataclass
class _OpenStream:
    iterator: AsyncIterator[str]
    first_chunk: str | None
    index: int
    started: float


class CallDispatcher:
    """Dispatches calls across a :class:`CredentialPool`.

    Args:
        pool:                 Shared credential pool.
        backend:              Adapter implementing :class:`GenerativeBackendPort`.
        gate:                 Per-credential spacing policy.
        extractor:            Structured-output recovery for JSON-mode calls.
        max_attempts:         Fixed attempt budget; defaults to ``min(pool.size + 1, max_attempts_cap)``.
        max_cooldown_wait_s:  Longest wait on a credential that is still cooling.
        throttle_backoff:     ``(base, max)`` seconds of jittered backoff after a throttle.
        server_backoff:       ``(base, max)`` seconds of jittered backoff after a 5xx.
        timeout_base_s:       Generation timeout; grows 1s per 1000 prompt chars ...
        timeout_max_s:        ... up to this ceiling.
        stream_idle_timeout_s: Longest gap allowed between two streamed chunks.
        fallback_model:       Model used once a JSON-mode response could not be recovered.
        sleep:                Injected for tests.
    """

    def __init__(
        self,
        pool: CredentialPool,
        backend: GenerativeBackendPort,
        *,
        gate: RateGate | None = None,
        extractor: StructuredExtractor | None = None,
        max_attempts: int | None = None,
        max_attempts_cap: int = 8,
        max_cooldown_wait_s: float = 30.0,
        throttle_backoff: tuple[float, float] = (2.0, 15.0),
        server_backoff: tuple[float, float] = (3.0, 20.0),
        timeout_base_s: float = 60.0,
        timeout_max_s: float = 120.0,
        stream_idle_timeout_s: float = 120.0,
        fallback_model: str | None = None,
        history_size: int = 200,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._pool = pool
        self._backend = backend
        self._gate = gate or RateGate()
        self._extractor = extractor or StructuredExtractor()
        self._max_attempts = max_attempts
        self._max_attempts_cap = max_attempts_cap
        self._max_cooldown_wait = max_cooldown_wait_s
        self._throttle_backoff = throttle_backoff
        self._server_backoff = server_backoff
        self._timeout_base = timeout_base_s
        self._timeout_max = timeout_max_s
        self._stream_idle_timeout = stream_idle_timeout_s
        self._fallback_model = fallback_model
        self._sleep = sleep
        self._history: deque[CallRecord] = deque(maxlen=history_size)

    @property
    def pool(self) -> CredentialPool:
        return self._pool

    # ── Non-streaming ────────────────────────────────────────
    async def dispatch(self, request: CallRequest) -> str:
        """Perform one logical call and return the (possibly extracted) text.

        Raises:
            QuotaExhaustedError: the whole pool is dead or daily-exhausted (no network call made).
            MalformedRequestError: the backend rejected the request itself.
            MalformedOutputError: JSON mode, every attempt returned unrecoverable output, no default.
            AllCredentialsFailedError: the attempt budget ran out.
        """
        self._fail_fast_if_exhausted()
        state = _DispatchState(request)
        try:
            return await self._with_retry(self._attempt, state)
        except RetryError as exc:
            last = exc.last_attempt.exception()
            if isinstance(last, MalformedOutputError):
                if request.has_default:
                    logger.warning("dispatch_defaulted", attempts=state.attempt)
                    return self._extractor.extract("", expect=request.expect, default=request.default)
                raise last from None
            raise AllCredentialsFailedError(state.errors) from last

    async def _attempt(self, state: _DispatchState) -> str:
        request = state.request
        cred, idx = await self._prepare(state)
        log = logger.bind(attempt=state.attempt, key_idx=idx)

        started = time.monotonic()
        try:
            text = await asyncio.wait_for(
                self._backend.generate(cred.secret, request),
                timeout=self._timeout_for(request),
            )
        except asyncio.TimeoutError:
            exc = NetworkTransientError(f"Timeout after {self._timeout_for(request):.0f}s")
            self._book_failure(idx, exc, state, started)
            raise exc from None
        except BackendError as exc:
            self._book_failure(idx, exc, state, started)
            raise

        latency = time.monotonic() - started
        self._pool.reward(idx)

        if request.json_mode:
            try:
                text = self._extractor.extract(text, expect=request.expect)
            except MalformedOutputError as exc:
                log.warning("dispatch_malformed_output", raw_preview=exc.raw[:200])
                self._record(idx, CallOutcome.MALFORMED_OUTPUT, latency, error=exc.message)
                state.errors.append(exc)
                state.request = request.strict_json(self._fallback_model)
                raise

        self._record(idx, CallOutcome.SUCCESS, latency)
        log.info("dispatch_success", latency_ms=round(latency * 1000, 1))
        return text

    # ── Streaming ────────────────────────────────────────────
    async def dispatch_streaming(self, request: CallRequest) -> AsyncIterator[str]:
        """Yield text chunks from one logical streaming call.

        Credential rotation happens only until the first chunk arrives.
        Later failures raise :class:`StreamInterruptedError`; the consumer
        decides whether to regenerate the unit of work.
        """
        self._fail_fast_if_exhausted()
        state = _DispatchState(request)
        try:
            opened = await self._with_retry(self._open_stream, state)
        except RetryError as exc:
            raise AllCredentialsFailedError(state.errors) from exc.last_attempt.exception()

        idx = opened.index
        iterator = opened.iterator
        delivered = 0
        try:
            if opened.first_chunk is not None:
                delivered += 1
                yield opened.first_chunk
            while True:
                try:
                    chunk = await asyncio.wait_for(
                        iterator.__anext__(), timeout=self._stream_idle_timeout
                    )
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    raise self._interrupted(
                        idx,
                        NetworkTransientError(f"Stream idle for {self._stream_idle_timeout:.0f}s"),
                        state,
                        delivered,
                    ) from None
                except BackendError as exc:
                    raise self._interrupted(idx, exc, state, delivered) from exc
                if chunk:
                    delivered += 1
                    yield chunk
        finally:
            await _aclose(iterator)

        self._pool.reward(idx)
        self._record(idx, CallOutcome.SUCCESS, time.monotonic() - opened.started, streaming=True)
        logger.info("stream_completed", key_idx=idx, chunks=delivered)

    async def _open_stream(self, state: _DispatchState) -> _OpenStream:
        request = state.request
        cred, idx = await self._prepare(state)
        started = time.monotonic()
        iterator = self._backend.stream(cred.secret, request)
        try:
            first = await asyncio.wait_for(iterator.__anext__(), timeout=self._timeout_for(request))
        except StopAsyncIteration:
            first = None
        except asyncio.TimeoutError:
            await _aclose(iterator)
            exc = NetworkTransientError(f"No stream data after {self._timeout_for(request):.0f}s")
            self._book_failure(idx, exc, state, started, streaming=True)
            raise exc from None
        except BackendError as exc:
            await _aclose(iterator)
            self._book_failure(idx, exc, state, started, streaming=True)
            raise

        BACKEND_CALL_LATENCY.labels(streaming="true").observe(time.monotonic() - started)
        return _OpenStream(iterator=iterator, first_chunk=first, index=idx, started=started)

    def _interrupted(
        self, idx: int, exc: BackendError, state: _DispatchState, delivered: int
    ) -> StreamInterruptedError:
        exc.credential_index = idx
        self._apply_penalty(idx, exc)
        self._record(idx, CallOutcome.STREAM_INTERRUPTED, 0.0, error=str(exc), streaming=True)
        logger.warning("stream_interrupted", key_idx=idx, chunks=delivered, error=str(exc))
        return StreamInterruptedError(
            f"Stream interrupted after {delivered} chunk(s): {exc.message}",
            chunks_delivered=delivered,
        )

    # ── Shared attempt plumbing ──────────────────────────────
    async def _with_retry(
        self, attempt_fn: Callable[[_DispatchState], Awaitable[T]], state: _DispatchState
    ) -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempt_budget),
            wait=self._backoff,
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._log_retry,
            sleep=self._sleep,
        )
        async for attempt in retrying:
            with attempt:
                state.attempt = attempt.retry_state.attempt_number
                result = await attempt_fn(state)
        return result

    @property
    def attempt_budget(self) -> int:
        if self._max_attempts is not None:
            return max(1, self._max_attempts)
        return max(1, min(self._pool.size + 1, self._max_attempts_cap))

    async def _prepare(self, state: _DispatchState) -> tuple[Credential, int]:
        """Select a credential and wait out its cooldown and rate gate.

        ``acquire`` is synchronous, so the cursor advance completes before
        the first suspension point below.
        """
        cred, idx = self._pool.acquire()

        cooling = self._pool.cooldown_remaining(idx)
        if cooling > 0 and cred.selectable:
            wait = min(cooling, self._max_cooldown_wait)
            logger.info("credential_cooling_wait", key_idx=idx, wait_s=round(wait, 3), attempt=state.attempt)
            await self._sleep(wait)

        # Reserve the slot before sleeping so concurrent callers queue behind it.
        gate_wait = self._gate.reserve(cred, self._pool.now(), self._pool.alive_count)
        if gate_wait > 0:
            await self._sleep(gate_wait)
        return cred, idx

    def _book_failure(
        self,
        idx: int,
        exc: BackendError,
        state: _DispatchState,
        started: float,
        *,
        streaming: bool = False,
    ) -> None:
        """Update pool health for a failed attempt, then fail fast if nothing usable is left."""
        exc.credential_index = idx
        state.errors.append(exc)
        self._apply_penalty(idx, exc)
        self._record(idx, _outcome_for(exc), time.monotonic() - started, error=str(exc), streaming=streaming)
        logger.warning(
            "dispatch_attempt_failed",
            attempt=state.attempt,
            key_idx=idx,
            error_type=type(exc).__name__,
            error=str(exc),
        )

        if isinstance(exc, MalformedRequestError):
            return
        if self._pool.alive_count == 0:
            raise AllCredentialsFailedError(state.errors) from exc
        if self._pool.all_exhausted():
            raise QuotaExhaustedError(_POOL_EXHAUSTED_MSG, pool_wide=True) from exc

    def _apply_penalty(self, idx: int, exc: BackendError) -> None:
        # Exactly one pool mutation per failed attempt.
        if isinstance(exc, QuotaExhaustedError):
            self._pool.penalize(idx, quota_exhausted=True)
        elif isinstance(exc, TransientThrottleError):
            self._pool.penalize(idx)
        elif isinstance(exc, CredentialRevokedError):
            self._pool.mark_dead(idx)
        elif not isinstance(exc, MalformedRequestError):
            self._pool.record_failure(idx)

    def _backoff(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        attempt = retry_state.attempt_number - 1
        if isinstance(exc, TransientThrottleError):
            base, cap = self._throttle_backoff
        elif isinstance(exc, ServerError):
            base, cap = self._server_backoff
        else:
            return 0.0
        if base <= 0:
            return 0.0
        return backoff_with_jitter(attempt, base_seconds=base, max_seconds=cap)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.info(
            "dispatch_retrying",
            attempt=retry_state.attempt_number,
            budget=self.attempt_budget,
            backoff_s=round(retry_state.next_action.sleep, 3) if retry_state.next_action else 0.0,
            error_type=type(exc).__name__ if exc else None,
        )

    def _timeout_for(self, request: CallRequest) -> float:
        scaled = self._timeout_base + (len(request.content) // 1000)
        return min(scaled, self._timeout_max)

    def _fail_fast_if_exhausted(self) -> None:
        if self._pool.all_exhausted():
            logger.error("dispatch_pool_exhausted", pool_size=self._pool.size)
            raise QuotaExhaustedError(_POOL_EXHAUSTED_MSG, pool_wide=True)

    # ── Telemetry ────────────────────────────────────────────
    def _record(
        self,
        idx: int,
        outcome: CallOutcome,
        latency_s: float,
        *,
        error: str | None = None,
        streaming: bool = False,
    ) -> None:
        self._history.append(
            CallRecord(
                timestamp=time.time(),
                credential_index=idx,
                outcome=outcome,
                latency_ms=round(latency_s * 1000, 1),
                streaming=streaming,
                error=error,
            )
        )
        label = "true" if streaming else "false"
        BACKEND_CALLS_TOTAL.labels(outcome=outcome.value, streaming=label).inc()
        if outcome is CallOutcome.SUCCESS and not streaming:
            BACKEND_CALL_LATENCY.labels(streaming=label).observe(latency_s)

    def recent_calls(self, limit: int = 20) -> list[CallRecord]:
        if limit <= 0:
            return []
        return list(self._history)[-limit:]


async def _aclose(iterator: AsyncIterator[str]) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is not None:
        await aclose()
