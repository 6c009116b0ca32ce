"""AI call service used by the content pipeline.

Pipeline steps (outline merging, entity gaps, n-grams, article streaming)
talk to the generative backend only through :class:`AIClient`.  Key
selection, cooldowns, retries and JSON recovery live in the dispatcher;
this layer just builds requests and decodes results.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from typing import Any, TypeVar

import structlog

from contentforge.application.decoders import Decoded, Decoder
from contentforge.shared.providers.dispatcher import CallDispatcher
from contentforge.shared.providers.types import MISSING, CallRequest

logger = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class AIClient:
    """Orchestrator-facing call contract over a :class:`CallDispatcher`."""

    def __init__(
        self,
        dispatcher: CallDispatcher,
        *,
        model: str | None = None,
        batch_size: int = 3,
        batch_delay_s: float = 1.0,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._dispatcher = dispatcher
        self._model = model
        self._batch_size = batch_size
        self._batch_delay_s = batch_delay_s

    @property
    def dispatcher(self) -> CallDispatcher:
        return self._dispatcher

    async def call(
        self,
        instruction: str,
        content: str,
        *,
        temperature: float | None = None,
        max_output_size: int = 8192,
        json_mode: bool = True,
        grounding: bool = False,
        expect: type | None = None,
        default: Any = MISSING,
    ) -> str:
        """Run one non-streaming call.

        In JSON mode the returned text is guaranteed to parse (or is the
        JSON encoding of *default*).
        """
        request = CallRequest(
            instruction=instruction,
            content=content,
            temperature=temperature,
            max_output_size=max_output_size,
            json_mode=json_mode,
            grounding=grounding,
            model=self._model,
            expect=expect,
            default=default,
        )
        started = time.monotonic()
        text = await self._dispatcher.dispatch(request)
        logger.info(
            "ai_call_completed",
            json_mode=json_mode,
            grounding=grounding,
            prompt_chars=len(content),
            response_chars=len(text),
            elapsed_ms=round((time.monotonic() - started) * 1000, 1),
        )
        return text

    async def call_json(
        self,
        instruction: str,
        content: str,
        decoder: Decoder,
        *,
        temperature: float | None = None,
        max_output_size: int = 8192,
        grounding: bool = False,
    ) -> Decoded[dict[str, Any]]:
        """Call in JSON mode and run the payload through a schema decoder."""
        text = await self.call(
            instruction,
            content,
            temperature=temperature,
            max_output_size=max_output_size,
            json_mode=True,
            grounding=grounding,
            expect=dict,
        )
        return decoder(json.loads(text))

    def call_streaming(
        self,
        instruction: str,
        content: str,
        *,
        temperature: float = 0.7,
        max_output_size: int = 32768,
        grounding: bool = False,
    ) -> AsyncIterator[str]:
        request = CallRequest(
            instruction=instruction,
            content=content,
            temperature=temperature,
            max_output_size=max_output_size,
            grounding=grounding,
            stream=True,
            model=self._model,
        )
        return self._dispatcher.dispatch_streaming(request)

    async def map_batched(
        self,
        items: Sequence[T],
        worker: Callable[[T], Awaitable[R]],
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> list[R | BaseException]:
        """Fan *worker* out over *items* in batches sized by this client's load settings."""
        return await run_in_batches(
            items, worker, batch_size=self._batch_size, delay_s=self._batch_delay_s, sleep=sleep
        )


async def run_in_batches(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    batch_size: int = 3,
    delay_s: float = 1.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> list[R | BaseException]:
    """Run *worker* over *items* a few at a time.

    Each batch runs concurrently; batches run one after another with a fixed
    pause in between.  Results come back in input order, and a failing item
    yields its exception in place instead of aborting the batch.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")

    results: list[R | BaseException] = []
    for start in range(0, len(items), batch_size):
        if start:
            await sleep(delay_s)
        batch = items[start : start + batch_size]
        outcomes = await asyncio.gather(*(worker(item) for item in batch), return_exceptions=True)
        failed = sum(1 for o in outcomes if isinstance(o, BaseException))
        if failed:
            logger.warning("batch_items_failed", batch_start=start, failed=failed, size=len(batch))
        results.extend(outcomes)
    return results
