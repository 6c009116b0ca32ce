"""Outbound ports: interfaces that infrastructure adapters must implement.

The dispatch layer depends only on these abstractions, never on a concrete
HTTP client.  Tests plug in scripted fakes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from contentforge.shared.providers.types import CallRequest


class GenerativeBackendPort(ABC):
    """A generative-AI backend addressed by credential.

    Implementations raise the ``BackendError`` subclasses from
    ``contentforge.domain.exceptions`` so the dispatcher can tell a throttle
    from an exhausted quota, a revoked key, or a network failure.
    """

    @abstractmethod
    async def generate(self, api_key: str, request: CallRequest) -> str:
        """Return the complete text of one response."""
        ...

    @abstractmethod
    def stream(self, api_key: str, request: CallRequest) -> AsyncIterator[str]:
        """Return an async iterator of text chunks.

        Errors that happen before the first chunk must surface on the first
        ``__anext__`` so the dispatcher can still rotate credentials.
        """
        ...

    async def close(self) -> None:
        """Release network resources."""
