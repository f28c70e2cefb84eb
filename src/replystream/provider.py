from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol

import anyio


class GenerationError(Exception):
    pass


class GenerationCancelled(Exception):
    def __init__(self, message: str = "generation was cancelled") -> None:
        super().__init__(message)


class CancelToken:
    """Cooperative cancellation request shared with a provider stream."""

    def __init__(self) -> None:
        self._event = anyio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelled()


class Provider(Protocol):
    async def generate_stream(
        self, prompt: str, *, cancel: CancelToken
    ) -> AsyncIterator[str]: ...

    async def close(self) -> None: ...
