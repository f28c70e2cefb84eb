from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass
from typing import TypeAlias

import anyio

from ..provider import CancelToken, GenerationCancelled


@dataclass(frozen=True, slots=True)
class Emit:
    text: str
    at: float | None = None


@dataclass(frozen=True, slots=True)
class Wait:
    event: anyio.Event


@dataclass(frozen=True, slots=True)
class Raise:
    error: Exception


ScriptStep: TypeAlias = Emit | Wait | Raise


class ScriptProvider:
    """Provider that replays a fixed script of chunks and control steps.

    ``request_error`` fails the request itself, before any chunk is produced.
    A ``Wait`` step returns early when the cancel token fires.
    """

    def __init__(
        self,
        script: Iterable[ScriptStep] = (),
        *,
        request_error: Exception | None = None,
        advance: Callable[[float], None] | None = None,
    ) -> None:
        self.calls: list[str] = []
        self.closed = False
        self._script = list(script)
        self._request_error = request_error
        self._advance = advance

    def _advance_to(self, now: float) -> None:
        if self._advance is None:
            raise RuntimeError("ScriptProvider advance callback is not configured.")
        self._advance(now)

    async def generate_stream(
        self, prompt: str, *, cancel: CancelToken
    ) -> AsyncIterator[str]:
        self.calls.append(prompt)
        cancel.raise_if_cancelled()
        if self._request_error is not None:
            raise self._request_error
        return self._iter_script(cancel)

    async def _iter_script(self, cancel: CancelToken) -> AsyncIterator[str]:
        for step in self._script:
            cancel.raise_if_cancelled()
            if isinstance(step, Emit):
                if step.at is not None:
                    self._advance_to(step.at)
                yield step.text
                await anyio.sleep(0)
                continue
            if isinstance(step, Wait):
                await _wait_either(step.event, cancel)
                continue
            if isinstance(step, Raise):
                raise step.error
            raise RuntimeError(f"Unhandled script step: {step!r}")
        cancel.raise_if_cancelled()

    async def close(self) -> None:
        self.closed = True


async def _wait_either(event: anyio.Event, cancel: CancelToken) -> None:
    async with anyio.create_task_group() as tg:

        async def wait_event() -> None:
            await event.wait()
            tg.cancel_scope.cancel()

        async def wait_cancel() -> None:
            await cancel.wait()
            tg.cancel_scope.cancel()

        tg.start_soon(wait_event)
        tg.start_soon(wait_cancel)
    if cancel.cancelled:
        raise GenerationCancelled()
