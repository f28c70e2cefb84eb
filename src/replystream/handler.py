from __future__ import annotations

import enum
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

import anyio

from .constants import ERROR_FALLBACK_TEXT, THROTTLE_INTERVAL_S
from .logging import get_logger
from .provider import CancelToken, GenerationCancelled, Provider
from .transport import (
    AI_INDICATOR_STOP,
    AI_STATE_ERROR,
    AI_STATE_GENERATING,
    ChannelId,
    ChatEvent,
    ChatMessage,
    ChatTransport,
    IndicatorEvent,
    ReplyHandle,
)

logger = get_logger(__name__)


def _flatten_exception_group(error: BaseException) -> list[BaseException]:
    if isinstance(error, BaseExceptionGroup):
        flattened: list[BaseException] = []
        for exc in error.exceptions:
            flattened.extend(_flatten_exception_group(exc))
        return flattened
    return [error]


def format_error(error: BaseException) -> str:
    """Human-readable description shown in place of a failed reply."""
    cancel_exc = anyio.get_cancelled_exc_class()
    flattened = [
        exc
        for exc in _flatten_exception_group(error)
        if not isinstance(exc, cancel_exc)
    ]
    messages = [str(exc) for exc in flattened if str(exc)]
    if not messages:
        return str(error) or ERROR_FALLBACK_TEXT
    return "\n".join(messages)


class ReplyState(enum.Enum):
    RUNNING = "running"
    TERMINATED = "terminated"


@dataclass(slots=True)
class StreamState:
    text: str = ""
    last_flush_at: float = 0.0
    lifecycle: ReplyState = ReplyState.RUNNING
    cancel: CancelToken | None = None


class StreamingReplyHandler:
    """Streams one provider generation into one chat message.

    Partial updates always carry the full accumulated text and are throttled
    to one per ``throttle_interval_s``; a final unthrottled update follows
    normal completion. Once terminated, nothing else reaches the transport
    from this handler.
    """

    def __init__(
        self,
        *,
        provider: Provider,
        transport: ChatTransport,
        channel_id: ChannelId,
        message: ChatMessage,
        on_dispose: Callable[[StreamingReplyHandler], None],
        throttle_interval_s: float = THROTTLE_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.transport = transport
        self.handle: ReplyHandle = message.handle(channel_id)
        self.message = message
        self.throttle_interval_s = throttle_interval_s
        self.state = StreamState()
        self._on_dispose = on_dispose
        self._clock = clock
        self._prompt = ""
        self._stop_requested = False
        self.transport.on(AI_INDICATOR_STOP, self._on_stop)

    @property
    def done(self) -> bool:
        return self.state.lifecycle is ReplyState.TERMINATED

    @property
    def text(self) -> str:
        return self.state.text

    def set_prompt(self, prompt: str) -> None:
        self._prompt = prompt

    def _halted(self) -> bool:
        cancel = self.state.cancel
        return self.done or (cancel is not None and cancel.cancelled)

    async def run(self) -> None:
        if self.done:
            return
        cancel = CancelToken()
        self.state.cancel = cancel
        try:
            await self._send_indicator_best_effort(
                IndicatorEvent.update(self.handle, AI_STATE_GENERATING)
            )
            try:
                chunks = await self.provider.generate_stream(self._prompt, cancel=cancel)
                await self._consume(chunks)
            except GenerationCancelled:
                await self._on_cancelled()
            except Exception as exc:
                if self._stop_requested or self._halted():
                    logger.info(
                        "reply.failed_after_stop",
                        message_id=self.handle.message_id,
                        error=str(exc),
                        error_type=exc.__class__.__name__,
                    )
                    await self._on_cancelled()
                    return
                logger.exception(
                    "reply.failed",
                    message_id=self.handle.message_id,
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                await self._on_error(exc)
        finally:
            self.dispose()

    async def _consume(self, chunks: AsyncIterator[str]) -> None:
        try:
            async for chunk in chunks:
                if self._halted():
                    break
                if not chunk:
                    continue
                self.state.text += chunk
                now = self._clock()
                if now - self.state.last_flush_at >= self.throttle_interval_s:
                    await self._flush()
                    self.state.last_flush_at = now
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

        if self._halted():
            raise GenerationCancelled()

        await self._flush()
        if self._halted():
            raise GenerationCancelled()
        await self.transport.send_event(
            channel_id=self.handle.channel_id,
            event=IndicatorEvent.clear(self.handle),
        )
        logger.info(
            "reply.completed",
            message_id=self.handle.message_id,
            text_len=len(self.state.text),
        )

    async def _flush(self) -> None:
        logger.debug(
            "reply.flush",
            message_id=self.handle.message_id,
            text_len=len(self.state.text),
        )
        await self.transport.update_message_text(
            message_id=self.handle.message_id, text=self.state.text
        )

    async def _on_cancelled(self) -> None:
        logger.info("reply.cancelled", message_id=self.handle.message_id)
        if self._stop_requested or self.done:
            # whoever stopped us owns the indicator
            return
        await self._send_indicator_best_effort(IndicatorEvent.clear(self.handle))

    async def _on_error(self, error: Exception) -> None:
        if self.done or self._stop_requested:
            return
        description = format_error(error)
        try:
            await self.transport.send_event(
                channel_id=self.handle.channel_id,
                event=IndicatorEvent.update(self.handle, AI_STATE_ERROR),
            )
            await self.transport.update_message_text(
                message_id=self.handle.message_id, text=description
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "reply.error_report_failed",
                message_id=self.handle.message_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )

    async def _on_stop(self, event: ChatEvent) -> None:
        if self.done or event.message_id != self.handle.message_id:
            return
        if self._stop_requested:
            return
        self._stop_requested = True
        logger.info("reply.stop_requested", message_id=self.handle.message_id)
        if self.state.cancel is not None:
            self.state.cancel.cancel()
        try:
            await self._send_indicator_best_effort(IndicatorEvent.clear(self.handle))
        finally:
            self.dispose()

    async def _send_indicator_best_effort(self, event: IndicatorEvent) -> None:
        try:
            await self.transport.send_event(
                channel_id=self.handle.channel_id, event=event
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "reply.indicator_failed",
                message_id=self.handle.message_id,
                indicator=event.ai_state or event.type,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )

    def dispose(self) -> None:
        if self.done:
            return
        self.state.lifecycle = ReplyState.TERMINATED
        if self.state.cancel is not None:
            self.state.cancel.cancel()
        self.transport.off(AI_INDICATOR_STOP, self._on_stop)
        logger.debug("reply.disposed", message_id=self.handle.message_id)
        self._on_dispose(self)
