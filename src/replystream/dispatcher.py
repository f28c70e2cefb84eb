from __future__ import annotations

import os
import time
from collections.abc import Awaitable, Callable, Mapping
from types import MappingProxyType
from typing import Any, Protocol

from .config import require_api_key
from .handler import StreamingReplyHandler
from .logging import bind_reply_context, get_logger
from .prompts import build_prompt
from .provider import Provider
from .providers.gemini import GeminiProvider
from .settings import GenerationSettings, ReplySettings
from .transport import (
    AI_STATE_THINKING,
    MESSAGE_NEW,
    ChannelId,
    ChatEvent,
    ChatTransport,
    IndicatorEvent,
    MessageId,
)

logger = get_logger(__name__)

ProviderFactory = Callable[[str, GenerationSettings], Provider]
ReplyHandlers = dict[MessageId, StreamingReplyHandler]


class TaskGroup(Protocol):
    def start_soon(
        self, func: Callable[..., Awaitable[object]], *args: Any
    ) -> None: ...


def gemini_provider(api_key: str, generation: GenerationSettings) -> Provider:
    return GeminiProvider(api_key, generation=generation)


class ReplyDispatcher:
    """Spawns one streaming reply per inbound user message on a channel."""

    def __init__(
        self,
        *,
        transport: ChatTransport,
        channel_id: ChannelId,
        task_group: TaskGroup,
        generation: GenerationSettings | None = None,
        reply: ReplySettings | None = None,
        provider_factory: ProviderFactory = gemini_provider,
        environ: Mapping[str, str] | None = None,
        now: Callable[[], float] = time.time,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.channel_id = channel_id
        self.generation = generation or GenerationSettings()
        self.reply = reply or ReplySettings()
        self.provider: Provider | None = None
        self._task_group = task_group
        self._provider_factory = provider_factory
        self._environ = environ if environ is not None else os.environ
        self._now = now
        self._clock = clock
        self._handlers: ReplyHandlers = {}
        self._last_interaction = now()
        self._disposed = False

    @property
    def handlers(self) -> Mapping[MessageId, StreamingReplyHandler]:
        return MappingProxyType(self._handlers)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def get_last_interaction(self) -> float:
        return self._last_interaction

    def init(self) -> None:
        api_key = require_api_key(self._environ)
        self.provider = self._provider_factory(api_key, self.generation)
        self.transport.on(MESSAGE_NEW, self._handle_message)
        logger.info(
            "dispatcher.ready",
            channel_id=self.channel_id,
            model=self.generation.model,
        )

    async def _handle_message(self, event: ChatEvent) -> None:
        if self._disposed:
            return
        if self.provider is None:
            logger.warning("dispatcher.not_initialized", channel_id=self.channel_id)
            return
        message = event.message
        if message is None or message.ai_generated:
            return
        if not message.text:
            return

        self._last_interaction = self._now()
        writing_task = message.custom.get("writingTask")
        prompt = build_prompt(
            message.text,
            writing_task=writing_task if isinstance(writing_task, str) else None,
        )

        placeholder = await self.transport.send_message(
            channel_id=self.channel_id, text="", ai_generated=True
        )
        if self._disposed:
            logger.info("dispatcher.disposed_mid_message", user_msg_id=message.id)
            return
        logger.info(
            "dispatcher.message",
            channel_id=self.channel_id,
            user_msg_id=message.id,
            reply_msg_id=placeholder.id,
        )
        if placeholder.id in self._handlers:
            logger.warning("dispatcher.duplicate_reply", reply_msg_id=placeholder.id)
            return
        await self.transport.send_event(
            channel_id=self.channel_id,
            event=IndicatorEvent.update(
                placeholder.handle(self.channel_id), AI_STATE_THINKING
            ),
        )
        if self._disposed:
            logger.info("dispatcher.disposed_mid_message", user_msg_id=message.id)
            return

        handler = StreamingReplyHandler(
            provider=self.provider,
            transport=self.transport,
            channel_id=self.channel_id,
            message=placeholder,
            on_dispose=self._remove_handler,
            throttle_interval_s=self.reply.throttle_interval_s,
            clock=self._clock,
        )
        handler.set_prompt(prompt)
        self._handlers[placeholder.id] = handler
        self._task_group.start_soon(self._run_handler, handler)

    async def _run_handler(self, handler: StreamingReplyHandler) -> None:
        bind_reply_context(reply_msg_id=handler.handle.message_id)
        try:
            await handler.run()
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "dispatcher.reply_crashed",
                reply_msg_id=handler.handle.message_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            handler.dispose()

    def _remove_handler(self, handler: StreamingReplyHandler) -> None:
        message_id = handler.handle.message_id
        if self._handlers.get(message_id) is handler:
            del self._handlers[message_id]

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self.transport.off(MESSAGE_NEW, self._handle_message)
        try:
            await self.transport.disconnect()
        finally:
            for handler in list(self._handlers.values()):
                handler.dispose()
            self._handlers.clear()
            if self.provider is not None:
                await self.provider.close()
            logger.info("dispatcher.disposed", channel_id=self.channel_id)
