from __future__ import annotations

import itertools
from collections.abc import Callable
from dataclasses import dataclass

from .logging import get_logger
from .transport import (
    MESSAGE_NEW,
    ChannelId,
    ChatEvent,
    ChatMessage,
    EventListener,
    IndicatorEvent,
    MessageId,
)

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class MessageUpdate:
    message_id: MessageId
    text: str


class MemoryTransport:
    """In-process chat transport.

    Stores messages, records every text update and indicator event, and
    delivers published events to the registered listeners in order.
    """

    def __init__(
        self,
        *,
        cid_for: Callable[[ChannelId], str] | None = None,
        on_update: Callable[[MessageUpdate], None] | None = None,
        on_event: Callable[[ChannelId, IndicatorEvent], None] | None = None,
    ) -> None:
        self._listeners: dict[str, list[EventListener]] = {}
        self._ids = itertools.count(1)
        self._cid_for = cid_for or (lambda channel_id: channel_id)
        self._on_update = on_update
        self._on_event = on_event
        self.messages: dict[MessageId, ChatMessage] = {}
        self.updates: list[MessageUpdate] = []
        self.events: list[IndicatorEvent] = []
        self.connected = True

    def on(self, event_type: str, listener: EventListener) -> None:
        self._listeners.setdefault(event_type, []).append(listener)

    def off(self, event_type: str, listener: EventListener) -> None:
        listeners = self._listeners.get(event_type)
        if not listeners:
            return
        try:
            listeners.remove(listener)
        except ValueError:
            return

    def listener_count(self, event_type: str) -> int:
        return len(self._listeners.get(event_type, ()))

    async def publish(self, event: ChatEvent) -> None:
        for listener in list(self._listeners.get(event.type, ())):
            try:
                await listener(event)
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    "transport.listener_failed",
                    event_type=event.type,
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )

    async def post_user_message(
        self,
        *,
        channel_id: ChannelId,
        text: str,
        user_id: str = "user",
        custom: dict | None = None,
    ) -> ChatMessage:
        message = self._store(
            channel_id,
            text=text,
            ai_generated=False,
            user_id=user_id,
            custom=custom,
        )
        await self.publish(
            ChatEvent(type=MESSAGE_NEW, cid=message.cid, message=message)
        )
        return message

    async def send_event(self, *, channel_id: ChannelId, event: IndicatorEvent) -> None:
        self._ensure_connected()
        logger.debug("transport.send_event", channel_id=channel_id, **event.to_payload())
        self.events.append(event)
        if self._on_event is not None:
            self._on_event(channel_id, event)

    async def send_message(
        self,
        *,
        channel_id: ChannelId,
        text: str,
        ai_generated: bool = False,
    ) -> ChatMessage:
        self._ensure_connected()
        message = self._store(channel_id, text=text, ai_generated=ai_generated)
        logger.debug(
            "transport.send_message",
            channel_id=channel_id,
            message_id=message.id,
            ai_generated=ai_generated,
        )
        return message

    async def update_message_text(self, *, message_id: MessageId, text: str) -> None:
        self._ensure_connected()
        current = self.messages.get(message_id)
        if current is None:
            raise KeyError(f"unknown message {message_id!r}")
        self.messages[message_id] = ChatMessage(
            id=current.id,
            cid=current.cid,
            text=text,
            ai_generated=current.ai_generated,
            user_id=current.user_id,
            custom=current.custom,
        )
        update = MessageUpdate(message_id=message_id, text=text)
        self.updates.append(update)
        logger.debug("transport.update_message", message_id=message_id, text_len=len(text))
        if self._on_update is not None:
            self._on_update(update)

    async def disconnect(self) -> None:
        self.connected = False

    def _ensure_connected(self) -> None:
        if not self.connected:
            raise RuntimeError("transport is disconnected")

    def _store(
        self,
        channel_id: ChannelId,
        *,
        text: str,
        ai_generated: bool,
        user_id: str | None = None,
        custom: dict | None = None,
    ) -> ChatMessage:
        message = ChatMessage(
            id=f"msg-{next(self._ids)}",
            cid=self._cid_for(channel_id),
            text=text,
            ai_generated=ai_generated,
            user_id=user_id,
            custom=dict(custom or {}),
        )
        self.messages[message.id] = message
        return message
