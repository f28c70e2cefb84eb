from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, TypeAlias

ChannelId: TypeAlias = str
MessageId: TypeAlias = str

MESSAGE_NEW = "message.new"
AI_INDICATOR_UPDATE = "ai_indicator.update"
AI_INDICATOR_CLEAR = "ai_indicator.clear"
AI_INDICATOR_STOP = "ai_indicator.stop"

IndicatorState: TypeAlias = Literal[
    "AI_STATE_THINKING",
    "AI_STATE_GENERATING",
    "AI_STATE_ERROR",
]
AI_STATE_THINKING: IndicatorState = "AI_STATE_THINKING"
AI_STATE_GENERATING: IndicatorState = "AI_STATE_GENERATING"
AI_STATE_ERROR: IndicatorState = "AI_STATE_ERROR"


@dataclass(frozen=True, slots=True)
class ReplyHandle:
    channel_id: ChannelId
    message_id: MessageId
    cid: str


@dataclass(frozen=True, slots=True)
class ChatMessage:
    id: MessageId
    cid: str
    text: str = ""
    ai_generated: bool = False
    user_id: str | None = None
    custom: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def handle(self, channel_id: ChannelId) -> ReplyHandle:
        return ReplyHandle(channel_id=channel_id, message_id=self.id, cid=self.cid)


@dataclass(frozen=True, slots=True)
class ChatEvent:
    type: str
    cid: str | None = None
    message: ChatMessage | None = None
    message_id: MessageId | None = None


@dataclass(frozen=True, slots=True)
class IndicatorEvent:
    type: str
    cid: str
    message_id: MessageId
    ai_state: IndicatorState | None = None

    @classmethod
    def update(cls, handle: ReplyHandle, state: IndicatorState) -> IndicatorEvent:
        return cls(
            type=AI_INDICATOR_UPDATE,
            cid=handle.cid,
            message_id=handle.message_id,
            ai_state=state,
        )

    @classmethod
    def clear(cls, handle: ReplyHandle) -> IndicatorEvent:
        return cls(type=AI_INDICATOR_CLEAR, cid=handle.cid, message_id=handle.message_id)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.type,
            "cid": self.cid,
            "message_id": self.message_id,
        }
        if self.ai_state is not None:
            payload["ai_state"] = self.ai_state
        return payload


EventListener: TypeAlias = Callable[[ChatEvent], Awaitable[None]]


class ChatTransport(Protocol):
    def on(self, event_type: str, listener: EventListener) -> None: ...

    def off(self, event_type: str, listener: EventListener) -> None: ...

    async def send_event(
        self, *, channel_id: ChannelId, event: IndicatorEvent
    ) -> None: ...

    async def send_message(
        self,
        *,
        channel_id: ChannelId,
        text: str,
        ai_generated: bool = False,
    ) -> ChatMessage: ...

    async def update_message_text(self, *, message_id: MessageId, text: str) -> None: ...

    async def disconnect(self) -> None: ...
