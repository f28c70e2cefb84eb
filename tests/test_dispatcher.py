import anyio
import pytest

from replystream import handler as handler_module
from replystream.config import ConfigError
from replystream.dispatcher import ReplyDispatcher
from replystream.memory import MemoryTransport
from replystream.providers.mock import Emit, ScriptProvider, Wait
from replystream.settings import GenerationSettings, ReplySettings
from replystream.transport import (
    AI_INDICATOR_CLEAR,
    AI_INDICATOR_STOP,
    AI_STATE_THINKING,
    MESSAGE_NEW,
    ChatEvent,
    ChatMessage,
)

CHANNEL = "messaging:general"
ENV = {"GEMINI_API_KEY": "test-key"}


class _ProviderFactory:
    def __init__(self, provider: ScriptProvider) -> None:
        self.provider = provider
        self.calls: list[tuple[str, GenerationSettings]] = []

    def __call__(self, api_key: str, generation: GenerationSettings) -> ScriptProvider:
        self.calls.append((api_key, generation))
        return self.provider


def _dispatcher(
    transport: MemoryTransport,
    task_group,
    provider: ScriptProvider,
    *,
    environ: dict[str, str] | None = None,
    now=lambda: 1000.0,
) -> ReplyDispatcher:
    return ReplyDispatcher(
        transport=transport,
        channel_id=CHANNEL,
        task_group=task_group,
        reply=ReplySettings(throttle_interval_s=1.0),
        provider_factory=_ProviderFactory(provider),
        environ=ENV if environ is None else environ,
        now=now,
        clock=lambda: 0.0,
    )


async def _wait_until(predicate, *, timeout: float = 1.0) -> None:
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0)


def _replies(transport: MemoryTransport) -> list[ChatMessage]:
    return [message for message in transport.messages.values() if message.ai_generated]


@pytest.mark.anyio
@pytest.mark.parametrize("environ", [{}, {"GEMINI_API_KEY": "   "}])
async def test_init_requires_api_key(environ: dict[str, str]) -> None:
    transport = MemoryTransport()
    async with anyio.create_task_group() as tg:
        dispatcher = _dispatcher(transport, tg, ScriptProvider(), environ=environ)
        with pytest.raises(ConfigError, match="API key is required"):
            dispatcher.init()

    assert dispatcher.provider is None
    assert transport.listener_count(MESSAGE_NEW) == 0


@pytest.mark.anyio
async def test_init_builds_provider_with_static_generation_settings() -> None:
    transport = MemoryTransport()
    provider = ScriptProvider()
    async with anyio.create_task_group() as tg:
        dispatcher = _dispatcher(transport, tg, provider)
        dispatcher.init()

    factory = dispatcher._provider_factory
    assert factory.calls == [("test-key", GenerationSettings())]
    generation = factory.calls[0][1]
    assert generation.model == "gemini-1.5-flash"
    assert (generation.temperature, generation.top_k, generation.top_p) == (
        0.7,
        40,
        0.95,
    )
    assert generation.max_output_tokens == 8192
    assert dispatcher.provider is provider
    assert transport.listener_count(MESSAGE_NEW) == 1


@pytest.mark.anyio
async def test_user_message_spawns_streaming_reply() -> None:
    transport = MemoryTransport()
    provider = ScriptProvider([Emit("The "), Emit("summary "), Emit("is Y.")])
    times = iter([1000.0, 2000.0])

    async with anyio.create_task_group() as tg:
        dispatcher = _dispatcher(transport, tg, provider, now=lambda: next(times))
        dispatcher.init()
        user_msg = await transport.post_user_message(
            channel_id=CHANNEL,
            text="Summarize X",
            custom={"writingTask": "executive summary"},
        )
        await _wait_until(lambda: provider.calls and not dispatcher.handlers)

    (reply,) = _replies(transport)
    assert reply.id != user_msg.id
    assert reply.text == "The summary is Y."
    assert transport.events[0].ai_state == AI_STATE_THINKING
    assert transport.events[0].message_id == reply.id
    assert transport.events[-1].type == AI_INDICATOR_CLEAR
    (prompt,) = provider.calls
    assert "Writing Task: executive summary" in prompt
    assert prompt.endswith("User Message: Summarize X")
    assert dispatcher.get_last_interaction() == 2000.0


@pytest.mark.anyio
async def test_ai_generated_message_never_spawns_handler() -> None:
    transport = MemoryTransport()
    provider = ScriptProvider([Emit("loop")])

    async with anyio.create_task_group() as tg:
        dispatcher = _dispatcher(transport, tg, provider)
        dispatcher.init()
        await transport.publish(
            ChatEvent(
                type=MESSAGE_NEW,
                cid=CHANNEL,
                message=ChatMessage(
                    id="bot-1", cid=CHANNEL, text="hello", ai_generated=True
                ),
            )
        )
        await transport.publish(
            ChatEvent(
                type=MESSAGE_NEW,
                cid=CHANNEL,
                message=ChatMessage(id="user-1", cid=CHANNEL, text=""),
            )
        )
        await transport.publish(ChatEvent(type=MESSAGE_NEW, cid=CHANNEL))

    assert provider.calls == []
    assert transport.messages == {}
    assert transport.events == []
    assert dict(dispatcher.handlers) == {}


@pytest.mark.anyio
async def test_messages_are_ignored_before_init() -> None:
    transport = MemoryTransport()
    provider = ScriptProvider([Emit("nope")])

    async with anyio.create_task_group() as tg:
        _dispatcher(transport, tg, provider)
        await transport.post_user_message(channel_id=CHANNEL, text="hi")

    assert provider.calls == []
    assert _replies(transport) == []


@pytest.mark.anyio
async def test_teardown_disposes_all_live_handlers() -> None:
    transport = MemoryTransport()
    provider = ScriptProvider([Emit("partial"), Wait(anyio.Event())])

    async with anyio.create_task_group() as tg:
        dispatcher = _dispatcher(transport, tg, provider)
        dispatcher.init()
        await transport.post_user_message(channel_id=CHANNEL, text="first")
        await transport.post_user_message(channel_id=CHANNEL, text="second")
        await _wait_until(lambda: len(provider.calls) == 2)
        handlers = list(dispatcher.handlers.values())
        assert len(handlers) == 2

        first = handlers[0]
        await transport.publish(
            ChatEvent(
                type=AI_INDICATOR_STOP,
                cid=first.handle.cid,
                message_id=first.handle.message_id,
            )
        )
        assert first.done
        assert len(dispatcher.handlers) == 1

        await dispatcher.dispose()

        assert all(handler.done for handler in handlers)
        assert dict(dispatcher.handlers) == {}

    assert not transport.connected
    assert provider.closed
    assert transport.listener_count(MESSAGE_NEW) == 0
    assert transport.listener_count(AI_INDICATOR_STOP) == 0


@pytest.mark.anyio
async def test_dispose_is_idempotent_and_stops_intake() -> None:
    transport = MemoryTransport()
    provider = ScriptProvider([Emit("x")])

    async with anyio.create_task_group() as tg:
        dispatcher = _dispatcher(transport, tg, provider)
        dispatcher.init()
        await dispatcher.dispose()
        await dispatcher.dispose()
        await transport.publish(
            ChatEvent(
                type=MESSAGE_NEW,
                cid=CHANNEL,
                message=ChatMessage(id="late", cid=CHANNEL, text="anyone?"),
            )
        )

    assert dispatcher.disposed
    assert provider.calls == []


class _TeardownDuringSetup(MemoryTransport):
    def __init__(self, during: str) -> None:
        super().__init__()
        self.during = during
        self.dispatcher: ReplyDispatcher | None = None

    async def _teardown(self, step: str) -> None:
        if step == self.during and self.dispatcher is not None:
            await self.dispatcher.dispose()

    async def send_message(self, *, channel_id, text, ai_generated=False):
        message = await super().send_message(
            channel_id=channel_id, text=text, ai_generated=ai_generated
        )
        await self._teardown("send_message")
        return message

    async def send_event(self, *, channel_id, event) -> None:
        await super().send_event(channel_id=channel_id, event=event)
        await self._teardown("send_event")


@pytest.mark.anyio
@pytest.mark.parametrize("during", ["send_message", "send_event"])
async def test_dispose_during_reply_setup_starts_nothing(during: str) -> None:
    transport = _TeardownDuringSetup(during)
    provider = ScriptProvider([Emit("late")])

    async with anyio.create_task_group() as tg:
        dispatcher = _dispatcher(transport, tg, provider)
        transport.dispatcher = dispatcher
        dispatcher.init()
        await transport.post_user_message(channel_id=CHANNEL, text="hi")

    assert dispatcher.disposed
    assert dict(dispatcher.handlers) == {}
    assert provider.calls == []
    assert transport.listener_count(AI_INDICATOR_STOP) == 0


@pytest.mark.anyio
async def test_crashing_reply_is_contained(monkeypatch) -> None:
    async def boom(self) -> None:
        raise RuntimeError("handler exploded")

    monkeypatch.setattr(handler_module.StreamingReplyHandler, "run", boom)
    transport = MemoryTransport()
    provider = ScriptProvider([Emit("x")])

    async with anyio.create_task_group() as tg:
        dispatcher = _dispatcher(transport, tg, provider)
        dispatcher.init()
        await transport.post_user_message(channel_id=CHANNEL, text="hi")
        await _wait_until(lambda: not dispatcher.handlers)
        await transport.post_user_message(channel_id=CHANNEL, text="again")
        await _wait_until(lambda: not dispatcher.handlers)

    assert len(_replies(transport)) == 2
    assert transport.listener_count(AI_INDICATOR_STOP) == 0
