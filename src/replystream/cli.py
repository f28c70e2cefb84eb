from __future__ import annotations

from functools import partial
from pathlib import Path

import anyio
import typer
from rich.console import Console

from . import __version__
from .config import ConfigError
from .dispatcher import ReplyDispatcher
from .idle import dispose_when_idle
from .logging import get_logger, setup_logging
from .memory import MemoryTransport, MessageUpdate
from .settings import ReplyStreamSettings, load_settings
from .transport import (
    AI_INDICATOR_CLEAR,
    AI_INDICATOR_STOP,
    AI_STATE_ERROR,
    AI_STATE_THINKING,
    ChannelId,
    ChatEvent,
    IndicatorEvent,
    MessageId,
)

logger = get_logger(__name__)

QUIT_COMMANDS = frozenset({"/quit", "/exit"})
STOP_COMMAND = "/stop"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


class ConsolePrinter:
    """Renders streamed replies as they grow."""

    def __init__(self, console: Console) -> None:
        self.console = console
        self._shown: dict[MessageId, str] = {}

    def on_update(self, update: MessageUpdate) -> None:
        previous = self._shown.get(update.message_id, "")
        if update.text.startswith(previous):
            delta = update.text[len(previous) :]
        else:
            self.console.print()
            delta = update.text
        self._shown[update.message_id] = update.text
        if delta:
            self.console.print(delta, end="", markup=False, highlight=False)

    def on_event(self, channel_id: ChannelId, event: IndicatorEvent) -> None:
        _ = channel_id
        if event.ai_state == AI_STATE_THINKING:
            self.console.print("[dim]thinking…[/dim]")
        elif event.ai_state == AI_STATE_ERROR:
            self.console.print("\n[red]error[/red]")
        elif event.type == AI_INDICATOR_CLEAR:
            self.console.print()


def _read_line(console: Console) -> str | None:
    try:
        return console.input("> ")
    except EOFError:
        return None


async def _read_loop(
    console: Console,
    transport: MemoryTransport,
    dispatcher: ReplyDispatcher,
    channel_id: ChannelId,
) -> None:
    while not dispatcher.disposed:
        line = await anyio.to_thread.run_sync(
            _read_line, console, abandon_on_cancel=True
        )
        if line is None:
            return
        text = line.strip()
        if not text:
            continue
        if text in QUIT_COMMANDS:
            return
        if text == STOP_COMMAND:
            for message_id, handler in list(dispatcher.handlers.items()):
                await transport.publish(
                    ChatEvent(
                        type=AI_INDICATOR_STOP,
                        cid=handler.handle.cid,
                        message_id=message_id,
                    )
                )
            continue
        await transport.post_user_message(channel_id=channel_id, text=text)


async def _run_console(
    settings: ReplyStreamSettings, *, idle_timeout_s: float | None
) -> int:
    console = Console()
    printer = ConsolePrinter(console)
    transport = MemoryTransport(on_update=printer.on_update, on_event=printer.on_event)

    async with anyio.create_task_group() as tg:
        dispatcher = ReplyDispatcher(
            transport=transport,
            channel_id=settings.channel_id,
            task_group=tg,
            generation=settings.generation,
            reply=settings.reply,
        )
        try:
            dispatcher.init()
        except ConfigError as exc:
            console.print(f"[red]{exc}[/red]")
            return 1

        if idle_timeout_s is not None:

            async def watch_idle() -> None:
                if await dispose_when_idle(dispatcher, timeout_s=idle_timeout_s):
                    console.print("[dim]idle timeout, session closed[/dim]")
                    tg.cancel_scope.cancel()

            tg.start_soon(watch_idle)

        try:
            await _read_loop(console, transport, dispatcher, settings.channel_id)
        finally:
            with anyio.CancelScope(shield=True):
                await dispatcher.dispose()
            tg.cancel_scope.cancel()
    return 0


def run(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    config: Path | None = typer.Option(
        None,
        "--config",
        help="Path to a replystream.toml file.",
    ),
    idle_timeout: float | None = typer.Option(
        None,
        "--idle-timeout",
        min=1.0,
        help="Close the session after this many seconds without a message.",
    ),
    debug: bool = typer.Option(
        False,
        "--debug/--no-debug",
        help="Log provider chunks and transport calls.",
    ),
) -> None:
    setup_logging(debug=debug)
    try:
        settings, config_path = load_settings(config)
    except ConfigError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)
    logger.debug("cli.settings", config_path=str(config_path) if config_path else None)
    idle_timeout_s = idle_timeout if idle_timeout is not None else settings.idle_timeout_s
    code = anyio.run(partial(_run_console, settings, idle_timeout_s=idle_timeout_s))
    if code:
        raise typer.Exit(code=code)


def main() -> None:
    typer.run(run)


if __name__ == "__main__":
    main()
