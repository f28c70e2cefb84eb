from __future__ import annotations

import io
from pathlib import Path

import pytest
import typer
from rich.console import Console
from typer.testing import CliRunner

from replystream import __version__, cli
from replystream.memory import MessageUpdate
from replystream.transport import IndicatorEvent, ReplyHandle

runner = CliRunner()


@pytest.fixture(autouse=True)
def _no_logging_setup(monkeypatch) -> None:
    monkeypatch.setattr(cli, "setup_logging", lambda **kwargs: None)


def _app() -> typer.Typer:
    app = typer.Typer()
    app.command()(cli.run)
    return app


def test_version_flag_prints_version() -> None:
    result = runner.invoke(_app(), ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_missing_config_exits_with_error(tmp_path: Path) -> None:
    result = runner.invoke(_app(), ["--config", str(tmp_path / "missing.toml")])

    assert result.exit_code == 1


def test_printer_prints_only_new_text() -> None:
    buffer = io.StringIO()
    printer = cli.ConsolePrinter(Console(file=buffer, width=120, color_system=None))

    printer.on_update(MessageUpdate(message_id="msg-2", text="Hello"))
    printer.on_update(MessageUpdate(message_id="msg-2", text="Hello there"))
    printer.on_event(
        "messaging:local",
        IndicatorEvent.clear(ReplyHandle("messaging:local", "msg-2", "messaging:local")),
    )

    assert buffer.getvalue() == "Hello there\n"
