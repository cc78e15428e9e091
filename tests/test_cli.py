"""
Tests for the CLI parser, storage commands and the console capture/playback.
"""

import io
import json
from unittest.mock import patch

import pytest

from parley.cli import build_parser, cmd_export, cmd_history
from parley.client.console import ConsoleCapture, ConsolePlayback
from parley.storage.models import Role
from parley.storage.sqlite_store import SQLiteStore


@pytest.mark.parametrize("argv,command", [
    (["serve"], "serve"),
    (["start", "--port", "9000"], "start"),
    (["talk", "--once"], "talk"),
    (["chat", "-s", "abc"], "chat"),
    (["ping"], "ping"),
    (["history", "abc"], "history"),
    (["dump", "--pretty"], "dump"),
    (["info"], "info"),
])
def test_parser_aliases(argv, command):
    args = build_parser().parse_args(argv)
    assert args.command == command
    assert callable(args.func)


def test_talk_defaults():
    args = build_parser().parse_args(["talk"])
    assert args.once is False
    assert args.session is None
    assert args.pace == 0.0


@pytest.fixture
def seeded(tmp_path):
    db = str(tmp_path / "cli.db")
    store = SQLiteStore(db)
    store.ensure_session("s1")
    store.append_message("s1", Role.USER, "hello")
    store.append_message("s1", Role.ASSISTANT, "hi there")
    cfg = {"storage": {"sqlite_path": db}, "backend": {"url": "http://x"}}
    with patch("parley.config.get_config", return_value=cfg):
        yield tmp_path


def test_export_writes_json(seeded, capsys):
    out = seeded / "export.json"
    args = build_parser().parse_args(["export", "-o", str(out), "--pretty"])
    cmd_export(args)

    data = json.loads(out.read_text())
    assert data[0]["session_id"] == "s1"
    assert [m["content"] for m in data[0]["messages"]] == ["hello", "hi there"]
    assert "Exported 1 sessions" in capsys.readouterr().out


def test_history_prints_messages(seeded, capsys):
    cmd_history(build_parser().parse_args(["history", "s1"]))
    out = capsys.readouterr().out
    assert "hello" in out and "hi there" in out

    cmd_history(build_parser().parse_args(["history", "missing"]))
    assert "No session missing" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Console capture / playback
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_console_capture_reads_lines():
    lines = iter(["  what's up  ", ""])
    capture = ConsoleCapture(reader=lambda prompt: next(lines))

    assert await capture.capture() == "what's up"
    assert await capture.capture() is None


@pytest.mark.asyncio
async def test_console_capture_eof():
    hit = []

    def reader(prompt):
        raise EOFError

    capture = ConsoleCapture(reader=reader, on_eof=lambda: hit.append(True))
    assert await capture.capture() is None
    assert capture.exhausted
    assert hit == [True]
    assert await capture.capture() is None


@pytest.mark.asyncio
async def test_console_playback_prints():
    out = io.StringIO()
    playback = ConsolePlayback(out=out, prefix="bot> ")
    await playback.speak("Nice to meet you.")
    assert out.getvalue() == "bot> Nice to meet you.\n"
    assert playback.speaking is False
