#!/usr/bin/env python3
"""
parley CLI: talk to a language model, one turn at a time.

Every command has a short name and aliases:

    COMMAND     ALIASES             WHAT IT DOES
    -------     -------             ----------------------------------
    serve       start, up           Start the parley server
    talk        chat                Hold a conversation with a running server
    ping        status, health      Ping a running server
    history     show                Print a stored session
    export      dump                Export all sessions to JSON
    stats       info                Show storage stats and config
"""

import argparse
import asyncio
import json

from parley import __version__

BANNER = r"""
   ┌─────────────────────────────────────┐
   │  p a r l e y                        │
   │  say something. hear something.     │
   └─────────────────────────────────────┘  v""" + __version__


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the parley server."""
    import uvicorn
    from parley.config import get_config

    cfg = get_config()
    host = args.host or cfg["server"]["host"]
    port = args.port or cfg["server"]["port"]

    print(BANNER)
    print(f"  Listening on {host}:{port}")
    print(f"  Backend: {cfg['backend']['url']}")
    print(f"  Model: {cfg['backend'].get('model') or 'gpt-3.5-turbo'}")
    print()

    uvicorn.run(
        "parley.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_talk(args):
    """Run the turn-taking loop against a running server."""
    from parley.client import ChatClient, ConsoleCapture, ConsolePlayback, TurnTakingMachine

    async def _talk():
        client = ChatClient.from_config(session_id=args.session)
        if args.url:
            client.server_url = args.url.rstrip("/")
        playback = ConsolePlayback(seconds_per_word=args.pace)
        machine = None

        def _on_eof():
            # Ctrl-D ends continuous mode after the current capture.
            if machine is not None:
                machine.continuous = False

        capture = ConsoleCapture(on_eof=_on_eof)
        machine = TurnTakingMachine.from_config(capture, playback, client)

        print(f"  Talking to {client.server_url} (blank line = silence, Ctrl-D to stop)")
        machine.start(continuous=not args.once)
        try:
            await machine.wait()
        finally:
            await machine.stop()
        if client.session_id:
            print(f"\n  Session: {client.session_id}")

    try:
        asyncio.run(_talk())
    except KeyboardInterrupt:
        print("\n  Stopped.")


def cmd_ping(args):
    """Ping a running parley server."""
    import httpx

    url = (args.url or "http://localhost:3001").rstrip("/")
    try:
        resp = httpx.get(f"{url}/health", timeout=5)
        if resp.status_code == 200:
            print(f"  ✓  {url} is up")
            print(f"  Backend: {resp.json().get('backend', 'unknown')}")
            stats = httpx.get(f"{url}/stats", timeout=5).json()
            print(f"  Sessions: {stats.get('sessions', 0)}")
            print(f"  Messages: {stats.get('messages', 0)} "
                  f"(user: {stats.get('user_messages', 0)}, assistant: {stats.get('assistant_messages', 0)})")
        else:
            print(f"  ✗  No answer, got HTTP {resp.status_code}")
    except httpx.ConnectError:
        print(f"  ✗  Nothing listening at {url}")
    except httpx.HTTPError as e:
        print(f"  ✗  Error: {e}")


def cmd_history(args):
    """Print a stored session, oldest message first."""
    from parley.config import get_config
    from parley.storage.sqlite_store import SQLiteStore

    store = SQLiteStore(get_config()["storage"]["sqlite_path"])
    session = store.get_session(args.session_id)
    if session is None:
        print(f"  No session {args.session_id}")
        return

    print(f"  Session {session.id} (created {session.created_at})")
    print("  " + "─" * 56)
    for msg in store.list_messages(session.id):
        print(f"  [{msg.timestamp}] {msg.role.value:>9}: {msg.content}")


def cmd_export(args):
    """Export all sessions to JSON."""
    from parley.config import get_config
    from parley.storage.sqlite_store import SQLiteStore

    cfg = get_config()
    store = SQLiteStore(cfg["storage"]["sqlite_path"])
    stats = store.get_stats()

    print(f"  Database: {cfg['storage']['sqlite_path']}")
    print(f"  Sessions: {stats['sessions']} | Messages: {stats['messages']}")

    data = store.export_all_json()
    indent = 2 if args.pretty else None

    with open(args.output, "w") as f:
        json.dump(data, f, indent=indent, ensure_ascii=False)

    print(f"  Exported {len(data)} sessions to {args.output}")


def cmd_stats(args):
    """Show config and storage stats at a glance."""
    from parley.config import get_config
    from parley.errors import StorageError
    from parley.storage.sqlite_store import SQLiteStore

    cfg = get_config()
    s_cfg = cfg.get("sessions", {})

    print(BANNER)
    print("  Configuration")
    print(f"  ├─ Backend:   {cfg['backend']['url']}")
    print(f"  ├─ Model:     {cfg['backend'].get('model') or 'gpt-3.5-turbo'}")
    print(f"  ├─ SQLite:    {cfg['storage']['sqlite_path']}")
    print(f"  └─ Busy:      {s_cfg.get('busy_policy', 'reject')}")

    try:
        stats = SQLiteStore(cfg["storage"]["sqlite_path"]).get_stats()
    except StorageError as e:
        print(f"\n  Storage: unavailable ({e})")
        return

    print()
    print("  Storage")
    print(f"  ├─ Sessions:  {stats['sessions']}")
    print(f"  ├─ Messages:  {stats['messages']}")
    print(f"  ├─ User:      {stats['user_messages']}")
    print(f"  └─ Assistant: {stats['assistant_messages']}")


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="parley",
        description="parley: spoken conversations with a streamed LLM.",
        epilog="Run 'parley <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"parley {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["serve", "start", "up"],
                 "Start the parley server", cmd_serve, setup_serve)

    def setup_talk(p):
        p.add_argument("--url", "-u", default=None, help="Server URL (default: from config)")
        p.add_argument("--session", "-s", default=None, help="Continue an existing session")
        p.add_argument("--once", action="store_true", help="Single turn instead of continuous mode")
        p.add_argument("--pace", type=float, default=0.0,
                       help="Seconds per word to pause after printing a reply")

    _add_command(sub, ["talk", "chat"],
                 "Hold a conversation with a running server", cmd_talk, setup_talk)

    def setup_ping(p):
        p.add_argument("--url", "-u", default=None, help="Server URL (default: http://localhost:3001)")

    _add_command(sub, ["ping", "status", "health"],
                 "Ping a running parley server", cmd_ping, setup_ping)

    def setup_history(p):
        p.add_argument("session_id", help="Session id to print")

    _add_command(sub, ["history", "show"],
                 "Print a stored session", cmd_history, setup_history)

    def setup_export(p):
        p.add_argument("--output", "-o", default="sessions_export.json", help="Output file")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON")

    _add_command(sub, ["export", "dump"],
                 "Export all sessions to JSON", cmd_export, setup_export)

    _add_command(sub, ["stats", "info"],
                 "Show storage stats and config", cmd_stats)

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        print(BANNER)
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
