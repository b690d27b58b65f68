#!/usr/bin/env python3
"""
roomchat_main.py
────────────────
Entry point for the roomchat console client.

Threading architecture
──────────────────────
  One asyncio loop runs everything: the session's event pump, the socket
  tasks and the handling of typed lines.  Only the blocking stdin read runs
  elsewhere, on a daemon thread; each line it returns is queued back onto
  the loop, and Ctrl-C exits without waiting for Enter.

Configuration comes from roomchat_config.json / ROOMCHAT_* environment
variables (see roomchat_config.py).
"""

import asyncio
import contextlib
import functools
import logging
import sys
import threading
from typing import Callable, Optional

# ── Python version gate ───────────────────────────────────────────────────────
if sys.version_info < (3, 10):
    print(
        f"[roomchat]: Python 3.10+ required "
        f"(current: {sys.version_info.major}.{sys.version_info.minor})",
        file=sys.stderr,
    )
    sys.exit(1)

import paths
import roomchat_config as cfg
from roomchat_commands import CommandParser
from roomchat_errors import UserInputError
from roomchat_session import ChatSession
from roomchat_store import LocalStorage, RoomMessageStore
from roomchat_transport import WebSocketConnection

_log = logging.getLogger("roomchat")


def configure_logging(level: str = "INFO", log_file=None) -> None:
    """
    Configure the root logger once: stderr always, plus a log file when
    *log_file* is given.
    """
    root = logging.getLogger()
    if root.handlers:
        return

    root.setLevel(level.upper())
    fmt     = logging.Formatter(
        fmt="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(fmt)
    root.addHandler(handler)

    if log_file is not None:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(fmt)
        root.addHandler(file_handler)

    logging.getLogger("websockets").setLevel(logging.WARNING)


def render_event(ev: dict, session: ChatSession) -> Optional[str]:
    """Turn a session event into a console line (None = print nothing)."""
    t = ev.get("type")
    c = ev.get("content", {})

    if t == "message":
        return f"{c['sender']}: {c['msg']}"
    if t == "messages":
        if c["room_id"] is None:
            return "[Room]: no room joined  |  /room <id> to join one"
        lines = [f"[Room]: {c['room_id']} — {len(c['messages'])} stored message(s)"]
        lines += [f"  {m['sender']}: {m['msg']}" for m in c["messages"]]
        return "\n".join(lines)
    if t == "users":
        if session.room_id is None:
            return None
        names = session.presence.users_in(session.room_id)
        return f"[Users]: {', '.join(names) if names else 'nobody'}"
    if t == "state":
        if c["state"] in ("connecting", "joining"):
            return "[Session]: socket establishing …"
        return f"[Session]: {c['state']}"
    if t == "notice":
        return f"[{c['level'].title()}]: {c['text']}"
    return None


def build_session(on_event: Callable[[dict], None], storage: LocalStorage) -> ChatSession:
    factory = functools.partial(
        WebSocketConnection,
        open_timeout =cfg.OPEN_TIMEOUT,
        ping_interval=cfg.PING_INTERVAL,
        ping_timeout =cfg.PING_TIMEOUT,
    )
    return ChatSession(
        url               =cfg.WS_URL,
        store             =RoomMessageStore(storage),
        username          =cfg.DEFAULT_USERNAME,
        room_id           =cfg.DEFAULT_ROOM_ID,
        connection_factory=factory,
        on_event          =on_event,
        default_username  =cfg.DEFAULT_USERNAME,
        max_message_len   =cfg.MAX_MESSAGE_LEN,
    )


def handle_line(line: str, session: ChatSession, parser: CommandParser) -> Optional[str]:
    """One typed line: a command, or a chat message for the current room."""
    line = line.strip()
    if not line:
        return None
    handled, output = parser.parse(line)
    if handled:
        return output
    try:
        session.send_message(line)
    except UserInputError as exc:
        return f"[Warning]: {exc}"
    return None


def start_line_reader(stdin, loop: asyncio.AbstractEventLoop) -> asyncio.Queue:
    """
    Read *stdin* on a daemon thread and hand each line to the loop.  An
    empty string marks EOF.  A daemon thread still blocked in readline()
    does not hold up interpreter exit.
    """
    lines: asyncio.Queue = asyncio.Queue()

    def _reader():
        while True:
            line = stdin.readline()
            try:
                loop.call_soon_threadsafe(lines.put_nowait, line)
            except RuntimeError:
                return   # loop already closed
            if not line:
                return

    threading.Thread(target=_reader, daemon=True, name="roomchat-stdin").start()
    return lines


async def run_console(session: ChatSession, parser: CommandParser,
                      stdin=None, out: Callable[[str], None] = print):
    stdin = stdin or sys.stdin
    lines = start_line_reader(stdin, asyncio.get_running_loop())
    pump  = asyncio.create_task(session.run())
    session.start()
    try:
        while not parser.quit_requested:
            line = await lines.get()
            if not line:
                break   # EOF
            output = handle_line(line, session, parser)
            if output:
                out(output)
    finally:
        session.shutdown()
        pump.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await pump


def main():
    paths.ensure_dirs()
    configure_logging(cfg.LOG_LEVEL, paths.LOG_DIR / "roomchat.log")
    storage = LocalStorage(paths.STORAGE_DB)

    session: Optional[ChatSession] = None

    def _on_event(ev: dict):
        line = render_event(ev, session) if session is not None else None
        if line:
            print(line)

    try:
        session = build_session(_on_event, storage)
        parser  = CommandParser(session)
        print(f"[roomchat]: {cfg.WS_URL} as {session.username}  |  /help for commands")
        asyncio.run(run_console(session, parser))

    except KeyboardInterrupt:
        print("\n[roomchat]: interrupted by user")
        sys.exit(0)

    except Exception as exc:
        _log.exception("[roomchat Fatal]: %s", exc)
        sys.exit(1)

    finally:
        storage.close()


if __name__ == "__main__":
    main()
