"""
roomchat_commands.py
────────────────────
Command registry and parser for the roomchat console.

Every typed line goes through a single CommandParser.  Lines that are not
commands are chat messages and are left to the caller.  Adding a new
command is one _register() call.

Invocation styles accepted for every command
────────────────────────────────────────────
  Prefixed:    /room lobby     !room lobby     :room lobby
  Namespaced:  chat.room(lobby)   chat.room lobby

Command catalogue
─────────────────
  help                 — list every available command
  room   <id>          — switch to (join) a room
  leave                — leave the current room
  nick   <name>        — change username
  users                — who is in the current room
  history              — print the current room's stored log
  rooms                — rooms with a local log
  status               — connection / identity summary
  reconnect            — open a fresh connection with the same identity
  say    <message>     — send a message (same as typing it)
  quit                 — close the session and exit
"""

import re
from typing import Callable, Optional, Tuple

from rapidfuzz import fuzz, process

from roomchat_errors import UserInputError

_SUGGEST_CUTOFF = 60


class _Cmd:
    __slots__ = ("name", "handler", "description", "usage", "aliases")

    def __init__(
        self,
        name       : str,
        handler    : Callable,
        description: str,
        usage      : str,
        aliases    : tuple = (),
    ):
        self.name        = name
        self.handler     = handler
        self.description = description
        self.usage       = usage
        self.aliases     = aliases


class CommandParser:
    """
    Single command bus for a ChatSession.

    Parameters
    ----------
    session : ChatSession — the live session the commands act on.
    """

    # a command name must follow the prefix; ":) hi" and "!!!" are chat
    _PREFIX_RE    = re.compile(r"^[/!:]+(?=[a-z?])", re.IGNORECASE)
    _NAMESPACE_RE = re.compile(r"^chat\.(?=[a-z?])", re.IGNORECASE)
    _COMMAND_RE   = re.compile(
        r"^([a-z_?]+)"                  # command name
        r"(?:\((.*)\)|\s+(.*))?$",      # optional (arg) or  arg
        re.IGNORECASE | re.DOTALL,
    )

    def __init__(self, session):
        self._session      = session
        self._cmds         : dict = {}   # name → _Cmd
        self._aliases      : dict = {}   # alias → canonical name
        self.quit_requested = False
        self._register_all()

    # ─────────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────────

    def is_command(self, text: str) -> bool:
        raw = text.strip()
        return bool(self._PREFIX_RE.match(raw) or self._NAMESPACE_RE.match(raw))

    def parse(self, text: str) -> Tuple[bool, Optional[str]]:
        """
        Run text as a command if it is one.

        Returns
        -------
        (handled: bool, console_output: str | None)
        """
        raw = text.strip()
        if not self.is_command(raw):
            return False, None

        norm = self._NAMESPACE_RE.sub("", self._PREFIX_RE.sub("", raw)).strip()
        m    = self._COMMAND_RE.match(norm)
        if not m:
            return True, f"[Command]: cannot parse '{raw}'  |  try /help"

        cmd_name  = m.group(1).lower()
        arg       = (m.group(2) if m.group(2) is not None else m.group(3) or "").strip()
        canonical = self._aliases.get(cmd_name, cmd_name)
        entry     = self._cmds.get(canonical)

        if entry is None:
            return True, self._unknown(cmd_name)

        try:
            return True, entry.handler(arg)
        except UserInputError as exc:
            return True, f"[Warning]: {exc}"
        except Exception as exc:
            return True, f"[Command Error]: {cmd_name} — {exc}"

    def help_text(self) -> str:
        lines = [
            "─────────────────────────────────────────────────",
            "  ROOMCHAT COMMANDS",
            "─────────────────────────────────────────────────",
        ]
        for name, cmd in sorted(self._cmds.items()):
            alias_str = (
                f"  (alias: {', '.join(cmd.aliases)})" if cmd.aliases else ""
            )
            lines.append(f"  /{cmd.usage:<24}  {cmd.description}{alias_str}")
        lines += [
            "─────────────────────────────────────────────────",
            "  Anything not starting with / ! : is sent to the room.",
            "─────────────────────────────────────────────────",
        ]
        return "\n".join(lines)

    # ─────────────────────────────────────────────────────────────────────────
    # Registration helpers
    # ─────────────────────────────────────────────────────────────────────────

    def _register(
        self,
        name       : str,
        handler    : Callable,
        description: str,
        usage      : str,
        aliases    : tuple = (),
    ):
        cmd = _Cmd(name, handler, description, usage, aliases)
        self._cmds[name] = cmd
        for alias in aliases:
            self._aliases[alias] = name

    def _register_all(self):
        self._register(
            "help",
            lambda _: self.help_text(),
            "List all available commands",
            "help",
            aliases=("?", "commands"),
        )
        self._register(
            "room",
            self._cmd_room,
            "Switch to a room (joins it on the server)",
            "room <id>",
            aliases=("join",),
        )
        self._register(
            "leave",
            self._cmd_leave,
            "Leave the current room",
            "leave",
            aliases=("part",),
        )
        self._register(
            "nick",
            self._cmd_nick,
            "Change your username",
            "nick <name>",
            aliases=("name", "username"),
        )
        self._register(
            "users",
            self._cmd_users,
            "List users in the current room",
            "users",
            aliases=("who",),
        )
        self._register(
            "history",
            self._cmd_history,
            "Print the current room's message log",
            "history",
            aliases=("log",),
        )
        self._register(
            "rooms",
            self._cmd_rooms,
            "List rooms with a local message log",
            "rooms",
        )
        self._register(
            "status",
            self._cmd_status,
            "Show connection and identity",
            "status",
            aliases=("info", "state"),
        )
        self._register(
            "reconnect",
            self._cmd_reconnect,
            "Open a fresh connection with the same room and name",
            "reconnect",
        )
        self._register(
            "say",
            self._cmd_say,
            "Send a message to the current room",
            "say <message>",
            aliases=("send",),
        )
        self._register(
            "quit",
            self._cmd_quit,
            "Close the session and exit",
            "quit",
            aliases=("exit", "q"),
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Individual command implementations
    # ─────────────────────────────────────────────────────────────────────────

    def _cmd_room(self, arg: str) -> str:
        s = self._session
        if not arg:
            current = s.room_id or "none"
            return f"[Room]: currently → {current}  |  usage: /room <id>"
        s.set_room(arg)
        return f"[Room]: switching to {s.room_id} …"

    def _cmd_leave(self, _: str) -> str:
        s = self._session
        if s.room_id is None:
            return "[Room]: not in a room"
        left = s.room_id
        s.set_room(None)
        return f"[Room]: left {left}"

    def _cmd_nick(self, arg: str) -> str:
        s = self._session
        if not arg:
            return f"[Nick]: currently → {s.username}  |  usage: /nick <name>"
        s.set_username(arg)
        return f"[Nick]: you are now {s.username}"

    def _cmd_users(self, _: str) -> str:
        s = self._session
        if s.room_id is None:
            raise UserInputError("Join a room first to see who is in it.")
        names = s.presence.users_in(s.room_id)
        if not names:
            return f"[Users]: nobody reported in {s.room_id} yet"
        return f"[Users]: {s.room_id} → " + ", ".join(names)

    def _cmd_history(self, _: str) -> str:
        s = self._session
        if s.room_id is None:
            raise UserInputError("Join a room first to see its history.")
        if not s.messages:
            return f"[History]: no messages in {s.room_id}"
        return "\n".join(f"  {m.sender}: {m.message}" for m in s.messages)

    def _cmd_rooms(self, _: str) -> str:
        rooms = self._session.store.rooms()
        if not rooms:
            return "[Rooms]: no local history yet"
        return "[Rooms]: " + ", ".join(rooms)

    def _cmd_status(self, _: str) -> str:
        s = self._session
        lines = [
            "─────────────────────────── STATUS ─",
            f"  Connection : {'● ' if s.ready else '○ '}{s.state.value}",
            f"  Username   : {s.username}",
            f"  Room       : {s.room_id or 'none'}",
            f"  Messages   : {len(s.messages)}",
            f"  Users      : {len(s.active_users)} reported",
            "────────────────────────────────────",
        ]
        return "\n".join(lines)

    def _cmd_reconnect(self, _: str) -> str:
        self._session.reconnect()
        return "[Session]: reconnecting …"

    def _cmd_say(self, arg: str) -> Optional[str]:
        self._session.send_message(arg)
        return None

    def _cmd_quit(self, _: str) -> str:
        self.quit_requested = True
        return "[Session]: bye"

    # ─────────────────────────────────────────────────────────────────────────
    # Utility
    # ─────────────────────────────────────────────────────────────────────────

    def _unknown(self, cmd_name: str) -> str:
        choices = list(self._cmds) + list(self._aliases)
        match   = process.extractOne(
            cmd_name, choices, scorer=fuzz.ratio, score_cutoff=_SUGGEST_CUTOFF
        )
        if match:
            suggestion = self._aliases.get(match[0], match[0])
            return f"[Command]: unknown '{cmd_name}' — did you mean /{suggestion}?"
        return f"[Command]: unknown '{cmd_name}'  |  try /help"
