"""Client line parsing and operator console commands."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

from .constants import CMD_EXIT, CMD_GROUP, CMD_PRIVATE

if TYPE_CHECKING:
    from .service import RelayService


@dataclass(frozen=True)
class ExitCommand:
    pass


@dataclass(frozen=True)
class PrivateCommand:
    recipient: str
    text: str


@dataclass(frozen=True)
class GroupCommand:
    text: str


@dataclass(frozen=True)
class BroadcastCommand:
    text: str


@dataclass(frozen=True)
class MalformedCommand:
    line: str
    reason: str


ParsedLine = Union[
    ExitCommand, PrivateCommand, GroupCommand, BroadcastCommand, MalformedCommand
]


def _command_token(line: str) -> str:
    head, _, _ = line.partition(" ")
    return head


def parse_line(line: str) -> ParsedLine:
    """
    Classify one inbound client line.

    Never raises: malformed commands come back as ``MalformedCommand`` so the
    caller can log and drop them while the session stays up.
    """
    if line == CMD_EXIT:
        return ExitCommand()

    token = _command_token(line)

    if token == CMD_PRIVATE:
        parts = line.split(" ", 2)
        if len(parts) < 3:
            return MalformedCommand(line, "usage: /private <identity> <text>")
        recipient, text = parts[1], parts[2]
        if not recipient:
            return MalformedCommand(line, "missing private recipient")
        return PrivateCommand(recipient=recipient, text=text)

    if token == CMD_GROUP:
        _, sep, text = line.partition(" ")
        if not sep:
            return MalformedCommand(line, "usage: /group <text>")
        return GroupCommand(text=text)

    return BroadcastCommand(text=line)


_HELP = (
    "Operator commands:\n"
    "  who              list connected identities\n"
    "  kick <identity>  disconnect a user\n"
    "  save             append the unsaved chat feed to history\n"
    "  stats            show relay statistics\n"
    "  help             show this help"
)


class CommandHandler:
    """Handles operator console commands for the relay."""

    def __init__(self, relay: RelayService) -> None:
        self.relay = relay
        self.log = logging.getLogger("linechatd.commands")

    def handle_operator_command(self, text: str) -> str:
        """Run one operator command line and return the text to show the operator."""
        cmdline = text.strip()
        if cmdline.startswith("/"):
            cmdline = cmdline[1:]

        parts = [p for p in cmdline.split() if p]
        if not parts:
            return ""

        cmd = parts[0].lower()

        if cmd == "help":
            return _HELP

        if cmd in ("who", "names"):
            identities = self.relay.who()
            if not identities:
                return "No users connected"
            return f"connected ({len(identities)}): " + ", ".join(identities)

        if cmd in ("kick", "disconnect"):
            if len(parts) < 2:
                return "usage: kick <identity>"
            target = parts[1]
            if self.relay.disconnect(target):
                self.log.info("Operator disconnected identity=%s", target)
                return f"disconnected {target}"
            return f"user not found: {target}"

        if cmd == "save":
            written = self.relay.save_history()
            return f"saved {written} line(s) to history"

        if cmd == "stats":
            return self.relay.format_stats()

        return f"unknown command: {cmd} (try help)"
