from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from . import messages
from .commands import (
    BroadcastCommand,
    ExitCommand,
    GroupCommand,
    MalformedCommand,
    PrivateCommand,
    parse_line,
)
from .messages import Message

if TYPE_CHECKING:
    from .service import RelayService
    from .session import Session


class MessageRouter:
    """
    Routes inbound client lines to their recipients.

    This class is responsible for:
    - Classifying each line via ``parse_line``
    - Resolving recipients from the session table (read-only)
    - Enqueueing rendered lines on recipient sessions
    - Isolating per-recipient delivery failures
    """

    def __init__(self, relay: RelayService) -> None:
        self.relay = relay
        self.log = logging.getLogger("linechatd.router")

    def route_line(self, session: Session, line: str) -> bool:
        """
        Handle one line read from ``session``.

        Returns False when the session asked to leave (``/exit``), True otherwise.
        """
        self.relay.stats_manager.inc("lines_in")
        cmd = parse_line(line)

        if isinstance(cmd, ExitCommand):
            return False

        if isinstance(cmd, MalformedCommand):
            self.relay.stats_manager.inc("malformed")
            self.log.warning(
                "Dropping malformed line identity=%s reason=%s line=%r",
                session.identity,
                cmd.reason,
                cmd.line,
            )
            return True

        if isinstance(cmd, PrivateCommand):
            self.relay.stats_manager.inc("privates")
            msg = messages.private(session.identity, cmd.recipient, cmd.text)
            if not self.deliver_to(cmd.recipient, msg):
                self.relay.stats_manager.inc("privates_dropped")
                self.log.debug(
                    "Private message dropped sender=%s recipient=%s (not connected)",
                    session.identity,
                    cmd.recipient,
                )
            return True

        if isinstance(cmd, GroupCommand):
            self.relay.stats_manager.inc("groups")
            self.deliver_all(messages.group(session.identity, cmd.text))
            return True

        if isinstance(cmd, BroadcastCommand):
            self.relay.stats_manager.inc("broadcasts")
            self.deliver_all(messages.broadcast(session.identity, cmd.text))
            return True

        return True

    def deliver_all(self, message: Message) -> int:
        """Send ``message`` to every connected session. Returns the delivered count."""
        text = message.render()
        recipients = self.relay.session_table.snapshot()

        # Feed presentation first so the transcript never lags what peers saw.
        if message.is_broadcast_class:
            self.relay.emit_presentation(text)

        delivered = 0
        for target in recipients:
            if self._enqueue(target, text):
                delivered += 1

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "Delivered kind=%s sender=%s recipients=%s/%s",
                message.kind,
                message.sender,
                delivered,
                len(recipients),
            )
        return delivered

    def deliver_to(self, identity: str, message: Message) -> bool:
        """Send ``message`` to one identity. Returns False if it is not connected."""
        target = self.relay.session_table.get(identity)
        if target is None:
            return False
        self._enqueue(target, message.render())
        return True

    def _enqueue(self, target: Session, text: str) -> bool:
        # A failed enqueue only skips this recipient; its own read loop
        # decides whether the session ends.
        if target.enqueue(text):
            self.relay.stats_manager.inc("lines_out")
            return True
        self.relay.stats_manager.inc("send_failures")
        self.log.warning(
            "Delivery to identity=%s skipped (queue full or closing, pending=%s)",
            target.identity,
            target.pending(),
        )
        return False
