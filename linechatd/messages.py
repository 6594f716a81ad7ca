"""Chat message values and their rendering to wire lines."""

from __future__ import annotations

from dataclasses import dataclass

from .constants import (
    BROADCAST_KINDS,
    KIND_BROADCAST,
    KIND_GROUP,
    KIND_JOIN,
    KIND_LEAVE,
    KIND_PRIVATE,
    KIND_SYSTEM,
)


@dataclass(frozen=True)
class Message:
    """
    A single routed message.

    ``recipient`` is only set for private messages. Join/leave notices carry
    the affected identity as ``sender`` and an empty body.
    """

    sender: str
    kind: str
    body: str = ""
    recipient: str | None = None

    @property
    def is_broadcast_class(self) -> bool:
        return self.kind in BROADCAST_KINDS

    def render(self) -> str:
        if self.kind == KIND_BROADCAST:
            return f"{self.sender}: {self.body}"
        if self.kind == KIND_PRIVATE:
            return f"{self.sender} (private): {self.body}"
        if self.kind == KIND_GROUP:
            return f"{self.sender} (group): {self.body}"
        if self.kind == KIND_JOIN:
            return f"User {self.sender} joined the chat"
        if self.kind == KIND_LEAVE:
            return f"User {self.sender} left the chat"
        if self.kind == KIND_SYSTEM:
            return self.body
        raise ValueError(f"unknown message kind {self.kind!r}")


def broadcast(sender: str, body: str) -> Message:
    return Message(sender=sender, kind=KIND_BROADCAST, body=body)


def private(sender: str, recipient: str, body: str) -> Message:
    return Message(sender=sender, kind=KIND_PRIVATE, body=body, recipient=recipient)


def group(sender: str, body: str) -> Message:
    return Message(sender=sender, kind=KIND_GROUP, body=body)


def join_notice(identity: str) -> Message:
    return Message(sender=identity, kind=KIND_JOIN)


def leave_notice(identity: str) -> Message:
    return Message(sender=identity, kind=KIND_LEAVE)


def system_notice(text: str) -> Message:
    return Message(sender="", kind=KIND_SYSTEM, body=text)
