from __future__ import annotations

import os
import re
from datetime import datetime

from .constants import ENCODING, IDENTITY_PREFIX, IDENTITY_TS_FORMAT, LINE_TERMINATOR

_UNSAFE_HOST_CHARS = re.compile(r"[^A-Za-z0-9]")


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def make_identity(host: str, port: int, when: datetime | None = None) -> str:
    """Build the session identity ``User_<host>_<port>_<YYYYMMDD_HHMMSS>``.

    Host separators (``.`` for IPv4, ``:`` for IPv6) become underscores so the
    token stays a single printable word usable as a ``/private`` target.
    """
    stamp = (when or datetime.now()).strftime(IDENTITY_TS_FORMAT)
    safe_host = _UNSAFE_HOST_CHARS.sub("_", str(host))
    return f"{IDENTITY_PREFIX}_{safe_host}_{int(port)}_{stamp}"


def decode_line(raw: bytes) -> str:
    # Undecodable input must never take a session down.
    text = raw.decode(ENCODING, errors="replace")
    if text.endswith("\n"):
        text = text[:-1]
    if text.endswith("\r"):
        text = text[:-1]
    return text


def encode_line(text: str) -> bytes:
    return (text + LINE_TERMINATOR).encode(ENCODING)
