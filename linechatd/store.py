"""Identity registry, chat history and transcript collaborators for the relay."""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import cbor2

from .util import expand_path

log = logging.getLogger("linechatd.store")


@dataclass(frozen=True)
class IdentityRecord:
    identity: str
    host: str
    port: int


class IdentityRegistry(Protocol):
    def load(self) -> dict[str, IdentityRecord]: ...

    def save(self, records: dict[str, IdentityRecord]) -> None: ...


class HistoryStore(Protocol):
    def load_lines(self) -> list[str]: ...

    def append_lines(self, text: str) -> None: ...


class PresentationSink(Protocol):
    def on_message(self, text: str) -> None: ...


def _records_to_wire(records: dict[str, IdentityRecord]) -> dict[str, Any]:
    return {
        ident: {"host": rec.host, "port": int(rec.port)}
        for ident, rec in sorted(records.items())
    }


def _records_from_wire(data: Any) -> dict[str, IdentityRecord]:
    if not isinstance(data, dict):
        raise ValueError("identity registry must be a CBOR map")

    records: dict[str, IdentityRecord] = {}
    for ident, entry in data.items():
        if not isinstance(ident, str) or not ident:
            log.warning("Skipping registry entry with bad identity %r", ident)
            continue
        if not isinstance(entry, dict):
            log.warning("Skipping registry entry %s: not a map", ident)
            continue
        host = entry.get("host")
        port = entry.get("port")
        if not isinstance(host, str) or not isinstance(port, int):
            log.warning("Skipping registry entry %s: bad host/port", ident)
            continue
        records[ident] = IdentityRecord(identity=ident, host=host, port=port)
    return records


class FileIdentityRegistry:
    """
    Identity registry persisted as a CBOR map ``identity -> {host, port}``.

    A missing file loads as an empty registry. Saves replace the file
    atomically and keep it private to the owner.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(expand_path(str(path)))

    def load(self) -> dict[str, IdentityRecord]:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            log.info("Identity registry %s not found; starting empty", self.path)
            return {}
        if not raw:
            return {}
        return _records_from_wire(cbor2.loads(raw))

    def save(self, records: dict[str, IdentityRecord]) -> None:
        payload = cbor2.dumps(_records_to_wire(records))
        self.path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp = tempfile.mkstemp(
            prefix=f".{self.path.name}.", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise


class MemoryIdentityRegistry:
    """In-process registry, used when no registry path is configured."""

    def __init__(self, records: dict[str, IdentityRecord] | None = None) -> None:
        self.records: dict[str, IdentityRecord] = dict(records or {})
        self.saves = 0

    def load(self) -> dict[str, IdentityRecord]:
        return dict(self.records)

    def save(self, records: dict[str, IdentityRecord]) -> None:
        self.records = dict(records)
        self.saves += 1


class FileHistoryStore:
    """Append-only UTF-8 chat transcript file."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(expand_path(str(path)))

    def load_lines(self) -> list[str]:
        try:
            with open(self.path, encoding="utf-8", errors="replace") as f:
                return [line.rstrip("\r\n") for line in f]
        except FileNotFoundError:
            return []

    def append_lines(self, text: str) -> None:
        if not text:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(text)


class MemoryHistoryStore:
    def __init__(self, lines: Iterable[str] = ()) -> None:
        self.lines: list[str] = list(lines)

    def load_lines(self) -> list[str]:
        return list(self.lines)

    def append_lines(self, text: str) -> None:
        self.lines.extend(text.splitlines())


class Transcript:
    """
    In-memory chat feed; the default presentation sink.

    Keeps at most ``max_lines`` rendered lines and remembers how many of them
    have already been written to history, so a save only appends new lines.
    """

    def __init__(self, max_lines: int = 10000) -> None:
        self._lines: deque[str] = deque(maxlen=max(1, int(max_lines)))
        self._total = 0
        self._saved = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)

    def seed(self, lines: Iterable[str]) -> None:
        """Load previously saved lines; they count as already saved."""
        with self._lock:
            for line in lines:
                self._lines.append(line)
                self._total += 1
            self._saved = self._total

    def on_message(self, text: str) -> None:
        with self._lock:
            self._lines.append(text)
            self._total += 1

    def lines(self) -> list[str]:
        with self._lock:
            return list(self._lines)

    def take_unsaved(self) -> tuple[list[str], int]:
        """Return the lines not yet saved and a marker for ``mark_saved``."""
        with self._lock:
            count = min(self._total - self._saved, len(self._lines))
            unsaved = list(self._lines)[len(self._lines) - count :] if count else []
            return unsaved, self._total

    def mark_saved(self, marker: int) -> None:
        with self._lock:
            self._saved = max(self._saved, marker)
