from __future__ import annotations

import logging
import queue
import socket
import threading
import time
from collections.abc import Iterator
from typing import BinaryIO

from .constants import S_ACTIVE, S_CONNECTED, TERMINAL_STATES
from .util import decode_line, encode_line


class Session:
    """
    One live client connection.

    The session owns its socket and a bounded outbound queue drained by a
    dedicated writer thread, so senders only ever enqueue and a slow peer
    cannot stall delivery to anyone else.
    """

    def __init__(
        self,
        sock: socket.socket,
        identity: str,
        remote_host: str,
        remote_port: int,
        *,
        queue_size: int = 256,
        max_line_bytes: int = 65536,
    ) -> None:
        self.sock = sock
        self.identity = identity
        self.remote_host = remote_host
        self.remote_port = int(remote_port)
        self.max_line_bytes = max(2, int(max_line_bytes))
        self.state = S_CONNECTED
        self.connected_at = time.time()
        self.log = logging.getLogger("linechatd.session")

        self._outbound: queue.Queue[str | None] = queue.Queue(maxsize=max(1, int(queue_size)))
        self._writer: threading.Thread | None = None
        self._reader: BinaryIO | None = None
        self._closing = threading.Event()
        self._write_failed = False
        self._state_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<Session {self.identity} {self.remote_host}:{self.remote_port} {self.state}>"

    @property
    def write_failed(self) -> bool:
        return self._write_failed

    @property
    def is_terminated(self) -> bool:
        return self.state in TERMINAL_STATES

    def mark_active(self) -> None:
        with self._state_lock:
            if self.state == S_CONNECTED:
                self.state = S_ACTIVE

    def terminate(self, state: str) -> bool:
        """Move to a terminal state. Returns False if already terminated."""
        with self._state_lock:
            if self.state in TERMINAL_STATES:
                return False
            self.state = state
            return True

    # Outbound

    def start_writer(self) -> None:
        if self._writer is not None:
            return
        self._writer = threading.Thread(
            target=self._writer_loop,
            name=f"linechatd-writer-{self.remote_port}",
            daemon=True,
        )
        self._writer.start()

    def enqueue(self, line: str) -> bool:
        """Queue a line for the peer without blocking.

        Returns False if the session is closing or its queue is full.
        """
        if self._closing.is_set() or self._write_failed:
            return False
        try:
            self._outbound.put_nowait(line)
        except queue.Full:
            return False
        return True

    def pending(self) -> int:
        return self._outbound.qsize()

    def _writer_loop(self) -> None:
        while True:
            line = self._outbound.get()
            if line is None:
                return
            try:
                self.sock.sendall(encode_line(line))
            except OSError as e:
                self._write_failed = True
                self.log.warning(
                    "Write failed identity=%s peer=%s:%s err=%s",
                    self.identity,
                    self.remote_host,
                    self.remote_port,
                    e,
                )
                # Wake the read loop; it owns removal from the table.
                self._shutdown_socket(socket.SHUT_RDWR)
                return

    def stop_writer(self, timeout: float) -> None:
        """Let the writer flush what is queued, then stop it."""
        self._closing.set()
        writer = self._writer
        if writer is None:
            return
        try:
            self._outbound.put(None, timeout=timeout)
        except queue.Full:
            self.log.debug("Outbound queue still full at close identity=%s", self.identity)
        writer.join(timeout)
        if writer.is_alive():
            self.log.debug("Writer did not finish in %.1fs identity=%s", timeout, self.identity)

    # Inbound

    def read_lines(self) -> Iterator[str]:
        """Yield decoded lines until EOF. I/O errors propagate to the caller.

        Lines longer than ``max_line_bytes`` (terminator included) are
        discarded up to the next newline.
        """
        if self._reader is None:
            self._reader = self.sock.makefile("rb")
        dropping = False
        while True:
            raw = self._reader.readline(self.max_line_bytes)
            if not raw:
                return
            complete = raw.endswith(b"\n")
            if dropping or (not complete and len(raw) >= self.max_line_bytes):
                if not dropping:
                    self.log.warning(
                        "Dropping line over %d bytes identity=%s",
                        self.max_line_bytes,
                        self.identity,
                    )
                dropping = not complete
                continue
            yield decode_line(raw)

    # Teardown

    def request_close(self) -> None:
        """End the read loop cleanly while leaving queued output to drain."""
        self._shutdown_socket(socket.SHUT_RD)

    def abort(self) -> None:
        self._closing.set()
        self._shutdown_socket(socket.SHUT_RDWR)

    def close(self) -> None:
        self._closing.set()
        self._shutdown_socket(socket.SHUT_RDWR)
        if self._reader is not None:
            try:
                self._reader.close()
            except OSError:
                pass
        try:
            self.sock.close()
        except OSError:
            pass

    def _shutdown_socket(self, how: int) -> None:
        try:
            self.sock.shutdown(how)
        except OSError:
            # Already disconnected or closed.
            pass


class SessionTable:
    """
    Live registry of connected sessions keyed by identity.

    Every operation runs under ``lock``; callers never see the underlying
    dict, only copies.
    """

    def __init__(self, lock: threading.RLock | None = None) -> None:
        self._lock = lock if lock is not None else threading.RLock()
        self._sessions: dict[str, Session] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, identity: object) -> bool:
        with self._lock:
            return identity in self._sessions

    def register(self, session: Session) -> bool:
        """Insert ``session``. Refuses (returns False) if its identity is taken."""
        with self._lock:
            if session.identity in self._sessions:
                return False
            self._sessions[session.identity] = session
            return True

    def unregister(self, session: Session) -> bool:
        """Remove ``session`` if it is the entry registered under its identity."""
        with self._lock:
            current = self._sessions.get(session.identity)
            if current is not session:
                return False
            del self._sessions[session.identity]
            return True

    def get(self, identity: str) -> Session | None:
        with self._lock:
            return self._sessions.get(identity)

    def snapshot(self) -> list[Session]:
        with self._lock:
            return list(self._sessions.values())

    def identities(self) -> list[str]:
        with self._lock:
            return sorted(self._sessions)

    def clear_all(self) -> list[Session]:
        """Empty the table and return the sessions it held, for teardown."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            return sessions
