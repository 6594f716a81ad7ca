from __future__ import annotations

import logging
import socket
import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .service import RelayService


class ConnectionAcceptor:
    """
    Owns the listening socket and the accept loop.

    ``bind()`` failures propagate to the caller; errors accepting a single
    connection are logged and the loop keeps going. Every accepted socket is
    handed to ``RelayService.handle_connection`` on its own thread.
    """

    # Seconds to wait after a failed accept before trying again.
    error_backoff_s = 0.1

    def __init__(self, relay: RelayService) -> None:
        self.relay = relay
        self.log = logging.getLogger("linechatd.acceptor")
        self._listener: socket.socket | None = None
        self._thread: threading.Thread | None = None

    @property
    def port(self) -> int | None:
        if self._listener is None:
            return None
        return int(self._listener.getsockname()[1])

    def bind(self, host: str, port: int, backlog: int) -> None:
        infos = socket.getaddrinfo(
            host or None, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
        )
        family, socktype, proto, _, sockaddr = infos[0]
        listener = socket.socket(family, socktype, proto)
        try:
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listener.bind(sockaddr)
            listener.listen(max(1, int(backlog)))
        except OSError:
            listener.close()
            raise
        self._listener = listener
        self.log.info("Listening on %s:%s", host, self.port)

    def start(self) -> None:
        if self._listener is None:
            raise RuntimeError("bind() must be called before start()")
        self._thread = threading.Thread(
            target=self._accept_loop, name="linechatd-accept", daemon=True
        )
        self._thread.start()

    def _accept_loop(self) -> None:
        listener = self._listener
        assert listener is not None
        while not self.relay.is_shutting_down:
            try:
                conn, addr = listener.accept()
            except OSError as e:
                if self.relay.is_shutting_down or listener.fileno() < 0:
                    break
                self.relay.stats_manager.inc("accept_errors")
                self.log.warning("Accept failed: %s", e)
                time.sleep(self.error_backoff_s)
                continue

            self.relay.stats_manager.inc("accepted")
            host, port = str(addr[0]), int(addr[1])
            worker = threading.Thread(
                target=self.relay.handle_connection,
                args=(conn, host, port),
                name=f"linechatd-session-{port}",
                daemon=True,
            )
            try:
                worker.start()
            except RuntimeError as e:
                self.log.error("Could not start session thread for %s:%s: %s", host, port, e)
                conn.close()

        self.log.info("Accept loop stopped")

    def close(self, timeout: float = 1.0) -> None:
        listener = self._listener
        if listener is not None:
            # close() alone does not wake a thread blocked in accept() on Linux.
            try:
                listener.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            try:
                listener.close()
            except OSError:
                pass
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
