from __future__ import annotations

import logging
import signal
import socket
import threading
import time
from collections.abc import Callable, Iterable
from datetime import datetime

from . import __version__, messages
from .acceptor import ConnectionAcceptor
from .commands import CommandHandler
from .config import RelayRuntimeConfig
from .constants import CMD_EXIT, S_CLOSED, S_FAILED
from .router import MessageRouter
from .session import Session, SessionTable
from .stats import StatsManager
from .store import (
    FileHistoryStore,
    FileIdentityRegistry,
    HistoryStore,
    IdentityRecord,
    IdentityRegistry,
    MemoryHistoryStore,
    MemoryIdentityRegistry,
    PresentationSink,
    Transcript,
)
from .util import make_identity


class RelayService:
    def __init__(
        self,
        config: RelayRuntimeConfig,
        *,
        registry: IdentityRegistry | None = None,
        history: HistoryStore | None = None,
        sinks: Iterable[PresentationSink] = (),
    ) -> None:
        self.config = config
        self.log = logging.getLogger("linechatd.service")

        # Session table and the persisted identity mapping are touched from
        # every session thread, the accept thread and operator commands.
        self._state_lock = threading.RLock()
        self._registry_write_lock = threading.Lock()
        self._shutdown = threading.Event()

        self.session_table = SessionTable(self._state_lock)
        self.stats_manager = StatsManager(self)
        self.router = MessageRouter(self)
        self.command_handler = CommandHandler(self)
        self.acceptor = ConnectionAcceptor(self)

        if registry is None:
            if config.registry_path:
                registry = FileIdentityRegistry(config.registry_path)
            else:
                registry = MemoryIdentityRegistry()
        if history is None:
            if config.history_path:
                history = FileHistoryStore(config.history_path)
            else:
                history = MemoryHistoryStore()
        self.registry = registry
        self.history = history

        self.transcript = Transcript(config.transcript_max_lines)
        self._sinks: list[PresentationSink] = [self.transcript, *sinks]

        self._known: dict[str, IdentityRecord] = {}
        self.clock: Callable[[], datetime] = datetime.now

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown.is_set()

    @property
    def bound_port(self) -> int | None:
        return self.acceptor.port

    def add_sink(self, sink: PresentationSink) -> None:
        with self._state_lock:
            self._sinks.append(sink)

    def start(self) -> None:
        """Load persisted state and start accepting. Bind errors propagate."""
        self.log.info("Starting linechatd %s", __version__)
        self.stats_manager.set_start_time()

        try:
            loaded = self.registry.load()
        except Exception as e:
            self.log.error("Failed to load identity registry, starting empty: %s", e)
            loaded = {}
        with self._state_lock:
            self._known = dict(loaded)
        self.log.info("Loaded %d persisted identity record(s)", len(loaded))

        try:
            self.transcript.seed(self.history.load_lines())
        except Exception as e:
            self.log.error("Failed to load chat history: %s", e)

        self.acceptor.bind(self.config.host, self.config.port, self.config.backlog)
        self.acceptor.start()

        self.emit_presentation(
            messages.system_notice(f"Server started on port {self.bound_port}").render()
        )

    def run_forever(self) -> None:
        if self.bound_port is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()
        self.log.info("Stopping")

        self.acceptor.close()

        # Abrupt: sessions cleared here end without leave notices.
        for session in self.session_table.clear_all():
            session.abort()

    # Session lifecycle

    def handle_connection(self, sock: socket.socket, host: str, port: int) -> None:
        """Run one accepted connection to completion on the calling thread."""
        identity = make_identity(host, port, self.clock())
        session = Session(
            sock,
            identity,
            host,
            port,
            queue_size=self.config.outbound_queue_size,
            max_line_bytes=self.config.max_line_bytes,
        )
        self.run_session(session)

    def run_session(self, session: Session) -> None:
        session.start_writer()

        if not self._activate(session):
            if self.is_shutting_down:
                self.log.debug("Refusing session during shutdown identity=%s", session.identity)
            else:
                self.stats_manager.inc("rejected")
                self.log.warning(
                    "Identity collision identity=%s peer=%s:%s; closing connection",
                    session.identity,
                    session.remote_host,
                    session.remote_port,
                )
            session.terminate(S_CLOSED)
            session.stop_writer(self.config.writer_join_timeout_s)
            session.close()
            return

        self.router.deliver_all(messages.join_notice(session.identity))

        state = S_CLOSED
        try:
            for line in session.read_lines():
                if not self.router.route_line(session, line):
                    self.log.debug("Exit requested identity=%s", session.identity)
                    break
        except OSError as e:
            state = S_FAILED
            self.log.info("Read failed identity=%s err=%s", session.identity, e)
        except Exception:
            state = S_FAILED
            self.log.exception("Unexpected error in session identity=%s", session.identity)
        finally:
            if session.write_failed:
                state = S_FAILED
            self._end_session(session, state)

    def _activate(self, session: Session) -> bool:
        with self._state_lock:
            # stop() sets the shutdown flag before clearing the table.
            if self._shutdown.is_set():
                return False
            if not self.session_table.register(session):
                return False
            session.mark_active()
            self._known[session.identity] = IdentityRecord(
                identity=session.identity,
                host=session.remote_host,
                port=session.remote_port,
            )

        self.stats_manager.inc("joins")
        self.log.info(
            "Session joined identity=%s peer=%s:%s",
            session.identity,
            session.remote_host,
            session.remote_port,
        )
        self._save_registry()
        return True

    def _end_session(self, session: Session, state: str) -> None:
        if not session.terminate(state):
            return

        with self._state_lock:
            removed = self.session_table.unregister(session)
            if removed:
                self._known.pop(session.identity, None)

        if state == S_FAILED:
            self.stats_manager.inc("sessions_failed")

        if removed:
            self.stats_manager.inc("leaves")
            self._save_registry()
            self.router.deliver_all(messages.leave_notice(session.identity))

        session.stop_writer(self.config.writer_join_timeout_s)
        session.close()

        self.log.info(
            "Session ended identity=%s state=%s peer=%s:%s",
            session.identity,
            state,
            session.remote_host,
            session.remote_port,
        )

    def _save_registry(self) -> None:
        with self._registry_write_lock:
            with self._state_lock:
                records = dict(self._known)
            try:
                self.registry.save(records)
            except Exception as e:
                self.log.error("Failed to save identity registry: %s", e)

    def known_identities(self) -> dict[str, IdentityRecord]:
        with self._state_lock:
            return dict(self._known)

    # Presentation

    def emit_presentation(self, text: str) -> None:
        with self._state_lock:
            sinks = list(self._sinks)
        for sink in sinks:
            try:
                sink.on_message(text)
            except Exception:
                self.log.warning("Presentation sink %r failed", sink, exc_info=True)

    # Operator actions

    def who(self) -> list[str]:
        return self.session_table.identities()

    def disconnect(self, identity: str) -> bool:
        """Tell the client to exit and close its session. False if not connected."""
        session = self.session_table.get(identity)
        if session is None:
            return False
        session.enqueue(CMD_EXIT)
        session.request_close()
        return True

    def save_history(self) -> int:
        """Append unsaved transcript lines to the history store."""
        lines, marker = self.transcript.take_unsaved()
        if not lines:
            return 0
        try:
            self.history.append_lines("\n".join(lines) + "\n")
        except Exception as e:
            self.log.error("Failed to save chat history: %s", e)
            return 0
        self.transcript.mark_saved(marker)
        self.stats_manager.inc("history_saves")
        self.log.info("Saved %d line(s) to chat history", len(lines))
        return len(lines)

    def format_stats(self) -> str:
        return self.stats_manager.format_stats()
