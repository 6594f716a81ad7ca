from __future__ import annotations

import socket
import time
from datetime import datetime

import pytest

from linechatd.config import RelayRuntimeConfig
from linechatd.service import RelayService
from linechatd.session import SessionTable
from linechatd.stats import StatsManager

FIXED_NOW = datetime(2026, 10, 18, 12, 0, 0)
FIXED_STAMP = "20261018_120000"


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


class FakeSession:
    def __init__(self, identity: str, *, accept: bool = True) -> None:
        self.identity = identity
        self.accept = accept
        self.lines: list[str] = []

    def enqueue(self, line: str) -> bool:
        if not self.accept:
            return False
        self.lines.append(line)
        return True

    def pending(self) -> int:
        return 0


class FakeRelay:
    def __init__(self) -> None:
        self.session_table = SessionTable()
        self.stats_manager = StatsManager(self)
        self.presented: list[str] = []

    def emit_presentation(self, text: str) -> None:
        self.presented.append(text)


class LineClient:
    def __init__(self, port: int) -> None:
        self.sock = socket.create_connection(("127.0.0.1", port), timeout=5.0)
        self.reader = self.sock.makefile("rb")
        self.identity: str | None = None

    @property
    def local_port(self) -> int:
        return int(self.sock.getsockname()[1])

    def send(self, line: str) -> None:
        self.sock.sendall((line + "\n").encode("utf-8"))

    def recv(self) -> str:
        raw = self.reader.readline()
        if not raw:
            raise EOFError("connection closed by relay")
        return raw.decode("utf-8").rstrip("\r\n")

    def recv_until(self, predicate, limit: int = 100) -> str:
        for _ in range(limit):
            line = self.recv()
            if predicate(line):
                return line
        raise AssertionError("expected line never arrived")

    def at_eof(self, limit: int = 1000) -> bool:
        """Skip any remaining lines; True once the relay has closed the stream."""
        for _ in range(limit):
            try:
                raw = self.reader.readline()
            except TimeoutError:
                return False
            except OSError:
                return True
            if not raw:
                return True
        return False

    def close(self) -> None:
        try:
            self.reader.close()
        finally:
            self.sock.close()


@pytest.fixture
def fake_relay() -> FakeRelay:
    return FakeRelay()


@pytest.fixture
def relay_config(tmp_path) -> RelayRuntimeConfig:
    return RelayRuntimeConfig(
        host="127.0.0.1",
        port=0,
        registry_path=str(tmp_path / "identities.cbor"),
        history_path=str(tmp_path / "chat_history.txt"),
        writer_join_timeout_s=1.0,
    )


@pytest.fixture
def relay(relay_config):
    svc = RelayService(relay_config)
    svc.clock = lambda: FIXED_NOW
    svc.start()
    yield svc
    svc.stop()


@pytest.fixture
def connect(relay):
    """Connect a client and wait for its own join notice."""
    clients: list[LineClient] = []

    def _connect() -> LineClient:
        client = LineClient(relay.bound_port)
        clients.append(client)
        client.identity = f"User_127_0_0_1_{client.local_port}_{FIXED_STAMP}"
        assert client.recv() == f"User {client.identity} joined the chat"
        return client

    yield _connect

    for client in clients:
        client.close()
