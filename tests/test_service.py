import errno
import socket
import threading

import pytest

from linechatd.config import RelayRuntimeConfig
from linechatd.service import RelayService
from linechatd.session import Session
from linechatd.store import FileHistoryStore, FileIdentityRegistry

from conftest import FIXED_NOW, FIXED_STAMP, LineClient, wait_for


def test_identity_format_and_join_notice(relay, connect) -> None:
    a = connect()
    assert a.identity == f"User_127_0_0_1_{a.local_port}_{FIXED_STAMP}"
    assert relay.who() == [a.identity]


def test_broadcast_reaches_all_including_sender(relay, connect) -> None:
    a = connect()
    b = connect()
    a.recv_until(lambda line: line == f"User {b.identity} joined the chat")

    a.send("hello")

    assert a.recv() == f"{a.identity}: hello"
    assert b.recv() == f"{a.identity}: hello"


def test_group_message_is_marked(relay, connect) -> None:
    a = connect()
    b = connect()
    a.recv_until(lambda line: line == f"User {b.identity} joined the chat")

    a.send("/group hi all")

    assert a.recv() == f"{a.identity} (group): hi all"
    assert b.recv() == f"{a.identity} (group): hi all"


def test_private_only_reaches_recipient(relay, connect) -> None:
    a = connect()
    b = connect()
    c = connect()
    a.recv_until(lambda line: line == f"User {c.identity} joined the chat")
    b.recv_until(lambda line: line == f"User {c.identity} joined the chat")

    a.send(f"/private {b.identity} secret")
    a.send("marker")

    assert b.recv() == f"{a.identity} (private): secret"
    assert b.recv() == f"{a.identity}: marker"
    # Per-sender ordering: anything private to c would arrive before the marker.
    assert c.recv() == f"{a.identity}: marker"
    assert a.recv() == f"{a.identity}: marker"


def test_private_to_unknown_identity_is_silent(relay, connect) -> None:
    a = connect()

    a.send("/private User_nobody hello")
    a.send("still here")

    assert a.recv() == f"{a.identity}: still here"
    assert relay.stats_manager.get("privates_dropped") == 1


def test_malformed_private_keeps_session(relay, connect) -> None:
    a = connect()

    a.send("/private onlyonearg")
    a.send("after")

    assert a.recv() == f"{a.identity}: after"
    assert a.identity in relay.session_table
    assert relay.stats_manager.get("malformed") == 1


def test_exit_removes_session_and_notifies_once(relay, connect) -> None:
    a = connect()
    b = connect()
    a.recv_until(lambda line: line == f"User {b.identity} joined the chat")

    b.send("/exit")

    assert a.recv() == f"User {b.identity} left the chat"
    assert wait_for(lambda: b.identity not in relay.session_table)
    assert b.at_eof()

    a.send("ping")
    assert a.recv() == f"{a.identity}: ping"
    assert relay.who() == [a.identity]


def test_abrupt_disconnect_sends_leave(relay, connect) -> None:
    a = connect()
    b = connect()
    a.recv_until(lambda line: line == f"User {b.identity} joined the chat")

    b.close()

    assert a.recv() == f"User {b.identity} left the chat"
    assert wait_for(lambda: relay.who() == [a.identity])


def test_operator_disconnect(relay, connect) -> None:
    a = connect()
    b = connect()
    a.recv_until(lambda line: line == f"User {b.identity} joined the chat")

    reply = relay.command_handler.handle_operator_command(f"kick {b.identity}")

    assert reply == f"disconnected {b.identity}"
    assert b.recv() == "/exit"
    assert a.recv() == f"User {b.identity} left the chat"
    assert wait_for(lambda: b.identity not in relay.session_table)
    assert not relay.disconnect(b.identity)


def test_registry_follows_membership(relay, relay_config, connect) -> None:
    registry = FileIdentityRegistry(relay_config.registry_path)
    a = connect()
    b = connect()

    assert wait_for(lambda: set(registry.load()) == {a.identity, b.identity})
    record = registry.load()[a.identity]
    assert (record.host, record.port) == ("127.0.0.1", a.local_port)

    b.send("/exit")
    assert wait_for(lambda: set(registry.load()) == {a.identity})


def test_save_history_appends_only_new_lines(relay, relay_config, connect) -> None:
    store = FileHistoryStore(relay_config.history_path)
    a = connect()
    a.send("one")
    a.recv()

    first = relay.save_history()
    lines = store.load_lines()
    assert first == len(lines)
    assert lines[0].startswith("Server started on port")
    assert lines[-2:] == [f"User {a.identity} joined the chat", f"{a.identity}: one"]

    a.send("two")
    a.recv()
    assert relay.save_history() == 1
    assert store.load_lines()[-1] == f"{a.identity}: two"
    assert relay.save_history() == 0


def test_private_messages_are_not_in_transcript(relay, connect) -> None:
    a = connect()
    a.send(f"/private {a.identity} note to self")
    assert a.recv() == f"{a.identity} (private): note to self"
    assert not any("note to self" in line for line in relay.transcript.lines())


def test_history_is_seeded_on_start(tmp_path) -> None:
    history = tmp_path / "chat_history.txt"
    history.write_text("old line\n", encoding="utf-8")
    cfg = RelayRuntimeConfig(host="127.0.0.1", port=0, history_path=str(history))
    svc = RelayService(cfg)
    svc.start()
    try:
        assert svc.transcript.lines()[0] == "old line"
        # Seeded lines are not written again.
        assert svc.save_history() == 1
        assert FileHistoryStore(history).load_lines() == [
            "old line",
            f"Server started on port {svc.bound_port}",
        ]
    finally:
        svc.stop()


def test_corrupt_registry_starts_empty(tmp_path) -> None:
    path = tmp_path / "identities.cbor"
    path.write_bytes(b"\xff\xff not cbor")
    cfg = RelayRuntimeConfig(host="127.0.0.1", port=0, registry_path=str(path))
    svc = RelayService(cfg)
    svc.start()
    try:
        assert svc.known_identities() == {}
    finally:
        svc.stop()


def test_bind_failure_is_fatal(relay) -> None:
    other = RelayService(RelayRuntimeConfig(host="127.0.0.1", port=relay.bound_port))
    try:
        with pytest.raises(OSError):
            other.start()
        assert other.bound_port is None
    finally:
        other.stop()


def test_concurrent_clients_join_and_leave(relay) -> None:
    count = 12
    errors: list[BaseException] = []
    start = threading.Barrier(count)

    def run() -> None:
        client = None
        try:
            start.wait()
            client = LineClient(relay.bound_port)
            ident = f"User_127_0_0_1_{client.local_port}_{FIXED_STAMP}"
            client.recv_until(lambda line: line == f"User {ident} joined the chat")
            client.send("hi")
            client.recv_until(lambda line: line == f"{ident}: hi")
            client.send("/exit")
            assert client.at_eof()
        except BaseException as e:
            errors.append(e)
        finally:
            if client is not None:
                client.close()

    threads = [threading.Thread(target=run) for _ in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(30)

    assert errors == []
    assert wait_for(lambda: len(relay.session_table) == 0)
    assert wait_for(lambda: relay.known_identities() == {})
    assert relay.stats_manager.get("joins") == count
    assert wait_for(lambda: relay.stats_manager.get("leaves") == count)


def test_stop_closes_clients(relay_config) -> None:
    svc = RelayService(relay_config)
    svc.start()
    client = LineClient(svc.bound_port)
    try:
        client.recv()
        svc.stop()
        assert client.at_eof()
        assert len(svc.session_table) == 0
    finally:
        client.close()


class _FailOnceListener:
    """Listening socket whose first accept() fails."""

    def __init__(self, real: socket.socket) -> None:
        self._real = real
        self.failures = 1

    def accept(self):
        if self.failures:
            self.failures -= 1
            raise OSError(errno.ECONNABORTED, "Software caused connection abort")
        return self._real.accept()

    def __getattr__(self, name):
        return getattr(self._real, name)


def test_accept_error_is_logged_and_loop_continues(
    relay_config, monkeypatch, caplog
) -> None:
    svc = RelayService(relay_config)
    svc.clock = lambda: FIXED_NOW
    real_bind = svc.acceptor.bind

    def bind(host: str, port: int, backlog: int) -> None:
        real_bind(host, port, backlog)
        svc.acceptor._listener = _FailOnceListener(svc.acceptor._listener)

    monkeypatch.setattr(svc.acceptor, "bind", bind)
    svc.start()
    client = None
    try:
        client = LineClient(svc.bound_port)
        ident = f"User_127_0_0_1_{client.local_port}_{FIXED_STAMP}"
        assert client.recv() == f"User {ident} joined the chat"
        assert svc.stats_manager.get("accept_errors") == 1
        assert svc.stats_manager.get("accepted") == 1
        assert "Accept failed" in caplog.text
    finally:
        if client is not None:
            client.close()
        svc.stop()


def test_identity_collision_is_rejected(relay, connect) -> None:
    a = connect()
    existing = relay.session_table.get(a.identity)
    theirs, ours = socket.socketpair()
    ours.settimeout(5.0)
    try:
        relay.run_session(Session(theirs, a.identity, "127.0.0.1", 1))

        assert ours.recv(1024) == b""
        assert relay.session_table.get(a.identity) is existing
        assert relay.known_identities()[a.identity].port == a.local_port
        assert relay.stats_manager.get("rejected") == 1
        assert relay.stats_manager.get("joins") == 1

        # No join notice went out; the next line a sees is its own.
        a.send("still here")
        assert a.recv() == f"{a.identity}: still here"
    finally:
        ours.close()


def test_session_arriving_after_stop_is_refused(relay_config) -> None:
    svc = RelayService(relay_config)
    svc.start()
    svc.stop()
    theirs, ours = socket.socketpair()
    ours.settimeout(5.0)
    try:
        svc.run_session(Session(theirs, "User_late", "127.0.0.1", 1))

        assert ours.recv(1024) == b""
        assert len(svc.session_table) == 0
        assert svc.known_identities() == {}
        assert svc.stats_manager.get("rejected") == 0
    finally:
        ours.close()


def test_overlong_line_is_dropped() -> None:
    cfg = RelayRuntimeConfig(host="127.0.0.1", port=0, max_line_bytes=32)
    svc = RelayService(cfg)
    svc.clock = lambda: FIXED_NOW
    svc.start()
    client = LineClient(svc.bound_port)
    try:
        ident = f"User_127_0_0_1_{client.local_port}_{FIXED_STAMP}"
        assert client.recv() == f"User {ident} joined the chat"

        client.send("x" * 100)
        client.send("short")

        assert client.recv() == f"{ident}: short"
        assert ident in svc.session_table
    finally:
        client.close()
        svc.stop()
