from __future__ import annotations

import argparse
import logging
import os
import sys
import threading
import tomllib
from dataclasses import replace
from pathlib import Path
from typing import TextIO

from .config import RelayRuntimeConfig, apply_config_data, load_toml
from .constants import DEFAULT_HOST, DEFAULT_PORT
from .logging_config import configure_logging
from .paths import (
    default_config_path,
    default_history_path,
    default_registry_path,
    ensure_private_dir,
)
from .service import RelayService

log = logging.getLogger("linechatd.cli")


def _write_default_config(config_path: str, registry_path: str, history_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    content = f"""# linechatd configuration (TOML)
#
# This file was created on first run.

[server]

# Address and TCP port to listen on.
host = {DEFAULT_HOST!r}
port = {DEFAULT_PORT}
backlog = 64

# Identity registry (CBOR): identity -> host/port of every connected user.
# Rewritten on every join and leave.
registry_path = {registry_path!r}

# Chat history (UTF-8 text). Only written by the operator "save" command.
history_path = {history_path!r}

# Lines queued per client before further deliveries to it are skipped.
outbound_queue_size = 256

# Longest accepted client line in bytes; longer lines are dropped.
max_line_bytes = 65536

# Seconds to wait for a closing client's queued lines to be flushed.
writer_join_timeout_s = 2.0

# Lines of chat feed kept in memory for "save".
transcript_max_lines = 10000

[logging]

# Log level for linechatd itself.
level = "INFO"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)


class ConsoleFeed:
    """Presentation sink that echoes the chat feed to a text stream."""

    def __init__(self, stream: TextIO) -> None:
        self.stream = stream
        self._lock = threading.Lock()

    def on_message(self, text: str) -> None:
        with self._lock:
            print(text, file=self.stream, flush=True)


def run_console(svc: RelayService, stdin: TextIO, stdout: TextIO) -> None:
    """Feed operator commands from ``stdin`` until EOF or shutdown."""
    for line in stdin:
        if svc.is_shutting_down:
            break
        if not line.strip():
            continue
        reply = svc.command_handler.handle_operator_command(line)
        if reply:
            print(reply, file=stdout, flush=True)


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="linechatd", description="Run a line-oriented TCP chat relay")

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--host", default=None, help=f"Listen address (default: {DEFAULT_HOST})")
    p.add_argument("--port", type=int, default=None, help=f"Listen port (default: {DEFAULT_PORT})")
    p.add_argument("--registry", default=None, help="Identity registry file (CBOR)")
    p.add_argument("--history", default=None, help="Chat history file")
    p.add_argument(
        "--queue-size",
        type=int,
        default=None,
        help="Per-client outbound queue length",
    )
    p.add_argument(
        "--console",
        action="store_true",
        help="Echo the chat feed to stdout and read operator commands from stdin",
    )
    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


def build_config(args: argparse.Namespace) -> RelayRuntimeConfig:
    config_path = str(args.config)

    cfg = RelayRuntimeConfig(
        config_path=config_path,
        registry_path=str(default_registry_path()),
        history_path=str(default_history_path()),
    )

    if not os.path.exists(config_path):
        _write_default_config(config_path, str(cfg.registry_path), str(cfg.history_path))
        print(f"Created default linechatd config at {config_path}", file=sys.stderr)

    cfg = apply_config_data(cfg, load_toml(config_path))

    if args.host is not None:
        cfg = replace(cfg, host=str(args.host))
    if args.port is not None:
        cfg = replace(cfg, port=int(args.port))
    if args.registry is not None:
        cfg = replace(cfg, registry_path=str(args.registry) or None)
    if args.history is not None:
        cfg = replace(cfg, history_path=str(args.history) or None)
    if args.queue_size is not None:
        cfg = replace(cfg, outbound_queue_size=int(args.queue_size))
    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    return cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    try:
        cfg = build_config(args)
    except (OSError, tomllib.TOMLDecodeError, ValueError) as e:
        print(f"linechatd: cannot load config {args.config}: {e}", file=sys.stderr)
        raise SystemExit(2) from e

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = RelayService(cfg)
    if args.console:
        svc.add_sink(ConsoleFeed(sys.stdout))

    try:
        svc.start()
    except OSError as e:
        log.error("Cannot listen on %s:%s: %s", cfg.host, cfg.port, e)
        raise SystemExit(1) from e

    if args.console:
        threading.Thread(
            target=run_console,
            args=(svc, sys.stdin, sys.stdout),
            name="linechatd-console",
            daemon=True,
        ).start()

    svc.run_forever()


if __name__ == "__main__":
    main()
