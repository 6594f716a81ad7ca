from __future__ import annotations

from dataclasses import asdict, dataclass, replace

from .constants import DEFAULT_HOST, DEFAULT_PORT


@dataclass(frozen=True)
class RelayRuntimeConfig:
    config_path: str | None = None
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    backlog: int = 64
    registry_path: str | None = None
    history_path: str | None = None
    outbound_queue_size: int = 256
    max_line_bytes: int = 65536
    writer_join_timeout_s: float = 2.0
    transcript_max_lines: int = 10000
    log_level: str = "INFO"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: RelayRuntimeConfig, data: dict) -> RelayRuntimeConfig:
    """Overlay values from a parsed TOML document onto ``base``.

    Keys may live at the top level or under ``[server]``; the ``[logging]``
    table maps onto the ``log_*`` fields. Unknown keys are ignored.
    """

    server = data.get("server") if isinstance(data, dict) else None
    if isinstance(server, dict):
        data = {**data, **server}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped: dict[str, object] = {}
        for key in ("level", "console", "file", "format", "datefmt"):
            if key in log_table:
                mapped[f"log_{key}"] = log_table.get(key)
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where the config came from; do not let the file override it.
    allowed.discard("config_path")

    updates = {k: v for k, v in data.items() if k in allowed}

    int_keys = ("port", "backlog", "outbound_queue_size", "max_line_bytes", "transcript_max_lines")
    for int_key in int_keys:
        if int_key in updates:
            updates[int_key] = int(updates[int_key])
    if "writer_join_timeout_s" in updates:
        updates["writer_join_timeout_s"] = float(updates["writer_join_timeout_s"])

    for opt_key in ("registry_path", "history_path", "log_file", "log_datefmt"):
        if opt_key in updates and updates[opt_key] == "":
            updates[opt_key] = None

    return replace(base, **updates) if updates else base
