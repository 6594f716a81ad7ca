from __future__ import annotations

import os
from pathlib import Path


def default_linechatd_dir() -> Path:
    override = os.environ.get("LINECHATD_HOME")
    if override:
        return Path(override)
    return Path.home() / ".linechatd"


def default_config_path() -> Path:
    return default_linechatd_dir() / "linechatd.toml"


def default_registry_path() -> Path:
    return default_linechatd_dir() / "identities.cbor"


def default_history_path() -> Path:
    return default_linechatd_dir() / "chat_history.txt"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # Best-effort tightening; may fail on some filesystems.
        os.chmod(path, 0o700)
    except OSError:
        pass
