"""Statistics tracking and reporting for the relay."""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .service import RelayService


class StatsManager:
    """
    Manages relay statistics collection and reporting.

    Tracks counters for:
    - Accepted, rejected and closed connections
    - Joins and leaves
    - Lines read and lines queued for delivery
    - Broadcast, group and private traffic
    - Malformed lines and skipped deliveries
    """

    def __init__(self, relay: RelayService) -> None:
        self.relay = relay
        self._lock = threading.Lock()

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "accepted": 0,
            "accept_errors": 0,
            "rejected": 0,
            "joins": 0,
            "leaves": 0,
            "sessions_failed": 0,
            "lines_in": 0,
            "lines_out": 0,
            "broadcasts": 0,
            "groups": 0,
            "privates": 0,
            "privates_dropped": 0,
            "malformed": 0,
            "send_failures": 0,
            "history_saves": 0,
        }

    def set_start_time(self) -> None:
        """Set the start time for uptime calculations."""
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        """Increment a counter by the given delta."""
        with self._lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return int(self._counters.get(key, 0))

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def format_stats(self) -> str:
        """Format current statistics as a human-readable string."""
        from . import __version__

        started_mono = self.started_monotonic
        uptime_s = (time.monotonic() - started_mono) if started_mono is not None else 0.0

        connected = len(self.relay.session_table)
        c = self.snapshot()
        cfg = self.relay.config

        lines: list[str] = []
        lines.append(f"linechatd {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        lines.append(f"listen={cfg.host}:{self.relay.bound_port or cfg.port}")
        lines.append(f"clients_connected={connected}")
        lines.append(
            "connections: accepted={} rejected={} accept_errors={} failed={}".format(
                c.get("accepted", 0),
                c.get("rejected", 0),
                c.get("accept_errors", 0),
                c.get("sessions_failed", 0),
            )
        )
        lines.append(
            "events: joins={} leaves={} history_saves={}".format(
                c.get("joins", 0),
                c.get("leaves", 0),
                c.get("history_saves", 0),
            )
        )
        lines.append(
            "io: lines_in={} lines_out={} send_failures={} malformed={}".format(
                c.get("lines_in", 0),
                c.get("lines_out", 0),
                c.get("send_failures", 0),
                c.get("malformed", 0),
            )
        )
        lines.append(
            "traffic: broadcasts={} groups={} privates={} privates_dropped={}".format(
                c.get("broadcasts", 0),
                c.get("groups", 0),
                c.get("privates", 0),
                c.get("privates_dropped", 0),
            )
        )

        return "\n".join(lines)
