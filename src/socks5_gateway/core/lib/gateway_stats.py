"""Statistics tracking for the gateway.

This module provides real-time statistics for the gateway, including:
- Request and active tunnel counting
- Bytes relayed in each direction
- Failure counts per error kind
- Historical bandwidth data

The event loop updates the counters while the optional dashboard reads them
from its own thread, so all access goes through one lock.

Example:
    from socks5_gateway.core.lib.gateway_stats import gateway_stats

    gateway_stats.tunnel_opened()
    gateway_stats.update_bytes(up=1024, down=2048)
"""

import threading
import time
from collections import Counter, deque
from datetime import UTC, datetime

BANDWIDTH_WINDOW = 5  # seconds averaged by get_bandwidth()
HISTORY_SECONDS = 60


class GatewayStats:
    """Thread-safe statistics tracker for the gateway."""

    def __init__(self) -> None:
        """Initialize with zeroed counters and an empty bandwidth history."""
        self.requests_total = 0
        self.active_tunnels = 0
        self.bytes_up = 0
        self.bytes_down = 0
        self.failures: Counter[str] = Counter()
        # one [second, bytes] bucket per second with traffic
        self.bandwidth_history: deque[list[int]] = deque(maxlen=HISTORY_SECONDS)
        self.start_time = datetime.now(tz=UTC)
        self._lock = threading.Lock()

    def request_received(self) -> None:
        with self._lock:
            self.requests_total += 1

    def tunnel_opened(self) -> None:
        with self._lock:
            self.active_tunnels += 1

    def tunnel_closed(self) -> None:
        with self._lock:
            self.active_tunnels -= 1

    def record_failure(self, kind: str) -> None:
        """Count one failed request under ``kind`` (an exception or reason name)."""
        with self._lock:
            self.failures[kind] += 1

    def update_bytes(self, up: int = 0, down: int = 0) -> None:
        """Update byte transfer statistics.

        Args:
            up: Bytes moved from client to tunnel
            down: Bytes moved from tunnel to client
        """
        with self._lock:
            self.bytes_up += up
            self.bytes_down += down
            second = int(time.time())
            if self.bandwidth_history and self.bandwidth_history[-1][0] == second:
                self.bandwidth_history[-1][1] += up + down
            else:
                self.bandwidth_history.append([second, up + down])

    def get_bandwidth(self) -> float:
        """Calculate current bandwidth usage in bytes per second.

        Returns:
            float: Average bandwidth over the last BANDWIDTH_WINDOW seconds
        """
        with self._lock:
            cutoff = int(time.time()) - BANDWIDTH_WINDOW
            recent = sum(bytes_ for second, bytes_ in self.bandwidth_history if second > cutoff)
            return recent / BANDWIDTH_WINDOW

    def snapshot(self) -> dict[str, object]:
        """Return a consistent copy of the counters."""
        with self._lock:
            return {
                "requests_total": self.requests_total,
                "active_tunnels": self.active_tunnels,
                "bytes_up": self.bytes_up,
                "bytes_down": self.bytes_down,
                "failures": dict(self.failures),
                "uptime": (datetime.now(tz=UTC) - self.start_time).total_seconds(),
            }


# Global statistics object
gateway_stats = GatewayStats()
