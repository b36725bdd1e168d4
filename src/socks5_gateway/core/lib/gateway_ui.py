"""Live statistics panel for the gateway."""

import threading
import time

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.spinner import Spinner
from rich.table import Table
from rich.text import Text

from socks5_gateway.core.utils.utils import format_bytes

from .gateway_stats import GatewayStats, gateway_stats

console = Console()

BANDWIDTH_THRESHOLD = 100  # bytes


class GatewayUI:
    """UI handler for the gateway."""

    def __init__(self, host: str, port: int, stats: GatewayStats = gateway_stats) -> None:
        """Initialize the gateway UI handler.

        Args:
            host: Address the gateway listens on
            port: Port the gateway listens on
            stats: Statistics to display
        """
        self.host = host
        self.port = port
        self.stats = stats
        self.running = True
        self._last_bandwidth = 0.0
        self._start_time = time.monotonic()
        self._refresh_rate = 0.5
        self._spinner = Spinner("dots", text="")

    def _generate_table(self) -> Table:
        """Generate statistics table."""
        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column("Property", style="cyan", no_wrap=True)
        table.add_column("Value", style="green", no_wrap=True)

        bandwidth = self.stats.get_bandwidth()
        # Only update bandwidth if it changed significantly (avoid jitter)
        if abs(bandwidth - self._last_bandwidth) > BANDWIDTH_THRESHOLD:
            self._last_bandwidth = bandwidth

        snapshot = self.stats.snapshot()
        spinner_text = self._spinner.render(time.monotonic() - self._start_time)

        table.add_row("Bandwidth", f"{spinner_text} {format_bytes(self._last_bandwidth)}/s")
        table.add_row("Requests", str(snapshot["requests_total"]))
        table.add_row("Active Tunnels", str(snapshot["active_tunnels"]))
        table.add_row("Data Up", format_bytes(snapshot["bytes_up"]))
        table.add_row("Data Down", format_bytes(snapshot["bytes_down"]))
        for kind, count in sorted(snapshot["failures"].items()):
            table.add_row(f"Failed: {kind}", f"[red]{count}")
        return table

    def _generate_display(self) -> Panel:
        """Generate the main display panel."""
        title = Text(f"SOCKS5 Gateway: {self.host}:{self.port}", style="bold cyan")
        return Panel(
            self._generate_table(),
            title=title,
            subtitle="Press Ctrl+C to exit",
            border_style="blue",
            padding=(1, 2),
        )

    def run(self) -> None:
        """Run the UI with efficient updates."""
        try:
            with Live(
                self._generate_display(),
                console=console,
                refresh_per_second=4,
                transient=False,
                auto_refresh=False,
            ) as live:
                while self.running:
                    live.update(self._generate_display(), refresh=True)
                    time.sleep(self._refresh_rate)
        except KeyboardInterrupt:
            self.running = False


def create_gateway_ui(host: str, port: int) -> threading.Thread:
    """Create and return UI thread."""
    ui = GatewayUI(host, port)
    return threading.Thread(target=ui.run, daemon=True)
