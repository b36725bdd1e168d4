"""Gateway listener built on asyncio streams.

This module runs the gateway's accept loop:
- One asyncio task per accepted client connection
- One request per connection, handled by ``RequestRouter``
- Optional live dashboard thread
- Clipboard integration for easy sharing of the gateway address
- Clean shutdown on Ctrl+C

Example:
    settings = ConfigLoader().load_settings(port=8080)
    run_gateway(settings, ConfigLoader())
"""

import asyncio
import contextlib
import socket
import time

import pyperclip
from loguru import logger
from rich.console import Console

from socks5_gateway.core.config import ConfigLoader, GatewayConfig
from socks5_gateway.core.lib.gateway_stats import GatewayStats, gateway_stats
from socks5_gateway.core.lib.gateway_ui import create_gateway_ui
from socks5_gateway.core.lib.request_router import RequestRouter

console = Console()

# Constants
CLIPBOARD_DELAY = 0.5  # Seconds to wait after clipboard copy
REQUEST_QUEUE_SIZE = 100


class GatewayServer:
    """Accepts client connections and hands each to the request router."""

    def __init__(
        self,
        settings: GatewayConfig,
        loader: ConfigLoader,
        router: RequestRouter | None = None,
        stats: GatewayStats = gateway_stats,
    ) -> None:
        self.settings = settings
        self.router = router or RequestRouter(loader, settings, stats=stats)
        self._server: asyncio.Server | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def sockets(self) -> tuple[socket.socket, ...]:
        return tuple(self._server.sockets) if self._server else ()

    @property
    def bound_port(self) -> int:
        """Port actually bound, useful when listening on port 0."""
        return self.sockets[0].getsockname()[1]

    async def _on_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)
        try:
            await self.router.handle(reader, writer)
        except Exception:
            logger.exception("Unhandled error while serving client")
        finally:
            if task is not None:
                self._tasks.discard(task)

    async def start(self) -> None:
        """Bind the listening socket."""
        self._server = await asyncio.start_server(
            self._on_client,
            host=self.settings.host,
            port=self.settings.port,
            reuse_address=True,
            backlog=REQUEST_QUEUE_SIZE,
        )
        logger.info(f"Gateway listening on {self.settings.host}:{self.bound_port}")

    async def serve_forever(self) -> None:
        """Start (if needed) and serve until cancelled."""
        if self._server is None:
            await self.start()
        assert self._server is not None
        try:
            await self._server.serve_forever()
        finally:
            await self.close()

    async def close(self) -> None:
        """Stop accepting and cancel in-flight requests."""
        if self._server is None:
            return
        self._server.close()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        with contextlib.suppress(Exception):
            await self._server.wait_closed()
        self._server = None
        logger.info("Gateway closed")


def copy_address(host: str, port: int) -> None:
    """Copy ``host:port`` to the clipboard, warning instead of failing."""
    try:
        pyperclip.copy(f"{host}:{port}")
        console.print("[bold green]Gateway address copied to clipboard")
        time.sleep(CLIPBOARD_DELAY)
    except pyperclip.PyperclipException as e:
        console.print(f"[yellow]Could not copy to clipboard: {e}")


def run_gateway(
    settings: GatewayConfig,
    loader: ConfigLoader,
    dashboard: bool = False,
    copy_to_clipboard: bool = False,
) -> None:
    """Run the gateway until interrupted.

    Args:
        settings: Listener and timing settings
        loader: Source of users and proxies
        dashboard: Show the live statistics panel
        copy_to_clipboard: Copy the gateway address to the clipboard first
    """
    if copy_to_clipboard:
        copy_address(settings.host, settings.port)

    if dashboard:
        ui_thread = create_gateway_ui(settings.host, settings.port)
        ui_thread.start()

    server = GatewayServer(settings, loader)
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        logger.info("Received shutdown signal")
        console.print("\n[yellow]Shutting down gateway...")
