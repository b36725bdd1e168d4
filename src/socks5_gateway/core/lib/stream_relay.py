"""Bidirectional byte relay between a client and an established tunnel.

Two independent pumps run as separate tasks:
- client to tunnel
- tunnel to client

A pump ends on EOF, on an I/O error or when the whole relay has been idle for
``idle_timeout`` seconds, and then half-closes its destination. A failing pump
records a ``RelayError`` but never stops the other one. ``run()`` returns once
both pumps have ended; cancelling it tears down both pumps and both
connections.
"""

import asyncio
import contextlib
from dataclasses import dataclass

from loguru import logger

from socks5_gateway.core.exceptions import RelayError
from socks5_gateway.core.lib.gateway_stats import GatewayStats, gateway_stats
from socks5_gateway.core.lib.socks5_client import EstablishedStream, close_writer

DEFAULT_BUFFER_SIZE = 65536
DEFAULT_IDLE_TIMEOUT = 60.0

UPSTREAM = "client->tunnel"
DOWNSTREAM = "tunnel->client"


@dataclass
class RelayResult:
    """Outcome of one relay.

    Attributes:
        bytes_up: Bytes copied from the client into the tunnel
        bytes_down: Bytes copied from the tunnel to the client
        up_error: Failure of the client->tunnel direction, if any
        down_error: Failure of the tunnel->client direction, if any
    """

    bytes_up: int = 0
    bytes_down: int = 0
    up_error: RelayError | None = None
    down_error: RelayError | None = None

    @property
    def clean(self) -> bool:
        return self.up_error is None and self.down_error is None


class StreamRelay:
    """Pipes bytes between a client connection and a tunnel until both sides finish."""

    def __init__(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        tunnel: EstablishedStream,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        idle_timeout: float | None = DEFAULT_IDLE_TIMEOUT,
        stats: GatewayStats = gateway_stats,
    ) -> None:
        self.client_reader = client_reader
        self.client_writer = client_writer
        self.tunnel = tunnel
        self.buffer_size = buffer_size
        self.idle_timeout = idle_timeout
        self.stats = stats
        self.bytes_up = 0
        self.bytes_down = 0
        self._last_activity = 0.0

    def _touch(self) -> None:
        self._last_activity = asyncio.get_running_loop().time()

    def _idle_for(self) -> float:
        return asyncio.get_running_loop().time() - self._last_activity

    async def _read(self, reader: asyncio.StreamReader) -> bytes | None:
        """Read one chunk; None when the relay as a whole has gone idle."""
        while True:
            if self.idle_timeout is None:
                return await reader.read(self.buffer_size)
            remaining = self.idle_timeout - self._idle_for()
            if remaining <= 0:
                return None
            try:
                return await asyncio.wait_for(reader.read(self.buffer_size), remaining)
            except TimeoutError:
                # the other direction may have been busy meanwhile
                continue

    async def pump(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        direction: str = DOWNSTREAM,
    ) -> tuple[int, RelayError | None]:
        """Copy ``reader`` into ``writer`` until EOF, error or idle timeout.

        Args:
            reader: Source stream
            writer: Destination stream, half-closed when the pump ends
            direction: UPSTREAM or DOWNSTREAM, used for stats and logging

        Returns:
            tuple[int, RelayError | None]: Bytes copied and the failure, if any
        """
        if not self._last_activity:
            self._touch()
        total = 0
        error: RelayError | None = None
        try:
            while True:
                data = await self._read(reader)
                if data is None:
                    logger.debug(f"{direction} idle for {self.idle_timeout}s, closing")
                    break
                if not data:
                    break
                writer.write(data)
                await writer.drain()
                total += len(data)
                self._touch()
                if direction == UPSTREAM:
                    self.bytes_up += len(data)
                    self.stats.update_bytes(up=len(data))
                else:
                    self.bytes_down += len(data)
                    self.stats.update_bytes(down=len(data))
        except OSError as e:
            error = RelayError(direction, e)
            logger.debug(f"{error} after {total} bytes")

        # a cancelled pump leaves the destination open for its owner to finish
        if not writer.is_closing() and writer.can_write_eof():
            with contextlib.suppress(OSError):
                writer.write_eof()
        return total, error

    async def run(self) -> RelayResult:
        """Relay in both directions and return once both pumps have ended."""
        self._touch()
        up = asyncio.create_task(self.pump(self.client_reader, self.tunnel.writer, UPSTREAM))
        down = asyncio.create_task(self.pump(self.tunnel.reader, self.client_writer, DOWNSTREAM))
        try:
            (bytes_up, up_error), (bytes_down, down_error) = await asyncio.gather(up, down)
        except asyncio.CancelledError:
            up.cancel()
            down.cancel()
            await asyncio.gather(up, down, return_exceptions=True)
            await self.tunnel.close()
            await close_writer(self.client_writer)
            raise

        return RelayResult(
            bytes_up=bytes_up,
            bytes_down=bytes_down,
            up_error=up_error,
            down_error=down_error,
        )
