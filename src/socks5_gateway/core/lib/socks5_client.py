"""SOCKS5 client handshake for upstream proxies.

This module implements the client side of RFC 1928 with RFC 1929
username/password authentication, providing:
- Method negotiation (username/password only)
- Sub-negotiation of the proxy credentials
- CONNECT requests with domain-name addressing
- Consumption of the variable-length bound address in the reply
- Timeouts on opening the connection and on every awaited reply

A handshake runs strictly in order: greeting, authentication, connect. Each
step's reply is fully validated before the next packet is written, and the
connection is closed before any failure is raised. On success the caller owns
an ``EstablishedStream`` whose reader still holds every byte the proxy sent
after its reply.

Example:
    client = Socks5Client(connect_timeout=10, handshake_timeout=10)
    stream = await client.connect(proxy, TargetAddress("example.com", 443))
    try:
        stream.writer.write(b"...")
    finally:
        await stream.close()
"""

import asyncio
import contextlib
import ipaddress
import struct
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Final

from loguru import logger

from socks5_gateway.core.exceptions import (
    AuthRejected,
    ConfigurationError,
    ConnectFailed,
    ConnectionOpenFailed,
    HandshakeError,
    MalformedReply,
    NegotiationRejected,
)
from socks5_gateway.core.models import MAX_FIELD_BYTES, ProxyEndpoint, TargetAddress

# SOCKS protocol constants
SOCKS_VERSION: Final = 0x05
AUTH_VERSION: Final = 0x01
METHOD_USER_PASS: Final = 0x02
CONNECT_CMD: Final = 0x01
RESERVED: Final = 0x00
ADDR_TYPE_IPV4: Final = 0x01
ADDR_TYPE_DOMAIN: Final = 0x03
ADDR_TYPE_IPV6: Final = 0x04

# Response codes
AUTH_SUCCESS: Final = 0x00
RESP_SUCCESS: Final = 0x00

OpenConnection = Callable[..., Awaitable[tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


def _length_prefixed(value: bytes, what: str, error: type[Exception]) -> bytes:
    if len(value) > MAX_FIELD_BYTES:
        raise error(f"{what} is {len(value)} bytes, SOCKS5 allows at most {MAX_FIELD_BYTES}")
    return struct.pack("!B", len(value)) + value


def build_greeting() -> bytes:
    """Build the method selection message offering username/password only."""
    return struct.pack("!BBB", SOCKS_VERSION, 1, METHOD_USER_PASS)


def build_auth_request(user: str, password: str) -> bytes:
    """Build the RFC 1929 username/password request.

    Raises:
        ConfigurationError: If either field encodes to more than 255 bytes
    """
    return (
        struct.pack("!B", AUTH_VERSION)
        + _length_prefixed(user.encode("utf-8"), "Proxy username", ConfigurationError)
        + _length_prefixed(password.encode("utf-8"), "Proxy password", ConfigurationError)
    )


def build_connect_request(host: str, port: int) -> bytes:
    """Build a CONNECT request addressed by domain name.

    Raises:
        HandshakeError: If the host is empty or longer than 255 bytes
    """
    try:
        host_bytes = host.encode("ascii") if host.isascii() else host.encode("idna")
    except UnicodeError as e:
        raise HandshakeError(f"Target host {host!r} cannot be encoded: {e}") from e
    if not host_bytes:
        raise HandshakeError("Target host is empty")
    return (
        struct.pack("!BBBB", SOCKS_VERSION, CONNECT_CMD, RESERVED, ADDR_TYPE_DOMAIN)
        + _length_prefixed(host_bytes, "Target host", HandshakeError)
        + struct.pack("!H", port)
    )


class HandshakeState(Enum):
    """Progress of one handshake."""

    INIT = "init"
    GREETED = "greeted"
    AUTHENTICATED = "authenticated"
    ESTABLISHED = "established"
    FAILED = "failed"


@dataclass
class EstablishedStream:
    """Connection to a proxy that has completed CONNECT to ``target``.

    Attributes:
        reader: Stream carrying bytes from the target
        writer: Stream carrying bytes to the target
        proxy: Proxy the tunnel runs through
        target: Destination of the tunnel
        bound_address: Address the proxy reported for its outbound socket
    """

    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    proxy: ProxyEndpoint
    target: TargetAddress
    bound_address: tuple[str, int] | None = None

    async def close(self) -> None:
        """Close the tunnel, ignoring errors from an already dead connection."""
        await close_writer(self.writer)


async def close_writer(writer: asyncio.StreamWriter) -> None:
    """Close a stream writer and wait for the transport to go away."""
    if writer.is_closing():
        return
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()


class HandshakeSession:
    """One handshake over one freshly opened proxy connection."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        proxy: ProxyEndpoint,
        reply_timeout: float | None = None,
    ) -> None:
        self.reader = reader
        self.writer = writer
        self.proxy = proxy
        self.reply_timeout = reply_timeout
        self.state = HandshakeState.INIT
        self.bound_address: tuple[str, int] | None = None

    async def _send(self, packet: bytes) -> None:
        try:
            self.writer.write(packet)
            await self.writer.drain()
        except OSError as e:
            raise MalformedReply(f"Connection to proxy {self.proxy.address} lost while sending: {e}") from e

    async def _receive(self, size: int, step: str) -> bytes:
        try:
            return await asyncio.wait_for(self.reader.readexactly(size), self.reply_timeout)
        except asyncio.IncompleteReadError as e:
            raise MalformedReply(
                f"Truncated {step} reply from proxy {self.proxy.address}: got {len(e.partial)} of {size} bytes"
            ) from e
        except TimeoutError as e:
            raise MalformedReply(f"Timed out waiting for {step} reply from proxy {self.proxy.address}") from e
        except OSError as e:
            raise MalformedReply(f"Connection to proxy {self.proxy.address} lost during {step}: {e}") from e

    def _expect(self, state: HandshakeState) -> None:
        if self.state is not state:
            raise HandshakeError(f"Handshake step out of order: in state {self.state.value}, need {state.value}")

    async def greet(self) -> None:
        """Offer username/password auth and require the proxy to select it."""
        self._expect(HandshakeState.INIT)
        await self._send(build_greeting())
        version, method = await self._receive(2, "greeting")
        if version != SOCKS_VERSION or method != METHOD_USER_PASS:
            raise NegotiationRejected("SOCKS5 authentication method negotiation failed.")
        self.state = HandshakeState.GREETED

    async def authenticate(self, packet: bytes) -> None:
        """Send the prebuilt credentials packet and require status 0."""
        self._expect(HandshakeState.GREETED)
        await self._send(packet)
        version, status = await self._receive(2, "authentication")
        if version != AUTH_VERSION or status != AUTH_SUCCESS:
            raise AuthRejected("SOCKS5 proxy authentication failed.")
        self.state = HandshakeState.AUTHENTICATED

    async def request_connect(self, packet: bytes) -> None:
        """Send the prebuilt CONNECT packet and consume the whole reply."""
        self._expect(HandshakeState.AUTHENTICATED)
        await self._send(packet)
        # status first so a bare two-byte refusal is still reported
        version, reply = await self._receive(2, "connect")
        if version != SOCKS_VERSION:
            raise MalformedReply(f"Unexpected SOCKS version {version} in connect reply")
        if reply != RESP_SUCCESS:
            raise ConnectFailed(reply)
        _, addr_type = await self._receive(2, "connect")
        self.bound_address = await self._read_bound_address(addr_type)
        self.state = HandshakeState.ESTABLISHED

    async def _read_bound_address(self, addr_type: int) -> tuple[str, int]:
        if addr_type == ADDR_TYPE_IPV4:
            raw = await self._receive(4 + 2, "bound address")
            host = str(ipaddress.IPv4Address(raw[:4]))
        elif addr_type == ADDR_TYPE_IPV6:
            raw = await self._receive(16 + 2, "bound address")
            host = str(ipaddress.IPv6Address(raw[:16]))
        elif addr_type == ADDR_TYPE_DOMAIN:
            (length,) = await self._receive(1, "bound address")
            raw = await self._receive(length + 2, "bound address")
            host = raw[:length].decode("utf-8", errors="replace")
        else:
            raise MalformedReply(f"Unknown address type {addr_type} in connect reply")
        (port,) = struct.unpack("!H", raw[-2:])
        return host, port


class Socks5Client:
    """Opens tunnels through SOCKS5 proxies that require username/password auth."""

    def __init__(
        self,
        connect_timeout: float | None = None,
        handshake_timeout: float | None = None,
        open_connection: OpenConnection = asyncio.open_connection,
    ) -> None:
        """Initialize the client.

        Args:
            connect_timeout: Seconds allowed for opening the TCP connection
            handshake_timeout: Seconds allowed for each handshake reply
            open_connection: Connection factory, ``asyncio.open_connection`` by default
        """
        self.connect_timeout = connect_timeout
        self.handshake_timeout = handshake_timeout
        self._open_connection = open_connection

    async def _open(self, proxy: ProxyEndpoint) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        try:
            return await asyncio.wait_for(self._open_connection(proxy.host, proxy.port), self.connect_timeout)
        except TimeoutError as e:
            raise ConnectionOpenFailed(f"Timed out connecting to proxy {proxy.address}") from e
        except OSError as e:
            raise ConnectionOpenFailed(f"Could not connect to proxy {proxy.address}: {e}") from e

    async def connect(self, proxy: ProxyEndpoint, target: TargetAddress) -> EstablishedStream:
        """Open a tunnel to ``target`` through ``proxy``.

        Args:
            proxy: Upstream proxy to negotiate with
            target: Destination host (sent as a domain name) and port

        Returns:
            EstablishedStream: Connection ready for relaying

        Raises:
            ConfigurationError: If the proxy credentials cannot be encoded
            HandshakeError: If any step fails; the connection is already closed
        """
        # encode everything up front so nothing is sent for unencodable input
        auth_packet = build_auth_request(proxy.user, proxy.password)
        connect_packet = build_connect_request(target.host, target.port)

        reader, writer = await self._open(proxy)
        session = HandshakeSession(reader, writer, proxy, self.handshake_timeout)
        try:
            await session.greet()
            await session.authenticate(auth_packet)
            await session.request_connect(connect_packet)
        except BaseException as e:
            session.state = HandshakeState.FAILED
            await close_writer(writer)
            if isinstance(e, HandshakeError):
                logger.debug(f"Handshake with {proxy.address} for {target} failed: {e}")
            raise

        logger.debug(f"Tunnel to {target} established via {proxy.address} (bound {session.bound_address})")
        return EstablishedStream(
            reader=reader,
            writer=writer,
            proxy=proxy,
            target=target,
            bound_address=session.bound_address,
        )
