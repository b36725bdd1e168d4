"""HTTP/1.x proxy request parsing and rewriting.

This module handles the HTTP side of the gateway:
- Reading and parsing the request head sent by a proxy client
- Working out the destination for CONNECT and absolute-URI requests
- Rewriting a proxy request into origin form for the destination
- Forwarding ``Content-Length`` and ``chunked`` request bodies
- Serializing the gateway's own short responses

Only the head is parsed. Bodies are copied as they arrive and responses from
destinations are passed back untouched.
"""

import asyncio
import string
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Final
from urllib.parse import urlsplit

from socks5_gateway.core.exceptions import RequestParseError
from socks5_gateway.core.models import MAX_FIELD_BYTES, MAX_PORT, MIN_PORT, TargetAddress

HEAD_TERMINATOR: Final = b"\r\n\r\n"
CRLF: Final = b"\r\n"
MAX_HEAD_SIZE: Final = 65536
COPY_CHUNK: Final = 65536
HEX_DIGITS: Final = string.hexdigits.encode("ascii")

DEFAULT_TUNNEL_PORT: Final = 443
DEFAULT_HTTP_PORT: Final = 80
DEFAULT_PORTS: Final = {"http": DEFAULT_HTTP_PORT, "https": DEFAULT_TUNNEL_PORT}

# Never forwarded to the destination
HOP_BY_HOP_HEADERS: Final = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "upgrade",
    }
)

REASONS: Final = {
    200: "OK",
    400: "Bad Request",
    407: "Proxy Authentication Required",
    500: "Internal Server Error",
    502: "Bad Gateway",
}


@dataclass
class ProxyRequest:
    """Parsed head of an inbound proxy request.

    Attributes:
        method: Request method, upper case
        target: Request target exactly as sent (authority, absolute URI or path)
        version: HTTP version string, e.g. ``HTTP/1.1``
        headers: Header fields in arrival order
    """

    method: str
    target: str
    version: str
    headers: list[tuple[str, str]] = field(default_factory=list)

    @property
    def is_tunnel(self) -> bool:
        return self.method == "CONNECT"

    def header(self, name: str) -> str | None:
        """Return the first value of header ``name`` (case-insensitive)."""
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None


@dataclass(frozen=True)
class Destination:
    """Where a request is going and the path to request there."""

    scheme: str
    address: TargetAddress
    path: str


def parse_request_head(data: bytes) -> ProxyRequest:
    """Parse a request head (request line plus headers, CRLF separated).

    Raises:
        RequestParseError: If the request line or a header line is malformed
    """
    lines = data.decode("iso-8859-1").split("\r\n")
    parts = lines[0].split(" ")
    if len(parts) != 3 or not all(parts):
        raise RequestParseError(f"Malformed request line: {lines[0]!r}")
    method, target, version = parts
    if not version.startswith("HTTP/1."):
        raise RequestParseError(f"Unsupported HTTP version: {version!r}")

    headers = []
    for line in lines[1:]:
        if not line:
            continue
        name, sep, value = line.partition(":")
        if not sep or not name or name != name.strip():
            raise RequestParseError(f"Malformed header line: {line!r}")
        headers.append((name, value.strip()))

    return ProxyRequest(method=method.upper(), target=target, version=version, headers=headers)


async def read_request_head(reader: asyncio.StreamReader) -> ProxyRequest:
    """Read and parse one request head from ``reader``.

    Body bytes that arrived together with the head stay buffered in the reader.
    """
    try:
        data = await reader.readuntil(HEAD_TERMINATOR)
    except asyncio.IncompleteReadError as e:
        raise RequestParseError("Connection closed before the request head was complete") from e
    except asyncio.LimitOverrunError as e:
        raise RequestParseError("Request head too large") from e
    if len(data) > MAX_HEAD_SIZE:
        raise RequestParseError("Request head too large")
    return parse_request_head(data[: -len(HEAD_TERMINATOR)])


def _is_decimal(text: str) -> bool:
    # str.isdigit also accepts non-ASCII digits int() rejects
    return text.isascii() and text.isdigit()


def _split_host_port(authority: str, default_port: int) -> TargetAddress:
    """Split ``host[:port]``, accepting bracketed IPv6 literals."""
    if authority.startswith("["):
        host, sep, rest = authority[1:].partition("]")
        if not sep or (rest and not rest.startswith(":")):
            raise RequestParseError(f"Malformed authority: {authority!r}")
        port_text = rest[1:]
    else:
        host, _, port_text = authority.rpartition(":") if ":" in authority else (authority, "", "")

    if not host:
        raise RequestParseError(f"Missing host in {authority!r}")
    if len(host.encode("utf-8")) > MAX_FIELD_BYTES:
        raise RequestParseError(f"Host name longer than {MAX_FIELD_BYTES} bytes")

    if not port_text:
        return TargetAddress(host=host, port=default_port)
    if not _is_decimal(port_text) or not MIN_PORT <= int(port_text) <= MAX_PORT:
        raise RequestParseError(f"Invalid port in {authority!r}")
    return TargetAddress(host=host, port=int(port_text))


def resolve_destination(request: ProxyRequest) -> Destination:
    """Work out where the request should be sent.

    CONNECT targets are ``host[:port]`` and default to port 443. Other methods
    use an absolute ``http``/``https`` URI, or an origin-form path plus the
    ``Host`` header; they default to port 80 (443 for https).

    Raises:
        RequestParseError: If no usable destination can be derived
    """
    if request.is_tunnel:
        return Destination("tcp", _split_host_port(request.target, DEFAULT_TUNNEL_PORT), "")

    if request.target.startswith("/"):
        host = request.header("Host")
        if not host:
            raise RequestParseError("Origin-form request without a Host header")
        return Destination("http", _split_host_port(host, DEFAULT_HTTP_PORT), request.target)

    url = urlsplit(request.target)
    scheme = url.scheme.lower()
    if scheme not in DEFAULT_PORTS or not url.netloc:
        raise RequestParseError(f"Unsupported request target: {request.target!r}")
    authority = url.netloc.rpartition("@")[2]
    path = url.path or "/"
    if url.query:
        path = f"{path}?{url.query}"
    return Destination(scheme, _split_host_port(authority, DEFAULT_PORTS[scheme]), path)


def _host_header(destination: Destination) -> str:
    host = destination.address.host
    if ":" in host:
        host = f"[{host}]"
    if destination.address.port != DEFAULT_PORTS.get(destination.scheme):
        host = f"{host}:{destination.address.port}"
    return host


def build_origin_request(request: ProxyRequest, destination: Destination) -> bytes:
    """Rewrite a proxy request head into origin form for the destination.

    Proxy credentials and hop-by-hop headers (plus any named in ``Connection``)
    are dropped, ``Host`` is guaranteed and ``Connection: close`` is set, since
    every tunnel carries exactly one exchange.
    """
    dropped = set(HOP_BY_HOP_HEADERS)
    connection = request.header("Connection")
    if connection:
        dropped.update(token.strip().lower() for token in connection.split(","))

    lines = [f"{request.method} {destination.path} HTTP/1.1"]
    if request.header("Host") is None:
        lines.append(f"Host: {_host_header(destination)}")
    lines.extend(f"{name}: {value}" for name, value in request.headers if name.lower() not in dropped)
    lines.append("Connection: close")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("iso-8859-1")


def _is_chunked(request: ProxyRequest) -> bool:
    encoding = request.header("Transfer-Encoding")
    return bool(encoding) and encoding.lower().split(",")[-1].strip() == "chunked"


async def _copy_exactly(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, length: int) -> int:
    remaining = length
    while remaining:
        data = await reader.read(min(remaining, COPY_CHUNK))
        if not data:
            raise RequestParseError(f"Request body ended {remaining} bytes early")
        writer.write(data)
        await writer.drain()
        remaining -= len(data)
    return length


async def _copy_chunked(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> int:
    total = 0
    while True:
        size_line = await reader.readuntil(CRLF)
        size_text = size_line.split(b";", 1)[0].strip()
        # bare hex only: no sign, prefix or underscores
        if not size_text or size_text.strip(HEX_DIGITS):
            raise RequestParseError(f"Malformed chunk size line: {size_line!r}")
        size = int(size_text, 16)
        writer.write(size_line)
        if size == 0:
            # trailer section, ended by an empty line
            while True:
                line = await reader.readuntil(CRLF)
                writer.write(line)
                if line == CRLF:
                    break
            await writer.drain()
            return total
        chunk = await reader.readexactly(size + len(CRLF))
        if not chunk.endswith(CRLF):
            raise RequestParseError("Chunk not terminated by CRLF")
        writer.write(chunk)
        await writer.drain()
        total += size


async def forward_body(request: ProxyRequest, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> int:
    """Copy the request body from the client to the destination.

    Returns:
        int: Body bytes copied (chunk payloads only for chunked bodies)

    Raises:
        RequestParseError: If the body framing is invalid or the client stops early
    """
    try:
        if _is_chunked(request):
            return await _copy_chunked(reader, writer)
        length_text = request.header("Content-Length")
        if length_text is None:
            return 0
        if not _is_decimal(length_text.strip()):
            raise RequestParseError(f"Invalid Content-Length: {length_text!r}")
        return await _copy_exactly(reader, writer, int(length_text))
    except (asyncio.IncompleteReadError, asyncio.LimitOverrunError) as e:
        raise RequestParseError("Malformed or truncated request body") from e


def build_response(
    status: int,
    body: str = "",
    headers: Iterable[tuple[str, str]] = (),
    reason: str | None = None,
) -> bytes:
    """Serialize a complete response generated by the gateway itself."""
    payload = body.encode("utf-8")
    lines = [f"HTTP/1.1 {status} {reason or REASONS.get(status, 'Unknown')}"]
    lines.extend(f"{name}: {value}" for name, value in headers)
    lines.append("Content-Type: text/plain; charset=utf-8")
    lines.append(f"Content-Length: {len(payload)}")
    lines.append("Connection: close")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("iso-8859-1") + payload


def build_tunnel_established() -> bytes:
    """Status line and empty head sent before a CONNECT tunnel starts relaying."""
    return b"HTTP/1.1 200 Connection established\r\n\r\n"
