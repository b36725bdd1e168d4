"""Shared fixtures: an in-process SOCKS5 proxy and connected stream pairs."""

import asyncio
import base64
import json
import ssl
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from socks5_gateway.core.config import ConfigLoader, GatewayConfig
from socks5_gateway.core.lib.gateway_stats import GatewayStats
from socks5_gateway.core.models import ProxyEndpoint

GREETING_OK = b"\x05\x02"
AUTH_OK = b"\x01\x00"
CONNECT_OK = b"\x05\x00\x00\x01\x7f\x00\x00\x01\x04\x38"  # bound 127.0.0.1:1080


@dataclass
class MockSession:
    """What one client connection sent to the mock proxy."""

    greeting: bytes = b""
    auth: bytes = b""
    connect: bytes = b""
    user: str = ""
    password: str = ""
    target_host: str = ""
    target_port: int = 0
    trailing: bytes = b""
    payload: bytes = b""
    done: asyncio.Event = field(default_factory=asyncio.Event)


App = Callable[[asyncio.StreamReader, asyncio.StreamWriter, MockSession], Awaitable[None]]


async def echo_app(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, session: MockSession) -> None:
    """Echo everything back, half-closing once the client half-closes."""
    while data := await reader.read(65536):
        session.payload += data
        writer.write(data)
        await writer.drain()
    if writer.can_write_eof():
        writer.write_eof()


async def http_app(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, session: MockSession) -> None:
    """Answer one HTTP request with a JSON description of it."""
    head = await reader.readuntil(b"\r\n\r\n")
    lines = head.decode("iso-8859-1").split("\r\n")
    headers = {}
    for line in lines[1:]:
        if line:
            name, _, value = line.partition(":")
            headers[name.strip().lower()] = value.strip()
    body = b""
    if "content-length" in headers:
        body = await reader.readexactly(int(headers["content-length"]))
    elif headers.get("transfer-encoding") == "chunked":
        while True:
            size = int((await reader.readuntil(b"\r\n")).strip(), 16)
            if size == 0:
                await reader.readuntil(b"\r\n")
                break
            body += (await reader.readexactly(size + 2))[:-2]
    session.payload = head + body

    payload = json.dumps(
        {"request_line": lines[0], "headers": headers, "body": body.decode()},
    ).encode()
    writer.write(
        b"HTTP/1.1 200 OK\r\nContent-Type: application/json\r\n"
        + f"Content-Length: {len(payload)}\r\n".encode()
        + b"Connection: close\r\n\r\n"
        + payload
    )
    await writer.drain()


async def silent_app(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, session: MockSession) -> None:
    """Swallow everything without ever answering."""
    while data := await reader.read(65536):
        session.payload += data


def forwarding_app(port: int) -> App:
    """Pipe the tunnel to a real server on ``127.0.0.1:port``, like a proxy would."""

    async def pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        while data := await reader.read(65536):
            writer.write(data)
            await writer.drain()
        if writer.can_write_eof():
            writer.write_eof()

    async def app(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, session: MockSession) -> None:
        origin_reader, origin_writer = await asyncio.open_connection("127.0.0.1", port)
        try:
            await asyncio.gather(pipe(reader, origin_writer), pipe(origin_reader, writer))
        finally:
            origin_writer.close()

    return app

class MockSocks5Server:
    """Scriptable SOCKS5 proxy requiring username/password auth."""

    def __init__(
        self,
        greeting_reply: bytes = GREETING_OK,
        auth_reply: bytes = AUTH_OK,
        connect_reply: bytes = CONNECT_OK,
        after_connect: bytes = b"",
        app: App = echo_app,
    ) -> None:
        self.greeting_reply = greeting_reply
        self.auth_reply = auth_reply
        self.connect_reply = connect_reply
        self.after_connect = after_connect
        self.app = app
        self.sessions: list[MockSession] = []
        self._server: asyncio.Server | None = None

    @property
    def port(self) -> int:
        assert self._server is not None
        return self._server.sockets[0].getsockname()[1]

    def endpoint(self, user: str = "proxyuser", password: str = "proxypass") -> ProxyEndpoint:
        return ProxyEndpoint(host="127.0.0.1", port=self.port, user=user, password=password)

    async def start(self) -> "MockSocks5Server":
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        return self

    async def close(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    async def __aenter__(self) -> "MockSocks5Server":
        return await self.start()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _reject(self, reader: asyncio.StreamReader, session: MockSession) -> None:
        # everything the client sends after a rejection, until it hangs up
        session.trailing = await reader.read()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        session = MockSession()
        self.sessions.append(session)
        try:
            session.greeting = await reader.readexactly(3)
            writer.write(self.greeting_reply)
            await writer.drain()
            if self.greeting_reply != GREETING_OK:
                await self._reject(reader, session)
                return

            version = await reader.readexactly(1)
            user = await reader.readexactly((await reader.readexactly(1))[0])
            password = await reader.readexactly((await reader.readexactly(1))[0])
            session.auth = version + bytes([len(user)]) + user + bytes([len(password)]) + password
            session.user, session.password = user.decode(), password.decode()
            writer.write(self.auth_reply)
            await writer.drain()
            if self.auth_reply != AUTH_OK:
                await self._reject(reader, session)
                return

            head = await reader.readexactly(5)
            host = await reader.readexactly(head[4])
            port = await reader.readexactly(2)
            session.connect = head + host + port
            session.target_host = host.decode()
            session.target_port = int.from_bytes(port, "big")
            writer.write(self.connect_reply + self.after_connect)
            await writer.drain()
            if self.connect_reply[1:2] != b"\x00":
                await self._reject(reader, session)
                return

            await self.app(reader, writer, session)
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()
            session.done.set()


async def open_stream_pair() -> tuple[
    tuple[asyncio.StreamReader, asyncio.StreamWriter],
    tuple[asyncio.StreamReader, asyncio.StreamWriter],
]:
    """Return both ends of a loopback TCP connection as stream pairs."""
    accepted: asyncio.Future = asyncio.get_running_loop().create_future()

    async def on_accept(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        accepted.set_result((reader, writer))

    server = await asyncio.start_server(on_accept, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    near = await asyncio.open_connection("127.0.0.1", port)
    far = await accepted
    server.close()
    return near, far


def basic(user: str, password: str) -> str:
    return "Basic " + base64.b64encode(f"{user}:{password}".encode()).decode()


def make_loader(proxies: list[ProxyEndpoint], users: list[dict] | None = None) -> ConfigLoader:
    environ = {
        "USERS_JSON": json.dumps(users if users is not None else [{"user": "a", "pass": "b"}]),
        "PROXIES_JSON": json.dumps(
            [{"host": p.host, "port": p.port, "user": p.user, "pass": p.password} for p in proxies]
        ),
    }
    return ConfigLoader(environ=environ)


@pytest.fixture
def stats() -> GatewayStats:
    return GatewayStats()


@pytest.fixture
def settings() -> GatewayConfig:
    return GatewayConfig(host="127.0.0.1", port=0, connect_timeout=2.0, handshake_timeout=2.0, idle_timeout=5.0)


@dataclass
class Certificates:
    """A throwaway CA and a server certificate it signed, as PEM files."""

    ca_file: Path
    cert_file: Path
    key_file: Path

    def server_context(self) -> ssl.SSLContext:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(self.cert_file, self.key_file)
        return context

    def client_context(self) -> ssl.SSLContext:
        return ssl.create_default_context(cafile=str(self.ca_file))


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


@pytest.fixture(scope="session")
def certificates(tmp_path_factory) -> Certificates:
    directory = tmp_path_factory.mktemp("tls")
    now = datetime.now(UTC)
    ca_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    ca_cert = (
        x509.CertificateBuilder()
        .subject_name(_name("Gateway Test CA"))
        .issuer_name(_name("Gateway Test CA"))
        .public_key(ca_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=False,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(ca_key.public_key()), critical=False)
        .add_extension(x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()), critical=False)
        .sign(ca_key, hashes.SHA256())
    )

    server_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    server_cert = (
        x509.CertificateBuilder()
        .subject_name(_name("secure.example"))
        .issuer_name(ca_cert.subject)
        .public_key(server_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=1))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName("secure.example")]), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(server_key.public_key()), critical=False)
        .add_extension(x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()), critical=False)
        .sign(ca_key, hashes.SHA256())
    )

    certs = Certificates(directory / "ca.pem", directory / "server.pem", directory / "server.key")
    certs.ca_file.write_bytes(ca_cert.public_bytes(serialization.Encoding.PEM))
    certs.cert_file.write_bytes(server_cert.public_bytes(serialization.Encoding.PEM))
    certs.key_file.write_bytes(
        server_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    return certs
