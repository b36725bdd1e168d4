"""Value types shared by the gateway components."""

from dataclasses import dataclass, field

MAX_FIELD_BYTES = 255  # single-byte length prefix in RFC 1928/1929
MIN_PORT = 1
MAX_PORT = 65535


@dataclass(frozen=True)
class ProxyEndpoint:
    """Upstream SOCKS5 proxy with username/password credentials.

    Attributes:
        host: Proxy host name or IP address
        port: Proxy TCP port
        user: Username sent during RFC 1929 authentication
        password: Password sent during RFC 1929 authentication
    """

    host: str
    port: int
    user: str
    password: str = field(repr=False)

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class TargetAddress:
    """Destination the proxy should connect to; the host is never resolved locally."""

    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"
