"""Custom exceptions for the gateway.

This module defines the exceptions used throughout the gateway implementation.
Every failure a request can run into falls in one of these families:
- Client authentication failures
- Configuration problems (users or proxies missing/unparseable)
- SOCKS5 handshake failures against the chosen upstream proxy
- Mid-stream relay failures
- Malformed inbound requests
- Origin-side failures past the handshake (TLS upgrade)

The request router maps each family to exactly one HTTP status, so the rest of
the code only raises and never formats responses itself.

Example:
    try:
        stream = await client.connect(proxy, target)
    except HandshakeError as e:
        logger.warning(f"Upstream {proxy} failed: {e}")
"""

from enum import Enum

# Reply field texts from RFC 1928, section 6
SOCKS5_REPLY_MESSAGES = {
    0x01: "general SOCKS server failure",
    0x02: "connection not allowed by ruleset",
    0x03: "network unreachable",
    0x04: "host unreachable",
    0x05: "connection refused",
    0x06: "TTL expired",
    0x07: "command not supported",
    0x08: "address type not supported",
}


class GatewayError(Exception):
    """Base exception for gateway errors."""


class AuthenticationFailure(GatewayError):
    """Raised when the client sent missing or invalid proxy credentials."""

    def __init__(self, message: str = "Invalid Credentials", *, challenge_only: bool = False) -> None:
        super().__init__(message)
        # True when no usable Basic credentials were presented at all
        self.challenge_only = challenge_only


class ConfigurationError(GatewayError):
    """Raised when users or proxies cannot be loaded."""


class RequestParseError(GatewayError):
    """Raised when the inbound request head is malformed."""


class UpstreamError(GatewayError):
    """Raised when the destination fails after the tunnel is established."""


class RelayError(GatewayError):
    """Raised by a relay pump when one direction fails mid-stream."""

    def __init__(self, direction: str, cause: BaseException) -> None:
        super().__init__(f"{direction} relay failed: {cause}")
        self.direction = direction
        self.cause = cause


class HandshakeFailure(Enum):
    """Kinds of SOCKS5 handshake failure."""

    CONNECTION_OPEN_FAILED = "ConnectionOpenFailed"
    NEGOTIATION_REJECTED = "NegotiationRejected"
    AUTH_REJECTED = "AuthRejected"
    CONNECT_FAILED = "ConnectFailed"
    MALFORMED_REPLY = "MalformedReply"


class HandshakeError(GatewayError):
    """Raised when the SOCKS5 handshake with an upstream proxy fails."""

    reason: HandshakeFailure = HandshakeFailure.MALFORMED_REPLY


class ConnectionOpenFailed(HandshakeError):
    """Raised when the TCP connection to the proxy cannot be opened."""

    reason = HandshakeFailure.CONNECTION_OPEN_FAILED


class NegotiationRejected(HandshakeError):
    """Raised when the proxy does not select username/password auth."""

    reason = HandshakeFailure.NEGOTIATION_REJECTED


class AuthRejected(HandshakeError):
    """Raised when the proxy rejects our username/password."""

    reason = HandshakeFailure.AUTH_REJECTED


class ConnectFailed(HandshakeError):
    """Raised when the proxy reports a failed CONNECT.

    Attributes:
        code: The non-zero reply code sent by the proxy
    """

    reason = HandshakeFailure.CONNECT_FAILED

    def __init__(self, code: int) -> None:
        text = SOCKS5_REPLY_MESSAGES.get(code, "unassigned reply code")
        super().__init__(f"SOCKS5 connection failed. Error code: {code} ({text})")
        self.code = code


class MalformedReply(HandshakeError):
    """Raised on a short, truncated or unparseable proxy reply."""

    reason = HandshakeFailure.MALFORMED_REPLY
