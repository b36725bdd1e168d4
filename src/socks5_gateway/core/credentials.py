"""Client credential checking.

The gateway accepts a fixed list of ``{user, pass}`` pairs and authenticates
every request from its ``Proxy-Authorization: Basic ...`` header. Lookups use
constant-time comparison so response timing does not leak which part of a
pair was wrong.
"""

import base64
import binascii
import hmac
from collections.abc import Iterable

from socks5_gateway.core.exceptions import AuthenticationFailure

BASIC_PREFIX = "Basic "


def decode_basic_credentials(header_value: str | None) -> tuple[str, str]:
    """Decode a Basic authorization header value into ``(user, password)``.

    Args:
        header_value: Raw header value, e.g. ``"Basic YTpi"``

    Returns:
        tuple[str, str]: The user and password; the password may contain ``:``

    Raises:
        AuthenticationFailure: If the header is missing, not Basic, or undecodable
    """
    if not header_value or not header_value.startswith(BASIC_PREFIX):
        raise AuthenticationFailure("Proxy Authentication Required", challenge_only=True)

    try:
        decoded = base64.b64decode(header_value[len(BASIC_PREFIX) :].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise AuthenticationFailure("Invalid Credentials") from e

    user, sep, password = decoded.partition(":")
    if not sep:
        raise AuthenticationFailure("Invalid Credentials")
    return user, password


class CredentialStore:
    """Immutable set of accepted ``(user, password)`` pairs."""

    def __init__(self, pairs: Iterable[tuple[str, str]]) -> None:
        self._pairs: tuple[tuple[str, str], ...] = tuple(pairs)

    def __len__(self) -> int:
        return len(self._pairs)

    def contains(self, user: str, password: str) -> bool:
        """Check whether the pair is one of the accepted credentials."""
        found = False
        for known_user, known_password in self._pairs:
            user_ok = hmac.compare_digest(known_user.encode(), user.encode())
            password_ok = hmac.compare_digest(known_password.encode(), password.encode())
            # keep scanning so every lookup takes the same time
            found |= user_ok and password_ok
        return found

    def authenticate(self, header_value: str | None) -> str:
        """Authenticate a ``Proxy-Authorization`` header value.

        Returns:
            str: The authenticated user name

        Raises:
            AuthenticationFailure: If credentials are missing or not accepted
        """
        user, password = decode_basic_credentials(header_value)
        if not self.contains(user, password):
            raise AuthenticationFailure("Invalid Credentials")
        return user
