"""Gateway configuration loading.

Settings come from, lowest to highest precedence:
- Built-in defaults
- A TOML file (``[gateway]`` table, ``[[users]]`` and ``[[proxies]]`` arrays)
- Environment variables (``GATEWAY_*``, ``USERS_JSON``, ``PROXIES_JSON``)
- Explicit overrides (command-line options)

Users and proxies are secrets that may be rotated while the gateway runs, so
``ConfigLoader`` re-reads them for every request instead of caching them.

Example:
    loader = ConfigLoader(Path("gateway.toml"))
    settings = loader.load_settings()
    registry = loader.load_proxies()
    proxy = registry.pick()
"""

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

from loguru import logger

from socks5_gateway.core.credentials import CredentialStore
from socks5_gateway.core.exceptions import ConfigurationError
from socks5_gateway.core.models import MAX_FIELD_BYTES, MAX_PORT, MIN_PORT, ProxyEndpoint
from socks5_gateway.core.registry import ProxyRegistry

USERS_ENV = "USERS_JSON"
PROXIES_ENV = "PROXIES_JSON"
ENV_PREFIX = "GATEWAY_"


@dataclass(frozen=True)
class GatewayConfig:
    """Listener and timing settings.

    Attributes:
        host: Address the gateway listens on
        port: Port the gateway listens on
        connect_timeout: Seconds allowed to open the proxy connection
        handshake_timeout: Seconds allowed for each handshake reply
        idle_timeout: Seconds a relay direction may stay silent, None for no limit
        buffer_size: Bytes read per relay chunk
        realm: Realm announced in the Proxy-Authenticate challenge
    """

    host: str = "127.0.0.1"
    port: int = 8080
    connect_timeout: float | None = 10.0
    handshake_timeout: float | None = 10.0
    idle_timeout: float | None = 60.0
    buffer_size: int = 65536
    realm: str = "Secure Proxy Gateway"


def _coerce_setting(name: str, value: Any) -> Any:
    """Convert a raw file/env value to the type of the named setting."""
    if name in ("host", "realm"):
        return str(value)
    if name in ("port", "buffer_size"):
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Setting {name!r} must be an integer, got {value!r}") from e
    # timeouts; empty/"none"/0 disable them
    if value is None or (isinstance(value, str) and value.strip().lower() in ("", "none")):
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Setting {name!r} must be a number, got {value!r}") from e
    return seconds if seconds > 0 else None


def _check_field(kind: str, index: int, name: str, value: Any) -> str:
    if not isinstance(value, str):
        raise ConfigurationError(f"{kind} entry {index}: {name!r} must be a string")
    if len(value.encode("utf-8")) > MAX_FIELD_BYTES:
        raise ConfigurationError(f"{kind} entry {index}: {name!r} is longer than {MAX_FIELD_BYTES} bytes")
    return value


def parse_users(raw: Any) -> CredentialStore:
    """Build a CredentialStore from a list of ``{"user", "pass"}`` mappings."""
    if not isinstance(raw, list):
        raise ConfigurationError("Users must be a list of {user, pass} objects")
    pairs = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, Mapping):
            raise ConfigurationError(f"User entry {index} is not an object")
        user = _check_field("User", index, "user", entry.get("user"))
        password = _check_field("User", index, "pass", entry.get("pass", entry.get("password")))
        pairs.append((user, password))
    return CredentialStore(pairs)


def parse_proxy(index: int, entry: Any) -> ProxyEndpoint:
    """Build one ProxyEndpoint, validating host, port and credential lengths."""
    if not isinstance(entry, Mapping):
        raise ConfigurationError(f"Proxy entry {index} is not an object")

    host = entry.get("host")
    if not isinstance(host, str) or not host:
        raise ConfigurationError(f"Proxy entry {index}: 'host' must be a non-empty string")

    port = entry.get("port")
    if isinstance(port, str) and port.isascii() and port.isdigit():
        port = int(port)
    if not isinstance(port, int) or isinstance(port, bool) or not MIN_PORT <= port <= MAX_PORT:
        raise ConfigurationError(f"Proxy entry {index}: 'port' must be between {MIN_PORT} and {MAX_PORT}")

    user = _check_field("Proxy", index, "user", entry.get("user"))
    password = _check_field("Proxy", index, "pass", entry.get("pass", entry.get("password")))
    return ProxyEndpoint(host=host, port=port, user=user, password=password)


def parse_proxies(raw: Any) -> ProxyRegistry:
    """Build a ProxyRegistry from a list of proxy mappings."""
    if not isinstance(raw, list):
        raise ConfigurationError("Proxies must be a list of {host, port, user, pass} objects")
    return ProxyRegistry(parse_proxy(index, entry) for index, entry in enumerate(raw))


class ConfigLoader:
    """Read settings and secrets from a TOML file and the environment."""

    def __init__(self, config_path: Path | None = None, environ: Mapping[str, str] | None = None) -> None:
        """Initialize the loader.

        Args:
            config_path: Optional TOML file
            environ: Environment mapping (default: ``os.environ``, read on every call)
        """
        self.config_path = config_path
        self._environ = environ

    @property
    def environ(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    def _read_file(self) -> dict[str, Any]:
        if self.config_path is None:
            return {}
        try:
            with self.config_path.open("rb") as f:
                return tomllib.load(f)
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file {self.config_path}: {e}") from e
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML in {self.config_path}: {e}") from e

    def _read_json_env(self, name: str) -> Any:
        try:
            return json.loads(self.environ[name])
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"{name} is not valid JSON: {e}") from e

    def load_settings(self, **overrides: Any) -> GatewayConfig:
        """Load listener settings; ``None`` overrides are ignored."""
        values: dict[str, Any] = {}
        file_settings = self._read_file().get("gateway", {})
        if not isinstance(file_settings, Mapping):
            raise ConfigurationError("[gateway] must be a table")

        for setting in fields(GatewayConfig):
            env_name = ENV_PREFIX + setting.name.upper()
            if env_name in self.environ:
                values[setting.name] = _coerce_setting(setting.name, self.environ[env_name])
            elif setting.name in file_settings:
                values[setting.name] = _coerce_setting(setting.name, file_settings[setting.name])

        values.update({name: value for name, value in overrides.items() if value is not None})
        config = replace(GatewayConfig(), **values)
        if not MIN_PORT <= config.port <= MAX_PORT:
            raise ConfigurationError(f"Listen port must be between {MIN_PORT} and {MAX_PORT}")
        if config.buffer_size <= 0:
            raise ConfigurationError("buffer_size must be positive")
        return config

    def load_credentials(self) -> CredentialStore:
        """Load the accepted client credentials."""
        if USERS_ENV in self.environ:
            return parse_users(self._read_json_env(USERS_ENV))
        users = self._read_file().get("users")
        if users is None:
            raise ConfigurationError(f"No users configured (set {USERS_ENV} or [[users]])")
        return parse_users(users)

    def load_proxies(self) -> ProxyRegistry:
        """Load the upstream proxy list."""
        if PROXIES_ENV in self.environ:
            registry = parse_proxies(self._read_json_env(PROXIES_ENV))
        else:
            proxies = self._read_file().get("proxies")
            if proxies is None:
                raise ConfigurationError(f"No proxies configured (set {PROXIES_ENV} or [[proxies]])")
            registry = parse_proxies(proxies)
        logger.debug(f"Loaded {len(registry)} upstream proxies")
        return registry
