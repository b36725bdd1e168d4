"""Upstream proxy registry with uniform random selection."""

import random
from collections.abc import Iterable, Iterator

from socks5_gateway.core.exceptions import ConfigurationError
from socks5_gateway.core.models import ProxyEndpoint


class ProxyRegistry:
    """Immutable, ordered list of upstream proxies.

    Each request draws one index uniformly at random; nothing is remembered
    between picks.
    """

    def __init__(self, proxies: Iterable[ProxyEndpoint], rng: random.Random | None = None) -> None:
        self._proxies: tuple[ProxyEndpoint, ...] = tuple(proxies)
        if not self._proxies:
            raise ConfigurationError("No upstream proxies configured")
        self._rng = rng or random.SystemRandom()

    def __len__(self) -> int:
        return len(self._proxies)

    def __iter__(self) -> Iterator[ProxyEndpoint]:
        return iter(self._proxies)

    def pick(self) -> ProxyEndpoint:
        """Return one proxy chosen uniformly at random."""
        return self._proxies[self._rng.randrange(len(self._proxies))]
