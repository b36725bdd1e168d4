import random
from collections import Counter

import pytest

from socks5_gateway.core.exceptions import ConfigurationError
from socks5_gateway.core.models import ProxyEndpoint
from socks5_gateway.core.registry import ProxyRegistry

PROXIES = [ProxyEndpoint(f"10.0.0.{i}", 1080, "u", "p") for i in range(1, 4)]


def test_empty_registry_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        ProxyRegistry([])


def test_single_proxy_is_always_picked():
    registry = ProxyRegistry(PROXIES[:1])
    assert {registry.pick() for _ in range(20)} == {PROXIES[0]}


def test_pick_is_uniform():
    registry = ProxyRegistry(PROXIES, rng=random.Random(1234))
    trials = 30000
    counts = Counter(registry.pick() for _ in range(trials))
    assert set(counts) == set(PROXIES)
    expected = trials / len(PROXIES)
    for proxy in PROXIES:
        assert abs(counts[proxy] - expected) < expected * 0.05


def test_registry_is_immutable_snapshot():
    source = list(PROXIES)
    registry = ProxyRegistry(source)
    source.clear()
    assert list(registry) == PROXIES
    assert len(registry) == 3


def test_proxy_password_is_not_in_repr():
    assert "p'" not in repr(ProxyEndpoint("h", 1, "u", "p"))
