"""Core gateway library components."""

from .gateway_server import GatewayServer, run_gateway
from .gateway_stats import GatewayStats
from .request_router import RequestRouter
from .socks5_client import EstablishedStream, Socks5Client
from .stream_relay import RelayResult, StreamRelay

__all__ = [
    "EstablishedStream",
    "GatewayServer",
    "GatewayStats",
    "RelayResult",
    "RequestRouter",
    "run_gateway",
    "Socks5Client",
    "StreamRelay",
]
