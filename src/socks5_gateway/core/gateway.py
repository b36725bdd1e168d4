"""Main entry point for the gateway functionality.

This module exposes only what is needed to run the gateway, hiding:
- The asyncio accept loop
- Per-request routing and SOCKS5 negotiation
- Statistics tracking and the dashboard

Example:
    from socks5_gateway.core.config import ConfigLoader
    from socks5_gateway.core.gateway import run_gateway

    loader = ConfigLoader()
    run_gateway(loader.load_settings(port=8080), loader)
"""

from .lib import GatewayServer, run_gateway

__all__ = ["GatewayServer", "run_gateway"]
