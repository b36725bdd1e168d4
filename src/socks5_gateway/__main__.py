"""Allow ``python -m socks5_gateway``."""

from socks5_gateway.cmd.cli import app

app()
