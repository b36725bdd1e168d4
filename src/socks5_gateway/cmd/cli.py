"""Command-line interface for the gateway.

This module provides the main command-line interface, handling:
- Command-line argument parsing
- Logging setup
- Configuration loading and validation
- Server startup and shutdown
- Error reporting

The CLI is built using Typer and provides:
- ``serve``: run the gateway
- ``check``: validate the users and proxies configuration

Example:
    # Run from command line:
    $ USERS_JSON='[{"user": "a", "pass": "b"}]' \\
      PROXIES_JSON='[{"host": "10.0.0.2", "port": 1080, "user": "u", "pass": "p"}]' \\
      socks5-gateway serve --port 8080
"""

from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from socks5_gateway import __version__
from socks5_gateway.core.config import ConfigLoader
from socks5_gateway.core.exceptions import ConfigurationError
from socks5_gateway.core.gateway import run_gateway
from socks5_gateway.core.utils.log_config import configure_logging
from socks5_gateway.core.utils.utils import mask_secret

console = Console()
app = typer.Typer(help="Authenticating HTTP gateway over random upstream SOCKS5 proxies")

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    exists=True,
    dir_okay=False,
    help="TOML file with [gateway] settings, [[users]] and [[proxies]]",
)


@app.callback(invoke_without_command=True)
def version_callback():
    """Show version information."""
    console.print(f"[cyan]SOCKS5 Gateway v{__version__}[/cyan]")


@app.command(name="serve")
def serve(
    host: str | None = typer.Option(None, "--host", help="Address to listen on (default: 127.0.0.1)"),
    port: int | None = typer.Option(None, "--port", "-p", help="Port to listen on (default: 8080)"),
    config: Path | None = ConfigOption,
    debug: bool = typer.Option(default=False, help="Enable debug logging"),
    dashboard: bool = typer.Option(default=False, help="Show live statistics"),
    copy_address: bool = typer.Option(default=False, help="Copy the gateway address to the clipboard"),
):
    """Start the gateway."""
    log_file = configure_logging(debug)
    logger.debug(f"Logging to {log_file}")

    loader = ConfigLoader(config)
    try:
        settings = loader.load_settings(host=host, port=port)
        # fail fast on startup; both are re-read for every request afterwards
        loader.load_credentials()
        loader.load_proxies()
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        console.print(f"[red]Configuration error: {escape(str(e))}")
        raise typer.Exit(code=1) from e

    logger.info(f"Starting gateway on {settings.host}:{settings.port}")
    try:
        run_gateway(settings, loader, dashboard=dashboard, copy_to_clipboard=copy_address)
    except OSError as e:
        logger.exception("Error starting gateway")
        console.print(f"[red]Error: {escape(str(e))}")
        raise typer.Exit(code=1) from e


@app.command(name="check")
def check(config: Path | None = ConfigOption):
    """Validate the configuration and list the upstream proxies."""
    loader = ConfigLoader(config)
    try:
        settings = loader.load_settings()
        credentials = loader.load_credentials()
        registry = loader.load_proxies()
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {escape(str(e))}")
        raise typer.Exit(code=1) from e

    table = Table(title="Upstream SOCKS5 proxies")
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Host", style="green")
    table.add_column("Port", style="green", justify="right")
    table.add_column("User", style="green")
    table.add_column("Password", style="dim")
    for index, proxy in enumerate(registry, start=1):
        table.add_row(str(index), proxy.host, str(proxy.port), proxy.user, mask_secret(proxy.password))

    console.print(table)
    console.print(f"[green]{len(credentials)} user(s), {len(registry)} proxy(ies)")
    console.print(f"[green]Gateway would listen on {settings.host}:{settings.port}")


if __name__ == "__main__":
    app()
