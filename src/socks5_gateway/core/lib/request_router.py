"""Per-request dispatch for the gateway.

Each inbound connection carries exactly one proxy request, handled as:
- Parse the request head
- Authenticate ``Proxy-Authorization`` against the configured users
- Load the proxy list and pick one proxy at random
- Open a SOCKS5 tunnel to the destination through that proxy
- Raw tunnel mode (CONNECT): answer 200 and relay both directions
- Substituted-transport mode (everything else): replay the request over the
  tunnel and pass the destination's response back untouched

Errors become responses here and nowhere else: 400 for malformed requests,
407 for authentication, 500 for configuration and 502 for upstream failures.
Nothing is retried and the tunnel is closed on every path.
"""

import asyncio
import contextlib
import ssl

from loguru import logger

from socks5_gateway.core.config import ConfigLoader, GatewayConfig
from socks5_gateway.core.exceptions import (
    AuthenticationFailure,
    ConfigurationError,
    HandshakeError,
    RequestParseError,
    UpstreamError,
)
from socks5_gateway.core.lib.gateway_stats import GatewayStats, gateway_stats
from socks5_gateway.core.lib.http_message import (
    Destination,
    ProxyRequest,
    build_origin_request,
    build_response,
    build_tunnel_established,
    forward_body,
    read_request_head,
    resolve_destination,
)
from socks5_gateway.core.lib.socks5_client import EstablishedStream, Socks5Client, close_writer
from socks5_gateway.core.lib.stream_relay import DOWNSTREAM, StreamRelay


async def _discard(task: asyncio.Task) -> None:
    """Cancel ``task`` and wait until it has finished."""
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


class RequestRouter:
    """Routes one inbound request through a randomly chosen SOCKS5 proxy."""

    def __init__(
        self,
        loader: ConfigLoader,
        settings: GatewayConfig,
        client: Socks5Client | None = None,
        stats: GatewayStats = gateway_stats,
        ssl_context: ssl.SSLContext | None = None,
    ) -> None:
        """Initialize the router.

        Args:
            loader: Source of users and proxies, consulted for every request
            settings: Timeouts, buffer size and auth realm
            client: SOCKS5 client (default: one built from ``settings``)
            stats: Statistics sink
            ssl_context: Context for https requests in substituted-transport mode
        """
        self.loader = loader
        self.settings = settings
        self.client = client or Socks5Client(
            connect_timeout=settings.connect_timeout,
            handshake_timeout=settings.handshake_timeout,
        )
        self.stats = stats
        self.ssl_context = ssl_context or ssl.create_default_context()

    @property
    def challenge(self) -> tuple[str, str]:
        return ("Proxy-Authenticate", f'Basic realm="{self.settings.realm}"')

    async def handle(self, client_reader: asyncio.StreamReader, client_writer: asyncio.StreamWriter) -> None:
        """Serve one request from a freshly accepted client connection."""
        self.stats.request_received()
        peer = client_writer.get_extra_info("peername")
        response: bytes | None = None
        try:
            await self._dispatch(client_reader, client_writer, peer)
        except RequestParseError as e:
            logger.debug(f"{peer}: bad request: {e}")
            self.stats.record_failure("RequestParseError")
            response = build_response(400, f"Bad Request: {e}")
        except AuthenticationFailure as e:
            if e.challenge_only:
                # clients usually send credentials only after being challenged
                logger.debug(f"{peer}: no proxy credentials, sending challenge")
            else:
                logger.info(f"{peer}: authentication failed: {e}")
                self.stats.record_failure("AuthenticationFailure")
            response = build_response(407, str(e), headers=[self.challenge])
        except ConfigurationError as e:
            logger.error(f"{peer}: configuration error: {e}")
            self.stats.record_failure("ConfigurationError")
            response = build_response(500, "Proxy configuration error")
        except HandshakeError as e:
            logger.warning(f"{peer}: SOCKS5 handshake failed ({e.reason.value}): {e}")
            self.stats.record_failure(e.reason.value)
            response = build_response(502, str(e))
        except UpstreamError as e:
            logger.warning(f"{peer}: upstream failed: {e}")
            self.stats.record_failure("UpstreamError")
            response = build_response(502, str(e))
        finally:
            if response is not None and not client_writer.is_closing():
                with contextlib.suppress(OSError):
                    client_writer.write(response)
                    await client_writer.drain()
            await close_writer(client_writer)

    async def _dispatch(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        peer: object,
    ) -> None:
        request = await read_request_head(client_reader)

        # authentication happens before any proxy is contacted
        # config file reads block, so both loads run in a worker thread
        credentials = await asyncio.to_thread(self.loader.load_credentials)
        user = credentials.authenticate(request.header("Proxy-Authorization"))

        registry = await asyncio.to_thread(self.loader.load_proxies)
        destination = resolve_destination(request)
        proxy = registry.pick()
        logger.debug(f"{peer}: {user} {request.method} {destination.address} via {proxy.address}")

        tunnel = await self.client.connect(proxy, destination.address)
        self.stats.tunnel_opened()
        try:
            if request.is_tunnel:
                await self._raw_tunnel(client_reader, client_writer, tunnel, peer)
            else:
                await self._substituted_transport(request, destination, client_reader, client_writer, tunnel, peer)
        finally:
            self.stats.tunnel_closed()
            await tunnel.close()

    def _relay(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        tunnel: EstablishedStream,
    ) -> StreamRelay:
        return StreamRelay(
            client_reader,
            client_writer,
            tunnel,
            buffer_size=self.settings.buffer_size,
            idle_timeout=self.settings.idle_timeout,
            stats=self.stats,
        )

    async def _raw_tunnel(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        tunnel: EstablishedStream,
        peer: object,
    ) -> None:
        try:
            client_writer.write(build_tunnel_established())
            await client_writer.drain()
        except OSError as e:
            logger.debug(f"{peer}: client went away before the tunnel started: {e}")
            return

        result = await self._relay(client_reader, client_writer, tunnel).run()
        for error in (result.up_error, result.down_error):
            if error is not None:
                self.stats.record_failure("RelayError")
                logger.debug(f"{peer}: {error}")
        logger.info(
            f"{peer}: CONNECT {tunnel.target} via {tunnel.proxy.address} closed "
            f"({result.bytes_up} bytes up, {result.bytes_down} bytes down)"
        )

    async def _substituted_transport(
        self,
        request: ProxyRequest,
        destination: Destination,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        tunnel: EstablishedStream,
        peer: object,
    ) -> None:
        if destination.scheme == "https":
            try:
                await asyncio.wait_for(
                    tunnel.writer.start_tls(self.ssl_context, server_hostname=destination.address.host),
                    self.settings.handshake_timeout,
                )
            except (OSError, TimeoutError) as e:
                raise UpstreamError(f"TLS handshake with {destination.address} failed: {e}") from e

        try:
            tunnel.writer.write(build_origin_request(request, destination))
            await tunnel.writer.drain()
        except OSError as e:
            raise UpstreamError(f"Sending request to {destination.address} failed: {e}") from e

        relay = self._relay(client_reader, client_writer, tunnel)
        # the response may start before the body is fully sent (e.g. 100-continue)
        response = asyncio.create_task(relay.pump(tunnel.reader, client_writer, DOWNSTREAM))
        try:
            await forward_body(request, client_reader, tunnel.writer)
        except OSError as e:
            # destination stopped reading; its response is still worth delivering
            logger.debug(f"{peer}: request body to {destination.address} cut short: {e}")
        except RequestParseError as e:
            await _discard(response)
            if relay.bytes_down:
                # status already sent, nothing left to report to the client
                logger.debug(f"{peer}: request body failed after the response started: {e}")
                return
            raise
        except BaseException:
            await _discard(response)
            raise

        bytes_down, error = await response
        if error is not None:
            self.stats.record_failure("RelayError")
            logger.debug(f"{peer}: {error}")
        logger.info(
            f"{peer}: {request.method} {destination.scheme}://{destination.address}{destination.path} "
            f"via {tunnel.proxy.address} ({bytes_down} bytes returned)"
        )
