import asyncio

import pytest
from conftest import MockSocks5Server

from socks5_gateway.core.exceptions import (
    AuthRejected,
    ConfigurationError,
    ConnectFailed,
    ConnectionOpenFailed,
    HandshakeError,
    HandshakeFailure,
    MalformedReply,
    NegotiationRejected,
)
from socks5_gateway.core.lib.socks5_client import (
    HandshakeSession,
    HandshakeState,
    Socks5Client,
    build_auth_request,
    build_connect_request,
    build_greeting,
)
from socks5_gateway.core.models import ProxyEndpoint, TargetAddress

TARGET = TargetAddress("example.com", 443)
EXAMPLE_CONNECT = bytes.fromhex("05 01 00 03 0B 65 78 61 6D 70 6C 65 2E 63 6F 6D 01 BB")


def test_greeting_offers_only_username_password():
    assert build_greeting() == b"\x05\x01\x02"


def test_auth_request_layout():
    assert build_auth_request("user", "secret") == b"\x01\x04user\x06secret"


def test_connect_request_for_example_com_443():
    assert build_connect_request("example.com", 443) == EXAMPLE_CONNECT


def test_connect_request_port_is_big_endian():
    assert build_connect_request("h", 8080)[-2:] == b"\x1f\x90"


def test_credentials_longer_than_255_bytes_are_a_configuration_error():
    with pytest.raises(ConfigurationError):
        build_auth_request("u" * 256, "p")
    with pytest.raises(ConfigurationError):
        build_auth_request("u", "é" * 128)  # 256 bytes once encoded


def test_host_longer_than_255_bytes_is_rejected():
    with pytest.raises(HandshakeError):
        build_connect_request("a" * 256, 80)


def test_connect_sends_exactly_three_packets_and_returns_stream():
    async def scenario():
        async with MockSocks5Server() as server:
            proxy = server.endpoint("user", "secret")
            stream = await Socks5Client().connect(proxy, TARGET)
            try:
                assert stream.proxy == proxy
                assert stream.target == TARGET
                assert stream.bound_address == ("127.0.0.1", 1080)
                stream.writer.write(b"ping")
                await stream.writer.drain()
                assert await stream.reader.readexactly(4) == b"ping"
            finally:
                await stream.close()
            await asyncio.wait_for(server.sessions[0].done.wait(), 2)
            return server.sessions[0]

    session = asyncio.run(scenario())
    assert session.greeting == b"\x05\x01\x02"
    assert session.auth == b"\x01\x04user\x06secret"
    assert session.connect == EXAMPLE_CONNECT
    assert session.payload == b"ping"


def test_negotiation_rejected_closes_connection():
    async def scenario():
        async with MockSocks5Server(greeting_reply=b"\x05\x00") as server:
            with pytest.raises(NegotiationRejected) as excinfo:
                await Socks5Client().connect(server.endpoint(), TARGET)
            await asyncio.wait_for(server.sessions[0].done.wait(), 2)
            return excinfo.value, server.sessions[0]

    error, session = asyncio.run(scenario())
    assert error.reason is HandshakeFailure.NEGOTIATION_REJECTED
    assert session.trailing == b""


def test_auth_rejected():
    async def scenario():
        async with MockSocks5Server(auth_reply=b"\x01\x01") as server:
            with pytest.raises(AuthRejected):
                await Socks5Client().connect(server.endpoint(), TARGET)
            await asyncio.wait_for(server.sessions[0].done.wait(), 2)
            return server.sessions[0]

    session = asyncio.run(scenario())
    assert session.trailing == b""


def test_connect_refused_reports_code():
    async def scenario():
        async with MockSocks5Server(connect_reply=b"\x05\x05") as server:
            with pytest.raises(ConnectFailed) as excinfo:
                await Socks5Client().connect(server.endpoint(), TARGET)
            await asyncio.wait_for(server.sessions[0].done.wait(), 2)
            return excinfo.value

    error = asyncio.run(scenario())
    assert error.code == 5
    assert "5" in str(error)
    assert "connection refused" in str(error)


def test_truncated_reply_times_out_as_malformed():
    async def scenario():
        async with MockSocks5Server(greeting_reply=b"\x05") as server:
            with pytest.raises(MalformedReply):
                await Socks5Client(handshake_timeout=0.2).connect(server.endpoint(), TARGET)

    asyncio.run(scenario())


def test_unknown_bound_address_type_is_malformed():
    async def scenario():
        async with MockSocks5Server(connect_reply=b"\x05\x00\x00\x09") as server:
            with pytest.raises(MalformedReply):
                await Socks5Client(handshake_timeout=1).connect(server.endpoint(), TARGET)

    asyncio.run(scenario())


def test_domain_bound_address_is_consumed():
    reply = b"\x05\x00\x00\x03\x09localhost\x1f\x90"

    async def scenario():
        async with MockSocks5Server(connect_reply=reply, after_connect=b"early") as server:
            stream = await Socks5Client().connect(server.endpoint(), TARGET)
            try:
                return stream.bound_address, await stream.reader.readexactly(5)
            finally:
                await stream.close()

    bound, early = asyncio.run(scenario())
    assert bound == ("localhost", 8080)
    assert early == b"early"


def test_ipv6_bound_address_is_consumed():
    reply = b"\x05\x00\x00\x04" + b"\x00" * 15 + b"\x01" + b"\x00\x50"

    async def scenario():
        async with MockSocks5Server(connect_reply=reply) as server:
            stream = await Socks5Client().connect(server.endpoint(), TARGET)
            await stream.close()
            return stream.bound_address

    assert asyncio.run(scenario()) == ("::1", 80)


def test_unreachable_proxy_is_connection_open_failed():
    async def scenario():
        server = await MockSocks5Server().start()
        port = server.port
        await server.close()
        proxy = ProxyEndpoint("127.0.0.1", port, "u", "p")
        with pytest.raises(ConnectionOpenFailed):
            await Socks5Client(connect_timeout=2).connect(proxy, TARGET)

    asyncio.run(scenario())


def test_nothing_is_opened_for_oversized_credentials():
    calls = []

    async def fake_open(host, port):
        calls.append((host, port))
        raise AssertionError("should not connect")

    async def scenario():
        proxy = ProxyEndpoint("127.0.0.1", 1080, "u" * 300, "p")
        with pytest.raises(ConfigurationError):
            await Socks5Client(open_connection=fake_open).connect(proxy, TARGET)

    asyncio.run(scenario())
    assert calls == []


def test_session_steps_cannot_be_reordered():
    async def scenario():
        reader = asyncio.StreamReader()
        session = HandshakeSession(reader, writer=None, proxy=ProxyEndpoint("h", 1, "u", "p"))
        with pytest.raises(HandshakeError):
            await session.authenticate(b"")
        assert session.state is HandshakeState.INIT

    asyncio.run(scenario())
