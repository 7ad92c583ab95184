import asyncio
import contextlib
import dataclasses
import ipaddress
import logging
import struct
from pathlib import Path

import pytest

from quincy.auth.base import AuthError
from quincy.auth.stream import Authenticate, Authenticated, decode_message, encode_message
from quincy.auth.users_file import User, hash_password, save_users_file
from quincy.config import LogConfig, ServerAuthenticationConfig, ServerConfig
from quincy.network.interface import Interface, InterfaceIO
from quincy.network.packet import Packet
from quincy.server.tunnel import QuincyServer, relay_isolated, relay_unisolated

IP_SERVER = ipaddress.ip_address("10.0.0.1")
IP_CLIENT_A = ipaddress.ip_address("10.0.0.2")
IP_CLIENT_B = ipaddress.ip_address("10.0.0.3")
TUNNEL_NETWORK = ipaddress.ip_interface("10.0.0.1/24")


def dummy_packet(src, dest):
    payload = bytes([1, 2, 3, 4, 5, 6, 7, 8])
    icmp = struct.pack("!BBHHH", 8, 0, 0, 0, 0) + payload
    header = struct.pack(
        "!BBHHHBBH4s4s", 0x45, 0, 20 + len(icmp), 0, 0, 20, 1, 0, src.packed, dest.packed
    )
    return header + icmp


class FakeIO(InterfaceIO):
    def __init__(self):
        self.inbound = asyncio.Queue()
        self.written = []

    @property
    def mtu(self):
        return 1400

    @property
    def name(self):
        return "test"

    def configure_routes(self, routes):
        pass

    def configure_dns(self, dns_servers):
        pass

    def cleanup_routes(self, routes):
        pass

    def cleanup_dns(self, dns_servers):
        pass

    async def read_packet(self):
        return Packet(await self.inbound.get())

    async def write_packet(self, packet):
        self.written.append(packet)


class FakeSendStream:
    def __init__(self):
        self.written = bytearray()

    async def write_all(self, data):
        self.written += data

    def finish(self):
        pass


class FakeRecvStream:
    def __init__(self, data):
        self._data = data

    async def read(self, size):
        chunk, self._data = self._data[:size], self._data[size:]
        return chunk


class FakeConnection:
    def __init__(self, request, port):
        self.remote_address = ("192.0.2.10", port)
        self.send_stream = FakeSendStream()
        self._recv_stream = FakeRecvStream(request)
        self.incoming = asyncio.Queue()
        self.sent = []
        self.closed = None

    async def accept_bi(self):
        return self.send_stream, self._recv_stream

    async def open_bi(self):
        return self.send_stream, self._recv_stream

    async def read_datagram(self):
        item = await self.incoming.get()
        if isinstance(item, Exception):
            raise item
        return item

    def send_datagram(self, data):
        self.sent.append(bytes(data))

    def close(self, error_code, reason):
        self.closed = (error_code, reason)


def request_for(password):
    return encode_message(Authenticate(payload={"username": "test", "password": password}))


@pytest.fixture(scope="module")
def users_file(tmp_path_factory):
    path = tmp_path_factory.mktemp("users") / "users"
    password = "password"
    save_users_file(path, {"test": User("test", hash_password(password))})
    return path


def make_config(users_file, isolate_clients=True):
    return ServerConfig(
        name="test",
        certificate_file=Path("cert.pem"),
        certificate_key_file=Path("key.pem"),
        tunnel_network=TUNNEL_NETWORK,
        authentication=ServerAuthenticationConfig(users_file=users_file),
        log=LogConfig(),
        isolate_clients=isolate_clients,
    )


async def eventually(predicate, timeout=10.0):
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


@contextlib.asynccontextmanager
async def running(server, io):
    incoming = asyncio.Queue()

    async def connections():
        while True:
            yield await incoming.get()

    task = asyncio.create_task(server.run(lambda *args: io, connections()))
    try:
        yield incoming, task
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


async def connect(incoming, port):
    password = "password"
    connection = FakeConnection(request_for(password), port)
    await incoming.put(connection)
    await eventually(lambda: connection.send_stream.written)
    return connection


def assigned(connection):
    return decode_message(bytes(connection.send_stream.written))


@pytest.mark.asyncio
async def test_clients_receive_sequential_addresses(users_file):
    server = QuincyServer(make_config(users_file))
    async with running(server, FakeIO()) as (incoming, _):
        client_a = await connect(incoming, 5001)
        client_b = await connect(incoming, 5002)
    assert assigned(client_a) == Authenticated(
        client_address=ipaddress.ip_interface("10.0.0.2/24"), server_address=TUNNEL_NETWORK
    )
    assert assigned(client_b) == Authenticated(
        client_address=ipaddress.ip_interface("10.0.0.3/24"), server_address=TUNNEL_NETWORK
    )


@pytest.mark.asyncio
async def test_client_isolation(users_file):
    io = FakeIO()
    server = QuincyServer(make_config(users_file))
    async with running(server, io) as (incoming, _):
        client_a = await connect(incoming, 5001)
        client_b = await connect(incoming, 5002)

        to_b = dummy_packet(IP_CLIENT_A, IP_CLIENT_B)
        to_server = dummy_packet(IP_CLIENT_A, IP_SERVER)
        await client_a.incoming.put(to_b)
        await client_a.incoming.put(to_server)

        await eventually(lambda: io.written)
        assert io.written == [Packet(to_server)]
        assert client_b.sent == []


@pytest.mark.asyncio
async def test_client_communication_without_isolation(users_file):
    io = FakeIO()
    server = QuincyServer(make_config(users_file, isolate_clients=False))
    async with running(server, io) as (incoming, _):
        client_a = await connect(incoming, 5001)
        client_b = await connect(incoming, 5002)

        to_b = dummy_packet(IP_CLIENT_A, IP_CLIENT_B)
        await client_a.incoming.put(to_b)
        await eventually(lambda: client_b.sent)
        assert client_b.sent == [to_b]
        assert io.written == []


@pytest.mark.asyncio
async def test_end_to_end_both_directions(users_file):
    io = FakeIO()
    server = QuincyServer(make_config(users_file))
    async with running(server, io) as (incoming, _):
        client = await connect(incoming, 5001)

        to_server = dummy_packet(IP_CLIENT_A, IP_SERVER)
        await client.incoming.put(to_server)
        await eventually(lambda: io.written)
        assert io.written == [Packet(to_server)]

        to_client = dummy_packet(IP_SERVER, IP_CLIENT_A)
        await io.inbound.put(b"\x00")
        await io.inbound.put(to_client)
        await eventually(lambda: client.sent)
        assert client.sent == [to_client]


@pytest.mark.asyncio
async def test_failed_authentication_sends_nothing(users_file, caplog):
    server = QuincyServer(make_config(users_file))
    with caplog.at_level(logging.WARNING):
        async with running(server, FakeIO()) as (incoming, _):
            rejected = FakeConnection(request_for("secret"), 5001)
            await incoming.put(rejected)
            await eventually(lambda: "Failed to authenticate client" in caplog.text)
            accepted = await connect(incoming, 5002)
    assert rejected.send_stream.written == bytearray()
    assert assigned(accepted).client_address == ipaddress.ip_interface("10.0.0.2/24")


@pytest.mark.asyncio
async def test_address_released_after_connection_error(users_file, caplog):
    server = QuincyServer(make_config(users_file))
    with caplog.at_level(logging.WARNING):
        async with running(server, FakeIO()) as (incoming, _):
            first = await connect(incoming, 5001)
            await first.incoming.put(ConnectionError("lost"))
            await eventually(lambda: "has encountered an error" in caplog.text)
            second = await connect(incoming, 5002)
    assert "Connection with client 10.0.0.2 has encountered an error: lost" in caplog.text
    assert assigned(second).client_address == ipaddress.ip_interface("10.0.0.2/24")


@pytest.mark.asyncio
async def test_shutdown_closes_connections(users_file):
    server = QuincyServer(make_config(users_file))
    async with running(server, FakeIO()) as (incoming, task):
        client = await connect(incoming, 5001)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
    assert client.closed == (1, b"Server shutdown")


@pytest.mark.asyncio
async def test_run_fails_without_users_file(tmp_path):
    server = QuincyServer(make_config(tmp_path / "missing"))

    async def connections():
        return
        yield

    with pytest.raises(AuthError, match="failed to load users file"):
        await server.run(lambda *args: FakeIO(), connections())


async def run_relay(relay, queues, io, packets, done):
    interface = Interface(lambda *args: io, TUNNEL_NETWORK, 1400)
    ingress = asyncio.Queue()
    for packet in packets:
        await ingress.put(packet)
    task = asyncio.create_task(relay(queues, interface, ingress))
    try:
        await eventually(done)
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


@pytest.mark.asyncio
async def test_relay_isolated_drops_client_and_malformed_packets():
    io = FakeIO()
    client_queue = asyncio.Queue()
    to_client = Packet(dummy_packet(IP_CLIENT_A, IP_CLIENT_B))
    to_server = Packet(dummy_packet(IP_CLIENT_A, IP_SERVER))
    await run_relay(
        relay_isolated,
        {IP_CLIENT_B: client_queue},
        io,
        [to_client, Packet(b"\x00"), to_server],
        lambda: io.written,
    )
    assert io.written == [to_server]
    assert client_queue.empty()


@pytest.mark.asyncio
async def test_relay_unisolated_forwards_to_clients():
    io = FakeIO()
    client_queue = asyncio.Queue()
    to_client = Packet(dummy_packet(IP_CLIENT_A, IP_CLIENT_B))
    to_server = Packet(dummy_packet(IP_CLIENT_A, IP_SERVER))
    await run_relay(
        relay_unisolated,
        {IP_CLIENT_B: client_queue},
        io,
        [to_client, Packet(b"\x60"), to_server],
        lambda: io.written,
    )
    assert io.written == [to_server]
    assert client_queue.get_nowait() == to_client.data


def test_config_is_kept_unchanged(users_file):
    config = make_config(users_file)
    server = QuincyServer(config)
    assert server.config == dataclasses.replace(config)
    assert server.address_pool.network == TUNNEL_NETWORK