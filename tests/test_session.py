import asyncio
import contextlib
import ipaddress
from pathlib import Path

import pytest

from quincy.auth.base import AuthError
from quincy.auth.stream import Authenticated, Failed, encode_message
from quincy.auth.users_file import User, hash_password, save_users_file
from quincy.client.session import ClientError, QuincyClient, resolve_server_address
from quincy.config import (
    ClientAuthenticationConfig,
    ClientConfig,
    LogConfig,
    NetworkConfig,
    ServerAuthenticationConfig,
    ServerConfig,
)
from quincy.network.interface import InterfaceIO
from quincy.network.packet import Packet
from quincy.server.tunnel import QuincyServer
from quincy.utils.tasks import abort_all

USERNAME = "test"
PASSWORD = "password"
TIMEOUT = 5


class _Send:
    def __init__(self, queue):
        self._queue = queue

    async def write_all(self, data):
        await self._queue.put(bytes(data))

    def finish(self):
        pass


class _Recv:
    def __init__(self, queue):
        self._queue = queue

    async def read(self, size):
        return await self._queue.get()


class FakeConnection:
    def __init__(self, remote, datagrams_in, datagrams_out, streams_in, streams_out):
        self._remote = remote
        self._datagrams_in = datagrams_in
        self._datagrams_out = datagrams_out
        self._streams_in = streams_in
        self._streams_out = streams_out
        self.closed = None

    @property
    def remote_address(self):
        return self._remote

    async def open_bi(self):
        outgoing, incoming = asyncio.Queue(), asyncio.Queue()
        await self._streams_out.put((_Send(incoming), _Recv(outgoing)))
        return _Send(outgoing), _Recv(incoming)

    async def accept_bi(self):
        return await self._streams_in.get()

    def send_datagram(self, data):
        self._datagrams_out.put_nowait(bytes(data))

    async def read_datagram(self):
        return await self._datagrams_in.get()

    def close(self, error_code, reason):
        self.closed = (error_code, reason)


def connection_pair(client_ip):
    to_server, to_client = asyncio.Queue(), asyncio.Queue()
    server_streams, client_streams = asyncio.Queue(), asyncio.Queue()
    client = FakeConnection(("127.0.0.1", 55555), to_client, to_server, client_streams, server_streams)
    server = FakeConnection((client_ip, 40000), to_server, to_client, server_streams, client_streams)
    return client, server


class QueueIO(InterfaceIO):
    def __init__(self, address, mtu, gateway, routes, dns_servers):
        self.address = address
        self.gateway = gateway
        self._mtu = mtu
        self.inbox = asyncio.Queue()
        self.outbox = asyncio.Queue()
        self.configured_routes = []

    @property
    def mtu(self):
        return self._mtu

    @property
    def name(self):
        return "test"

    def configure_routes(self, routes):
        self.configured_routes.append(list(routes))

    def configure_dns(self, dns_servers):
        pass

    def cleanup_routes(self, routes):
        pass

    def cleanup_dns(self, dns_servers):
        pass

    async def read_packet(self):
        return Packet(await self.inbox.get())

    async def write_packet(self, packet):
        await self.outbox.put(packet.data)


class IoFactory:
    def __init__(self):
        self.created = []

    def __call__(self, address, mtu, gateway, routes, dns_servers):
        io = QueueIO(address, mtu, gateway, routes, dns_servers)
        self.created.append(io)
        return io


def dummy_packet(src, dest):
    icmp = bytes([8, 0, 0, 0, 0, 0, 0, 0]) + bytes([1, 2, 3, 4, 5, 6, 7, 8])
    total = 20 + len(icmp)
    header = (
        bytes([0x45, 0])
        + total.to_bytes(2, "big")
        + bytes(4)
        + bytes([20, 1])
        + bytes(2)
        + ipaddress.ip_address(src).packed
        + ipaddress.ip_address(dest).packed
    )
    return header + icmp


@pytest.fixture(scope="module")
def password_hash():
    return hash_password(PASSWORD)


@pytest.fixture
def server_config(tmp_path, password_hash):
    users_file = tmp_path / "users"
    save_users_file(users_file, {USERNAME: User(USERNAME, password_hash)})
    return ServerConfig(
        name="quincy",
        certificate_file=Path("unused_cert.pem"),
        certificate_key_file=Path("unused_key.pem"),
        tunnel_network=ipaddress.ip_interface("10.0.0.1/24"),
        authentication=ServerAuthenticationConfig(users_file=users_file),
        log=LogConfig(),
    )


@pytest.fixture
def client_config():
    return ClientConfig(
        connection_string="127.0.0.1:55555",
        authentication=ClientAuthenticationConfig(
            username=USERNAME, password=PASSWORD, trusted_certificates=[]
        ),
        log=LogConfig(),
    )


@contextlib.asynccontextmanager
async def running_server(config):
    server = QuincyServer(config)
    factory = IoFactory()
    incoming = asyncio.Queue()

    async def connections():
        while True:
            yield await incoming.get()

    task = asyncio.create_task(server.run(factory, connections()))
    try:
        yield incoming, factory
    finally:
        await abort_all([task])


async def connect(incoming, config, client_ip):
    client_connection, server_connection = connection_pair(client_ip)
    await incoming.put(server_connection)
    factory = IoFactory()
    client = QuincyClient(config, factory)
    await asyncio.wait_for(client.start(client_connection), TIMEOUT)
    return client, factory.created[0]


async def shutdown(client):
    await client.relayer.stop()
    await asyncio.wait_for(client.wait_for_shutdown(), TIMEOUT)


@pytest.mark.asyncio
async def test_end_to_end_communication(server_config, client_config):
    ip_server, ip_client = "10.0.0.1", "10.0.0.2"
    async with running_server(server_config) as (incoming, server_factory):
        client, client_io = await connect(incoming, client_config, "192.0.2.10")
        try:
            server_io = server_factory.created[0]

            test_packet = dummy_packet(ip_client, ip_server)
            await client_io.inbox.put(test_packet)
            received = await asyncio.wait_for(server_io.outbox.get(), TIMEOUT)
            assert received == test_packet

            test_packet = dummy_packet(ip_server, ip_client)
            await server_io.inbox.put(test_packet)
            received = await asyncio.wait_for(client_io.outbox.get(), TIMEOUT)
            assert received == test_packet
        finally:
            await shutdown(client)


@pytest.mark.asyncio
async def test_client_communication(server_config, client_config):
    server_config.isolate_clients = False
    ip_client_a, ip_client_b = "10.0.0.2", "10.0.0.3"
    async with running_server(server_config) as (incoming, _):
        client_a, io_a = await connect(incoming, client_config, "192.0.2.10")
        client_b, io_b = await connect(incoming, client_config, "192.0.2.11")
        try:
            assert io_a.address == ipaddress.ip_interface("10.0.0.2/24")
            assert io_b.address == ipaddress.ip_interface("10.0.0.3/24")

            test_packet = dummy_packet(ip_client_a, ip_client_b)
            await io_a.inbox.put(test_packet)
            received = await asyncio.wait_for(io_b.outbox.get(), TIMEOUT)
            assert received == test_packet
        finally:
            await shutdown(client_a)
            await shutdown(client_b)


async def reply_to_authentication(server_connection, message):
    send, recv = await server_connection.accept_bi()
    await recv.read(1024)
    await send.write_all(encode_message(message))


@pytest.mark.asyncio
async def test_start_creates_interface_from_assigned_addresses(client_config):
    client_config.network = NetworkConfig(routes=[ipaddress.ip_interface("10.0.1.0/24")])
    client_connection, server_connection = connection_pair("192.0.2.10")
    reply = Authenticated(
        client_address=ipaddress.ip_interface("10.0.0.2/24"),
        server_address=ipaddress.ip_interface("10.0.0.1/24"),
    )
    responder = asyncio.create_task(reply_to_authentication(server_connection, reply))
    factory = IoFactory()
    client = QuincyClient(client_config, factory)
    await asyncio.wait_for(client.start(client_connection), TIMEOUT)
    await responder
    try:
        io = factory.created[0]
        assert io.address == ipaddress.ip_interface("10.0.0.2/24")
        assert io.gateway == ipaddress.ip_address("10.0.0.1")
        assert io.mtu == client_config.connection.mtu

        with pytest.raises(ClientError, match="already started"):
            await client.start(client_connection)

        server_connection.send_datagram(b"ping")
        assert await asyncio.wait_for(io.outbox.get(), TIMEOUT) == b"ping"
        assert io.configured_routes == [[ipaddress.ip_interface("10.0.1.0/24")]]
    finally:
        await shutdown(client)
    assert client.relayer is None
    assert client_connection.closed == (0x01, b"Client shutdown")


@pytest.mark.asyncio
async def test_start_fails_when_authentication_fails(client_config):
    client_connection, server_connection = connection_pair("192.0.2.10")
    responder = asyncio.create_task(reply_to_authentication(server_connection, Failed()))
    factory = IoFactory()
    client = QuincyClient(client_config, factory)
    with pytest.raises(AuthError, match="authentication failed"):
        await asyncio.wait_for(client.start(client_connection), TIMEOUT)
    await responder
    assert client.relayer is None
    assert factory.created == []


def test_resolve_server_address_numeric():
    assert resolve_server_address("127.0.0.1:55555") == ("127.0.0.1", 55555)


@pytest.mark.parametrize(
    "connection_string",
    ["127.0.0.1", "127.0.0.1:port", "127.0.0.1:70000", ":55555", "::1:55555"],
)
def test_resolve_server_address_rejects_invalid(connection_string):
    with pytest.raises(ClientError, match="is invalid"):
        resolve_server_address(connection_string)