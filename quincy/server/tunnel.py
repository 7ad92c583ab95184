"""The VPN server: accepts clients and relays packets between them and the interface."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterable
from typing import Any

from quincy.auth.server_auth import AuthServer
from quincy.config import IpAddress, ServerConfig
from quincy.constants import PACKET_BUFFER_SIZE, PACKET_CHANNEL_SIZE
from quincy.network.interface import Interface, IoFactory
from quincy.network.packet import Packet, PacketError
from quincy.server.address_pool import AddressPool
from quincy.server.connection import QuicConnection, QuincyConnection
from quincy.utils.tasks import abort_all

log = logging.getLogger(__name__)

ConnectionQueues = dict[IpAddress, "asyncio.Queue[bytes]"]

_SHUTDOWN_CODE = 0x01
_SHUTDOWN_REASON = b"Server shutdown"


def _destination(packet: Packet) -> IpAddress | None:
    try:
        return packet.destination()
    except PacketError as exc:
        log.warning("Received packet with malformed header structure: %s", exc)
        return None


async def _recv_many(queue: asyncio.Queue[Packet], limit: int) -> list[Packet]:
    packets = [await queue.get()]
    while len(packets) < limit and not queue.empty():
        packets.append(queue.get_nowait())
    return packets


async def relay_isolated(
    connection_queues: ConnectionQueues,
    interface: Interface,
    ingress_queue: asyncio.Queue[Packet],
) -> None:
    """Write client packets to the interface, dropping those meant for other clients."""
    while True:
        packets = await _recv_many(ingress_queue, PACKET_BUFFER_SIZE)
        allowed = [
            packet
            for packet in packets
            if (destination := _destination(packet)) is not None
            and destination not in connection_queues
        ]
        await interface.write_packets(allowed)


async def relay_unisolated(
    connection_queues: ConnectionQueues,
    interface: Interface,
    ingress_queue: asyncio.Queue[Packet],
) -> None:
    """Forward client packets to other clients directly, the rest to the interface."""
    while True:
        for packet in await _recv_many(ingress_queue, PACKET_BUFFER_SIZE):
            destination = _destination(packet)
            if destination is None:
                continue
            queue = connection_queues.get(destination)
            if queue is not None:
                await queue.put(packet.data)
            else:
                await interface.write_packet(packet)


async def _process_outbound_traffic(
    interface: Interface, connection_queues: ConnectionQueues
) -> None:
    log.debug("Started tunnel outbound traffic task (interface -> connection queue)")
    while True:
        packet = await interface.read_packet()
        destination = _destination(packet)
        if destination is None:
            continue
        log.debug("Destination address for packet: %s", destination)
        queue = connection_queues.get(destination)
        if queue is None:
            continue
        log.debug("Found connection for IP %s", destination)
        await queue.put(packet.data)


async def _process_inbound_traffic(
    connection_queues: ConnectionQueues,
    interface: Interface,
    ingress_queue: asyncio.Queue[Packet],
    isolate_clients: bool,
) -> None:
    log.debug("Started tunnel inbound traffic task (tunnel queue -> interface)")
    relay = relay_isolated if isolate_clients else relay_unisolated
    await relay(connection_queues, interface, ingress_queue)


class QuincyServer:
    """Serves authenticated clients over QUIC and relays their traffic."""

    def __init__(self, config: ServerConfig) -> None:
        self.config = config
        self._address_pool = AddressPool(config.tunnel_network)
        self._connection_queues: ConnectionQueues = {}

    @property
    def address_pool(self) -> AddressPool:
        return self._address_pool

    async def run(self, io_factory: IoFactory, connections: AsyncIterable[Any]) -> None:
        """Serve the incoming connections until cancelled or a worker fails.

        `connections` yields established QUIC connections, or awaitables that
        complete the handshake and return one.
        """
        network = self.config.tunnel_network
        interface = Interface(
            io_factory,
            network,
            self.config.connection.mtu,
            network.network.network_address,
            None,
            None,
        )
        try:
            auth_server = AuthServer(
                self.config.authentication,
                network,
                self._address_pool,
                self.config.connection.connection_timeout,
            )
            ingress_queue: asyncio.Queue[Packet] = asyncio.Queue(PACKET_CHANNEL_SIZE)
            tasks = [
                asyncio.create_task(
                    _process_outbound_traffic(interface, self._connection_queues)
                ),
                asyncio.create_task(
                    _process_inbound_traffic(
                        self._connection_queues,
                        interface,
                        ingress_queue,
                        self.config.isolate_clients,
                    )
                ),
                asyncio.create_task(
                    self._handle_connections(auth_server, ingress_queue, connections)
                ),
            ]
            try:
                done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
                next(iter(done)).result()
            finally:
                await abort_all(tasks)
        finally:
            interface.close()

    async def _handle_connections(
        self,
        auth_server: AuthServer,
        ingress_queue: asyncio.Queue[Packet],
        connections: AsyncIterable[Any],
    ) -> None:
        log.info("Starting connection handler")
        failure: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        sessions: set[asyncio.Task[None]] = set()
        accepted: list[QuicConnection] = []

        def on_done(task: asyncio.Task[None]) -> None:
            sessions.discard(task)
            if task.cancelled() or failure.done():
                return
            error = task.exception()
            if error is not None:
                failure.set_exception(error)

        async def accept() -> None:
            async for incoming in connections:
                if inspect.isawaitable(incoming):
                    try:
                        quic = await incoming
                    except Exception as exc:
                        log.warning("Connection handshake with client failed: %s", exc)
                        continue
                else:
                    quic = incoming
                log.debug("Received incoming connection from '%s'", quic.remote_address[0])
                accepted.append(quic)
                session = asyncio.create_task(
                    self._serve(QuincyConnection(quic, ingress_queue), auth_server)
                )
                sessions.add(session)
                session.add_done_callback(on_done)

        acceptor = asyncio.create_task(accept())
        acceptor.add_done_callback(on_done)
        try:
            await failure
        finally:
            log.info("Shutting down connection handler")
            await abort_all([acceptor, *sessions])
            for quic in accepted:
                try:
                    quic.close(_SHUTDOWN_CODE, _SHUTDOWN_REASON)
                except Exception as exc:
                    log.debug("Failed to close connection: %s", exc)

    async def _serve(self, connection: QuincyConnection, auth_server: AuthServer) -> None:
        try:
            connection = await connection.authenticate(auth_server)
        except Exception as exc:
            log.warning("Failed to authenticate client: %s", exc)
            return

        client_ip = connection.client_address().ip
        egress_queue: asyncio.Queue[bytes] = asyncio.Queue(PACKET_CHANNEL_SIZE)
        self._connection_queues[client_ip] = egress_queue
        try:
            _, error = await connection.run(egress_queue)
        finally:
            self._connection_queues.pop(client_ip, None)
            self._address_pool.release_address(client_ip)
        log.warning("Connection with client %s has encountered an error: %s", client_ip, error)