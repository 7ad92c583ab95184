"""Relaying of packets between the client's tunnel interface and the server."""

from __future__ import annotations

import asyncio
import logging

from quincy.network.interface import Interface
from quincy.network.packet import Packet
from quincy.server.connection import QuicConnection
from quincy.utils.tasks import abort_all

log = logging.getLogger(__name__)

_SHUTDOWN_CODE = 0x01
_SHUTDOWN_REASON = b"Client shutdown"


class RelayerError(RuntimeError):
    """Raised when the relayer cannot be controlled or a packet cannot be sent."""


class ClientRelayer:
    """Relays packets between a tunnel interface and a QUIC connection.

    Relaying starts as soon as the relayer is created, so it must be created
    from within a running event loop.
    """

    def __init__(self, interface: Interface, connection: QuicConnection) -> None:
        self._interface = interface
        self._connection = connection
        self._shutdown = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._relay_packets())

    @property
    def interface(self) -> Interface:
        return self._interface

    @property
    def connection(self) -> QuicConnection:
        return self._connection

    async def stop(self) -> None:
        """Ask the relaying task to shut down."""
        if self._task.done():
            raise RelayerError("Failed to send shutdown signal")
        self._shutdown.set()

    async def wait_for_shutdown(self) -> None:
        """Wait until relaying has stopped, raising the error that stopped it."""
        await asyncio.wait([self._task])
        if self._task.cancelled():
            raise RelayerError("Relayer task failed")
        self._task.result()

    async def _relay_packets(self) -> None:
        workers = [
            asyncio.create_task(self._process_inbound_traffic()),
            asyncio.create_task(self._process_outgoing_traffic()),
        ]
        shutdown = asyncio.create_task(self._shutdown.wait())
        try:
            self._interface.configure()
            done, _ = await asyncio.wait(
                [*workers, shutdown], return_when=asyncio.FIRST_COMPLETED
            )
            for worker in workers:
                if worker in done:
                    worker.result()
                    return
            log.info("Received shutdown signal, shutting down")
        finally:
            await abort_all([*workers, shutdown])
            self._connection.close(_SHUTDOWN_CODE, _SHUTDOWN_REASON)
            self._interface.close()

    async def _process_outgoing_traffic(self) -> None:
        log.debug("Started outgoing traffic task (interface -> QUIC tunnel)")
        while True:
            for packet in await self._interface.read_packets():
                try:
                    self._connection.send_datagram(packet.data)
                except Exception as exc:
                    raise RelayerError(f"Failed to send packet: {exc}") from exc

    async def _process_inbound_traffic(self) -> None:
        log.debug("Started inbound traffic task (QUIC tunnel -> interface)")
        while True:
            packet = Packet(await self._connection.read_datagram())
            await self._interface.write_packet(packet)