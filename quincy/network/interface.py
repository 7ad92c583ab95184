"""The tunnel interface and the I/O backends that drive it."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Sequence
from types import TracebackType

from quincy.config import IpAddress, IpNetwork
from quincy.network.packet import Packet

log = logging.getLogger(__name__)


class InterfaceIO(ABC):
    """A backend that moves packets in and out of a TUN-like device."""

    @property
    @abstractmethod
    def mtu(self) -> int:
        """The MTU of the interface."""

    @property
    @abstractmethod
    def name(self) -> str | None:
        """The name of the interface, if it has one."""

    @abstractmethod
    def configure_routes(self, routes: Sequence[IpNetwork]) -> None:
        """Install the routes that lead through the interface."""

    @abstractmethod
    def configure_dns(self, dns_servers: Sequence[IpAddress]) -> None:
        """Point the resolver at the given DNS servers."""

    @abstractmethod
    def cleanup_routes(self, routes: Sequence[IpNetwork]) -> None:
        """Undo the route configuration."""

    @abstractmethod
    def cleanup_dns(self, dns_servers: Sequence[IpAddress]) -> None:
        """Undo the DNS configuration."""

    @abstractmethod
    async def read_packet(self) -> Packet:
        """Read one packet from the interface."""

    async def read_packets(self) -> list[Packet]:
        """Read a batch of packets from the interface."""
        return [await self.read_packet()]

    @abstractmethod
    async def write_packet(self, packet: Packet) -> None:
        """Write one packet to the interface."""

    async def write_packets(self, packets: Iterable[Packet]) -> None:
        """Write packets to the interface in order."""
        for packet in packets:
            await self.write_packet(packet)


IoFactory = Callable[
    [
        IpNetwork,
        int,
        "IpAddress | None",
        "Sequence[IpNetwork] | None",
        "Sequence[IpAddress] | None",
    ],
    InterfaceIO,
]


class Interface:
    """A tunnel interface that remembers and undoes its runtime configuration."""

    def __init__(
        self,
        io_factory: IoFactory,
        interface_address: IpNetwork,
        mtu: int,
        tunnel_gateway: IpAddress | None = None,
        routes: Iterable[IpNetwork] | None = None,
        dns_servers: Iterable[IpAddress] | None = None,
    ) -> None:
        self._routes = tuple(routes) if routes is not None else None
        self._dns_servers = tuple(dns_servers) if dns_servers is not None else None
        self._io = io_factory(
            interface_address, mtu, tunnel_gateway, self._routes, self._dns_servers
        )
        self._closed = False

    @property
    def io(self) -> InterfaceIO:
        return self._io

    @property
    def mtu(self) -> int:
        return self._io.mtu

    @property
    def name(self) -> str | None:
        return self._io.name

    def configure(self) -> None:
        """Apply the routes and DNS servers given at creation, if any."""
        if self._routes:
            self._io.configure_routes(self._routes)
        if self._dns_servers:
            self._io.configure_dns(self._dns_servers)

    async def read_packet(self) -> Packet:
        return await self._io.read_packet()

    async def read_packets(self) -> list[Packet]:
        return await self._io.read_packets()

    async def write_packet(self, packet: Packet) -> None:
        await self._io.write_packet(packet)

    async def write_packets(self, packets: Iterable[Packet]) -> None:
        await self._io.write_packets(list(packets))

    def close(self) -> None:
        """Undo the runtime configuration; failures are logged, not raised."""
        if self._closed:
            return
        self._closed = True

        if self._routes is not None:
            try:
                self._io.cleanup_routes(self._routes)
            except Exception as exc:
                log.error("Failed to cleanup TUN interface: %s", exc)

        if self._dns_servers is not None:
            try:
                self._io.cleanup_dns(self._dns_servers)
            except Exception as exc:
                log.error("Failed to cleanup DNS servers: %s", exc)

    def __enter__(self) -> Interface:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()