"""A client connection on the server: authentication and datagram relaying."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from quincy.auth.server_auth import AuthServer
from quincy.auth.stream import Connection
from quincy.config import IpNetwork
from quincy.network.packet import Packet
from quincy.utils.tasks import abort_all

log = logging.getLogger(__name__)


class UnauthenticatedError(RuntimeError):
    """Raised when a connection is used before it has been authenticated."""


class QuicConnection(Connection, Protocol):
    """The parts of a QUIC connection the VPN relies on."""

    def send_datagram(self, data: bytes) -> None: ...

    async def read_datagram(self) -> bytes: ...

    def close(self, error_code: int, reason: bytes) -> None: ...


def _remote_ip(connection: QuicConnection) -> str:
    return str(connection.remote_address[0])


class QuincyConnection:
    """A client connection that relays datagrams once authenticated."""

    def __init__(
        self, connection: QuicConnection, ingress_queue: asyncio.Queue[Packet]
    ) -> None:
        self._connection = connection
        self._ingress_queue = ingress_queue
        self._username: str | None = None
        self._client_address: IpNetwork | None = None

    @property
    def connection(self) -> QuicConnection:
        return self._connection

    async def authenticate(self, auth_server: AuthServer) -> QuincyConnection:
        """Authenticate the client and return this connection."""
        username, client_address = await auth_server.handle_authentication(self._connection)
        log.info(
            "Connection established: user = %s, client address = %s, remote address = %s",
            username,
            client_address.ip,
            _remote_ip(self._connection),
        )
        self._username = username
        self._client_address = client_address
        return self

    async def run(
        self, egress_queue: asyncio.Queue[bytes]
    ) -> tuple[QuincyConnection, BaseException]:
        """Relay datagrams until one direction fails and return the error."""
        if self._username is None:
            return self, UnauthenticatedError(
                f"Client '{_remote_ip(self._connection)}' is not authenticated"
            )

        tasks = [
            asyncio.create_task(self._process_outgoing_data(egress_queue)),
            asyncio.create_task(self._process_incoming_data()),
        ]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await abort_all(tasks)

        finished = next(iter(done))
        error = None if finished.cancelled() else finished.exception()
        if error is None:
            error = RuntimeError("connection task stopped unexpectedly")
        return self, error

    async def _process_outgoing_data(self, egress_queue: asyncio.Queue[bytes]) -> None:
        while True:
            data = await egress_queue.get()
            self._connection.send_datagram(data)

    async def _process_incoming_data(self) -> None:
        while True:
            packet = Packet(await self._connection.read_datagram())
            await self._ingress_queue.put(packet)

    def username(self) -> str:
        """Return the authenticated user name."""
        if self._username is None:
            raise UnauthenticatedError("Connection is unauthenticated")
        return self._username

    def client_address(self) -> IpNetwork:
        """Return the tunnel address assigned to the client."""
        if self._client_address is None:
            raise UnauthenticatedError("Connection is unauthenticated")
        return self._client_address