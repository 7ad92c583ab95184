"""The VPN client: authenticates to the server and relays packets through the tunnel."""

from __future__ import annotations

import logging
import socket

from quincy.auth.client_auth import AuthClient
from quincy.client.relayer import ClientRelayer
from quincy.config import ClientConfig
from quincy.network.interface import Interface, IoFactory
from quincy.server.connection import QuicConnection

log = logging.getLogger(__name__)

_PORT_MAX = 0xFFFF


class ClientError(RuntimeError):
    """Raised when the client cannot be started or is misconfigured."""


def resolve_server_address(connection_string: str) -> tuple[str, int]:
    """Resolve a `host:port` connection string to the first matching socket address."""
    host, sep, port_text = connection_string.rpartition(":")
    invalid = ClientError(f"Connection string '{connection_string}' is invalid")
    if not sep or not host or not (port_text.isascii() and port_text.isdigit()):
        raise invalid
    port = int(port_text)
    if port > _PORT_MAX:
        raise invalid
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise invalid

    try:
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_DGRAM)
    except (socket.gaierror, UnicodeError) as exc:
        raise ClientError(f"Connection string '{connection_string}' is invalid: {exc}") from exc
    if not infos:
        raise invalid
    sockaddr = infos[0][4]
    return str(sockaddr[0]), int(sockaddr[1])


class QuincyClient:
    """A client that authenticates over a QUIC connection and relays tunnel traffic."""

    def __init__(self, config: ClientConfig, io_factory: IoFactory) -> None:
        self.config = config
        self._io_factory = io_factory
        self._relayer: ClientRelayer | None = None

    @property
    def relayer(self) -> ClientRelayer | None:
        return self._relayer

    async def start(self, connection: QuicConnection) -> None:
        """Authenticate over the connection and start relaying packets."""
        if self._relayer is not None:
            raise ClientError("Client is already started")

        auth_client = AuthClient(
            self.config.authentication, self.config.connection.connection_timeout
        )
        client_address, server_address = await auth_client.authenticate(connection)

        log.info("Successfully authenticated")
        log.info("Received client address: %s", client_address)
        log.info("Received server address: %s", server_address)

        interface = Interface(
            self._io_factory,
            client_address,
            self.config.connection.mtu,
            server_address.ip,
            list(self.config.network.routes),
            list(self.config.network.dns_servers),
        )
        self._relayer = ClientRelayer(interface, connection)

    async def wait_for_shutdown(self) -> None:
        """Wait until relaying stops, raising the error that stopped it."""
        relayer, self._relayer = self._relayer, None
        if relayer is not None:
            await relayer.wait_for_shutdown()