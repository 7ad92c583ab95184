"""Server side of the authentication exchange."""

from __future__ import annotations

import asyncio
import ipaddress
from datetime import timedelta

from quincy.auth.base import AuthError, ServerAuthenticator, timeout_seconds
from quincy.auth.stream import (
    Authenticate,
    Authenticated,
    AuthStreamMode,
    Connection,
    open_auth_stream,
)
from quincy.auth.users_file import UsersFileServerAuthenticator
from quincy.config import AuthType, IpNetwork, ServerAuthenticationConfig
from quincy.server.address_pool import AddressPool


class AuthServer:
    """Authenticates connecting clients and assigns their tunnel addresses."""

    def __init__(
        self,
        config: ServerAuthenticationConfig,
        server_address: IpNetwork | str,
        address_pool: AddressPool,
        auth_timeout: timedelta | float,
    ) -> None:
        match config.auth_type:
            case AuthType.USERS_FILE:
                authenticator: ServerAuthenticator = UsersFileServerAuthenticator(config)
            case other:
                raise AuthError(f"unsupported authentication type: {other!r}")
        self._authenticator = authenticator
        self._server_address = ipaddress.ip_interface(str(server_address))
        self._address_pool = address_pool
        self._auth_timeout = auth_timeout

    async def handle_authentication(self, connection: Connection) -> tuple[str, IpNetwork]:
        """Authenticate a client and return its user name and tunnel address."""
        stream = await open_auth_stream(connection, AuthStreamMode.SERVER, self._auth_timeout)
        try:
            message = await asyncio.wait_for(
                stream.recv_message(), timeout_seconds(self._auth_timeout)
            )
        except TimeoutError as exc:
            raise AuthError("authentication timed out") from exc

        match message:
            case Authenticate(payload=payload):
                username, client_address = await self._authenticator.authenticate_user(
                    self._address_pool, payload
                )
                await stream.send_message(
                    Authenticated(
                        client_address=client_address, server_address=self._server_address
                    )
                )
            case _:
                raise AuthError("authentication failed")

        stream.close()
        return username, client_address