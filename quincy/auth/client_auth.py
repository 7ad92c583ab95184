"""Client side of the authentication exchange."""

from __future__ import annotations

from datetime import timedelta

from quincy.auth.base import AuthError, ClientAuthenticator
from quincy.auth.stream import (
    Authenticate,
    Authenticated,
    AuthStreamMode,
    Connection,
    open_auth_stream,
)
from quincy.auth.users_file import UsersFileClientAuthenticator
from quincy.config import AuthType, ClientAuthenticationConfig, IpNetwork


class AuthClient:
    """Authenticates the client to the server and obtains its tunnel addresses."""

    def __init__(
        self,
        authentication_config: ClientAuthenticationConfig,
        auth_timeout: timedelta | float,
    ) -> None:
        match authentication_config.auth_type:
            case AuthType.USERS_FILE:
                authenticator: ClientAuthenticator = UsersFileClientAuthenticator(
                    authentication_config
                )
            case other:
                raise AuthError(f"unsupported authentication type: {other!r}")
        self._authenticator = authenticator
        self._auth_timeout = auth_timeout

    async def authenticate(self, connection: Connection) -> tuple[IpNetwork, IpNetwork]:
        """Authenticate and return the client and server tunnel addresses."""
        stream = await open_auth_stream(connection, AuthStreamMode.CLIENT, self._auth_timeout)
        payload = await self._authenticator.generate_payload()
        await stream.send_message(Authenticate(payload=payload))

        match await stream.recv_message():
            case Authenticated(client_address=client_address, server_address=server_address):
                return client_address, server_address
            case _:
                raise AuthError("authentication failed")