"""Interfaces shared by the client- and server-side authenticators."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any

from quincy.config import IpNetwork
from quincy.server.address_pool import AddressPool


class AuthError(Exception):
    """Raised when authentication cannot be completed."""


def timeout_seconds(value: timedelta | float) -> float:
    """Return a timeout given as a timedelta or a number of seconds in seconds."""
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class ServerAuthenticator(ABC):
    """Checks the credentials a client presents and assigns it an address."""

    @abstractmethod
    async def authenticate_user(
        self, address_pool: AddressPool, authentication_payload: Any
    ) -> tuple[str, IpNetwork]:
        """Return the user name and the tunnel address given to the client."""


class ClientAuthenticator(ABC):
    """Produces the credentials a client sends to the server."""

    @abstractmethod
    async def generate_payload(self) -> Any:
        """Return the JSON-compatible authentication payload."""