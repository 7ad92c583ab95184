"""Authentication messages and the stream that carries them."""

from __future__ import annotations

import asyncio
import ipaddress
import json
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Protocol

from quincy.auth.base import AuthError, timeout_seconds
from quincy.config import IpNetwork
from quincy.constants import AUTH_MESSAGE_BUFFER_SIZE


class SendStream(Protocol):
    async def write_all(self, data: bytes) -> None: ...

    def finish(self) -> None: ...


class RecvStream(Protocol):
    async def read(self, size: int) -> bytes: ...


class Connection(Protocol):
    @property
    def remote_address(self) -> tuple[str, int]: ...

    async def open_bi(self) -> tuple[SendStream, RecvStream]: ...

    async def accept_bi(self) -> tuple[SendStream, RecvStream]: ...


@dataclass(frozen=True)
class Authenticate:
    """Credentials sent by the client."""

    payload: Any


@dataclass(frozen=True)
class Authenticated:
    """Successful authentication with the addresses assigned on the tunnel."""

    client_address: IpNetwork
    server_address: IpNetwork


@dataclass(frozen=True)
class Failed:
    """Failed authentication."""


AuthMessage = Authenticate | Authenticated | Failed


class AuthStreamMode(Enum):
    """Which side of the connection opens the authentication stream."""

    CLIENT = "client"
    SERVER = "server"


def encode_message(message: AuthMessage) -> bytes:
    """Serialise an authentication message to JSON bytes."""
    match message:
        case Authenticate(payload=payload):
            document: Any = {"Authenticate": {"payload": payload}}
        case Authenticated(client_address=client, server_address=server):
            document = {
                "Authenticated": {"client_address": str(client), "server_address": str(server)}
            }
        case Failed():
            document = "Failed"
        case _:
            raise TypeError(f"not an authentication message: {message!r}")
    return json.dumps(document, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _parse_network(value: Any, name: str) -> IpNetwork:
    if not isinstance(value, str) or "/" not in value:
        raise ValueError(f"`{name}` must be a network in the form address/prefix")
    _, _, prefix = value.partition("/")
    if not prefix.isdigit():
        raise ValueError(f"`{name}` has an invalid prefix: {value!r}")
    return ipaddress.ip_interface(value)


def _parse_message(document: Any) -> AuthMessage:
    if document == "Failed" or document == {"Failed": None}:
        return Failed()
    if not isinstance(document, dict) or len(document) != 1:
        raise ValueError("expected a single message variant")
    ((variant, body),) = document.items()
    if not isinstance(body, dict):
        raise ValueError(f"invalid body for variant `{variant}`")
    if variant == "Authenticate":
        return Authenticate(payload=body.get("payload"))
    if variant == "Authenticated":
        for key in ("client_address", "server_address"):
            if key not in body:
                raise ValueError(f"missing field `{key}`")
        return Authenticated(
            client_address=_parse_network(body["client_address"], "client_address"),
            server_address=_parse_network(body["server_address"], "server_address"),
        )
    raise ValueError(f"unknown variant `{variant}`")


def decode_message(data: bytes) -> AuthMessage:
    """Parse an authentication message from JSON bytes."""
    try:
        return _parse_message(json.loads(data))
    except (ValueError, UnicodeDecodeError) as exc:
        raise AuthError(f"failed to parse AuthMessage JSON: {exc}") from exc


class AuthStream:
    """A bidirectional stream exchanging authentication messages."""

    def __init__(self, send_stream: SendStream, recv_stream: RecvStream) -> None:
        self._send_stream = send_stream
        self._recv_stream = recv_stream

    async def send_message(self, message: AuthMessage) -> None:
        """Send a message to the other side of the connection."""
        data = encode_message(message)
        try:
            await self._send_stream.write_all(data)
        except Exception as exc:
            raise AuthError(f"failed to send AuthMessage: {exc}") from exc

    async def recv_message(self) -> AuthMessage:
        """Receive a message from the other side of the connection."""
        data = await self._recv_stream.read(AUTH_MESSAGE_BUFFER_SIZE)
        return decode_message(data)

    def close(self) -> None:
        """Finish the sending half of the stream."""
        try:
            self._send_stream.finish()
        except Exception:
            # The stream is being discarded anyway.
            pass


def _remote_ip(connection: Connection) -> str:
    try:
        return str(connection.remote_address[0])
    except Exception:
        return "unknown"


async def open_auth_stream(
    connection: Connection, mode: AuthStreamMode, connection_timeout: timedelta | float
) -> AuthStream:
    """Open (client) or accept (server) the authentication stream of a connection."""
    opener = connection.open_bi if mode is AuthStreamMode.CLIENT else connection.accept_bi
    remote_ip = _remote_ip(connection)
    try:
        send_stream, recv_stream = await asyncio.wait_for(
            opener(), timeout_seconds(connection_timeout)
        )
    except TimeoutError as exc:
        raise AuthError(f"connection timed out ({remote_ip})") from exc
    except Exception as exc:
        raise AuthError(f"failed to open authentication stream ({remote_ip})") from exc
    return AuthStream(send_stream, recv_stream)