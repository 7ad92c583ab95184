"""Authentication against a file of users and their Argon2 password hashes."""

from __future__ import annotations

import asyncio
import base64
import binascii
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidKey, UnsupportedAlgorithm
from cryptography.hazmat.primitives.kdf.argon2 import Argon2id

from quincy.auth.base import AuthError, ClientAuthenticator, ServerAuthenticator
from quincy.config import ClientAuthenticationConfig, IpNetwork, ServerAuthenticationConfig
from quincy.server.address_pool import AddressPool

_ALGORITHM = "argon2id"
_VERSION = 0x13
_MEMORY_COST = 19456
_ITERATIONS = 2
_LANES = 1
_OUTPUT_LENGTH = 32
_SALT_LENGTH = 16


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    try:
        return base64.b64decode(text + "=" * (-len(text) % 4), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"invalid base64 value {text!r}") from exc


def _int_param(params: Mapping[str, str], key: str, default: int) -> int:
    raw = params.get(key)
    if raw is None:
        return default
    if not raw.isdigit():
        raise ValueError(f"invalid value for parameter '{key}': {raw!r}")
    return int(raw)


@dataclass(frozen=True)
class _PasswordHash:
    algorithm: str
    version: int
    memory_cost: int
    iterations: int
    lanes: int
    associated_data: bytes | None
    salt: bytes
    digest: bytes

    @classmethod
    def parse(cls, text: str) -> _PasswordHash:
        parts = text.split("$")
        if len(parts) < 2 or parts[0] != "" or not parts[1]:
            raise ValueError("password hash string invalid")
        algorithm, *rest = parts[1:]

        version = _VERSION
        if rest and rest[0].startswith("v="):
            raw_version = rest.pop(0)[2:]
            if not raw_version.isdigit():
                raise ValueError(f"invalid version {raw_version!r}")
            version = int(raw_version)

        params: dict[str, str] = {}
        if rest and "=" in rest[0]:
            for item in rest.pop(0).split(","):
                key, sep, value = item.partition("=")
                if not sep or not key:
                    raise ValueError(f"invalid parameter {item!r}")
                params[key] = value

        if len(rest) != 2:
            raise ValueError("password hash must contain a salt and a hash")

        data = params.get("data")
        return cls(
            algorithm=algorithm,
            version=version,
            memory_cost=_int_param(params, "m", _MEMORY_COST),
            iterations=_int_param(params, "t", _ITERATIONS),
            lanes=_int_param(params, "p", _LANES),
            associated_data=_b64decode(data) if data is not None else None,
            salt=_b64decode(rest[0]),
            digest=_b64decode(rest[1]),
        )

    def verify(self, password: str) -> None:
        if self.algorithm != _ALGORITHM:
            raise ValueError(f"unsupported algorithm '{self.algorithm}'")
        if self.version != _VERSION:
            raise ValueError(f"unsupported version {self.version}")
        try:
            kdf = Argon2id(
                salt=self.salt,
                length=len(self.digest),
                iterations=self.iterations,
                lanes=self.lanes,
                memory_cost=self.memory_cost,
                ad=self.associated_data,
            )
            kdf.verify(password.encode("utf-8"), self.digest)
        except InvalidKey as exc:
            raise ValueError("invalid password") from exc
        except UnsupportedAlgorithm as exc:
            raise ValueError(f"unsupported algorithm: {exc}") from exc


def hash_password(password: str) -> str:
    """Return an Argon2id hash of the password in PHC string format."""
    salt = os.urandom(_SALT_LENGTH)
    digest = Argon2id(
        salt=salt,
        length=_OUTPUT_LENGTH,
        iterations=_ITERATIONS,
        lanes=_LANES,
        memory_cost=_MEMORY_COST,
    ).derive(password.encode("utf-8"))
    return (
        f"${_ALGORITHM}$v={_VERSION}$m={_MEMORY_COST},t={_ITERATIONS},p={_LANES}"
        f"${_b64encode(salt)}${_b64encode(digest)}"
    )


@dataclass(frozen=True)
class User:
    """A user name with the hash of the user's password."""

    username: str
    password_hash: str = field(repr=False)


def parse_user(user_string: str) -> User:
    """Parse a `username:password_hash` line of a users file."""
    name, *rest = user_string.split(":")
    if not rest:
        raise AuthError(f"Failed to parse password hash from string: {user_string}")
    return User(name, rest[0])


class UserDatabase:
    """The users known to the server."""

    def __init__(self, users: Mapping[str, User]) -> None:
        self._users = dict(users)

    def authenticate(self, username: str, password: str) -> User:
        """Check the password of a user and return that user."""
        user = self._users.get(username)
        if user is None:
            raise AuthError(f"Unknown user: {username}")
        try:
            password_hash = _PasswordHash.parse(user.password_hash)
        except ValueError as exc:
            raise AuthError(
                f"Could not parse user password hash for user '{username}': {exc}"
            ) from exc
        try:
            password_hash.verify(password)
        except ValueError as exc:
            raise AuthError(f"Failed to verify password for user {username}: {exc}") from exc
        return user


@dataclass(frozen=True)
class UsersFilePayload:
    """Credentials sent by the client."""

    username: str
    password: str = field(repr=False)

    def to_dict(self) -> dict[str, str]:
        return {"username": self.username, "password": self.password}

    @classmethod
    def from_dict(cls, value: Any) -> UsersFilePayload:
        if not isinstance(value, Mapping):
            raise AuthError("failed to parse UsersFilePayload: expected an object")
        values = {}
        for key in ("username", "password"):
            if key not in value:
                raise AuthError(f"failed to parse UsersFilePayload: missing field `{key}`")
            if not isinstance(value[key], str):
                raise AuthError(f"failed to parse UsersFilePayload: `{key}` must be a string")
            values[key] = value[key]
        return cls(**values)


class UsersFileServerAuthenticator(ServerAuthenticator):
    """Authenticates clients against the users file."""

    def __init__(self, config: ServerAuthenticationConfig) -> None:
        try:
            users = load_users_file(config.users_file)
        except (OSError, UnicodeDecodeError, AuthError) as exc:
            raise AuthError(f"failed to load users file '{config.users_file}': {exc}") from exc
        self._database = UserDatabase(users)

    async def authenticate_user(
        self, address_pool: AddressPool, authentication_payload: Any
    ) -> tuple[str, IpNetwork]:
        payload = UsersFilePayload.from_dict(authentication_payload)
        await asyncio.to_thread(self._database.authenticate, payload.username, payload.password)
        address = address_pool.next_available_address()
        if address is None:
            raise AuthError("no available address")
        return payload.username, address


class UsersFileClientAuthenticator(ClientAuthenticator):
    """Sends the configured user name and password."""

    def __init__(self, config: ClientAuthenticationConfig) -> None:
        self._payload = UsersFilePayload(username=config.username, password=config.password)

    async def generate_payload(self) -> dict[str, str]:
        return self._payload.to_dict()


def load_users_file(users_file: str | os.PathLike[str]) -> dict[str, User]:
    """Read a users file into a mapping of user name to user."""
    users: dict[str, User] = {}
    with Path(users_file).open(encoding="utf-8") as handle:
        for line in handle:
            user = parse_user(line.rstrip("\n"))
            users[user.username] = user
    return users


def save_users_file(users_file: str | os.PathLike[str], users: Mapping[str, User]) -> None:
    """Write the users and their password hashes to a users file."""
    path = Path(users_file)
    path.unlink(missing_ok=True)
    with path.open("w", encoding="utf-8", newline="\n") as handle:
        handle.writelines(f"{name}:{user.password_hash}\n" for name, user in users.items())