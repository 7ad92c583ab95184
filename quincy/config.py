"""Server and client configuration loaded from TOML files and the environment."""

from __future__ import annotations

import copy
import ipaddress
import os
import tomllib
from collections.abc import Callable, Mapping
from dataclasses import MISSING, dataclass, field, fields
from datetime import timedelta
from enum import Enum
from ipaddress import IPv4Address, IPv4Interface, IPv6Address, IPv6Interface
from pathlib import Path
from typing import Any

from quincy.constants import QUIC_MTU_OVERHEAD

IpAddress = IPv4Address | IPv6Address
IpNetwork = IPv4Interface | IPv6Interface

DEFAULT_ENV_PREFIX = "QUINCY_"

_U16_MAX = 0xFFFF
_U32_MAX = 0xFFFF_FFFF
_U64_MAX = 0xFFFF_FFFF_FFFF_FFFF

_CIPHER_SUITES = ("TLS_AES_256_GCM_SHA384", "TLS_CHACHA20_POLY1305_SHA256")
_STANDARD_KX_GROUPS = ("X25519", "secp256r1", "secp384r1")

_ABSENT = object()


class ConfigError(ValueError):
    """Raised when a configuration cannot be loaded or is invalid."""


class AuthType(Enum):
    """Kind of authenticator used by client and server."""

    USERS_FILE = "UsersFile"


class KeyExchange(Enum):
    """Key exchange algorithms offered during the TLS handshake."""

    STANDARD = "Standard"
    HYBRID = "Hybrid"
    POST_QUANTUM = "PostQuantum"


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"


@dataclass
class ConnectionConfig:
    """QUIC connection configuration."""

    mtu: int = 1400
    connection_timeout: timedelta = timedelta(seconds=30)
    keep_alive_interval: timedelta = timedelta(seconds=25)
    send_buffer_size: int = 2097152
    recv_buffer_size: int = 2097152

    def mtu_with_overhead(self) -> int:
        """Return the MTU including the maximum QUIC header overhead."""
        return self.mtu + QUIC_MTU_OVERHEAD


@dataclass
class CryptoConfig:
    """Cryptography configuration."""

    key_exchange: KeyExchange = KeyExchange.HYBRID

    def cipher_suites(self) -> tuple[str, ...]:
        """Return the TLS 1.3 cipher suites that may be negotiated."""
        return _CIPHER_SUITES

    def key_exchange_groups(self) -> tuple[str, ...]:
        """Return the key exchange groups for the configured algorithm."""
        match self.key_exchange:
            case KeyExchange.STANDARD:
                return _STANDARD_KX_GROUPS
            case KeyExchange.HYBRID:
                return ("X25519MLKEM768",)
            case KeyExchange.POST_QUANTUM:
                return ("MLKEM768",)
        raise ConfigError(f"unknown key exchange: {self.key_exchange!r}")


@dataclass
class NetworkConfig:
    """Routes and DNS servers pushed through the tunnel."""

    routes: list[IpNetwork] = field(default_factory=list)
    dns_servers: list[IpAddress] = field(default_factory=list)


@dataclass(kw_only=True)
class ServerAuthenticationConfig:
    """Server-side authentication configuration."""

    users_file: Path
    auth_type: AuthType = AuthType.USERS_FILE


@dataclass(kw_only=True)
class ClientAuthenticationConfig:
    """Client-side authentication configuration."""

    username: str
    password: str = field(repr=False)
    trusted_certificates: list[Path]
    auth_type: AuthType = AuthType.USERS_FILE


@dataclass(kw_only=True)
class ServerConfig:
    """Server configuration."""

    name: str
    certificate_file: Path
    certificate_key_file: Path
    tunnel_network: IpNetwork
    authentication: ServerAuthenticationConfig
    log: LogConfig
    bind_address: IpAddress = IPv4Address("0.0.0.0")
    bind_port: int = 55555
    reuse_socket: bool = False
    isolate_clients: bool = True
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    crypto: CryptoConfig = field(default_factory=CryptoConfig)


@dataclass(kw_only=True)
class ClientConfig:
    """Client configuration."""

    connection_string: str
    authentication: ClientAuthenticationConfig
    log: LogConfig
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    crypto: CryptoConfig = field(default_factory=CryptoConfig)


Converter = Callable[[Any, str], Any]


def _string(value: Any, name: str) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    raise ConfigError(f"`{name}` must be a string")


def _boolean(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigError(f"`{name}` must be a boolean")


def _unsigned(limit: int) -> Converter:
    def convert(value: Any, name: str) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"`{name}` must be an integer")
        if not 0 <= value <= limit:
            raise ConfigError(f"`{name}` must be between 0 and {limit}")
        return value

    return convert


_u16 = _unsigned(_U16_MAX)
_u32 = _unsigned(_U32_MAX)
_u64 = _unsigned(_U64_MAX)


def _path(value: Any, name: str) -> Path:
    if not isinstance(value, str):
        raise ConfigError(f"`{name}` must be a path string")
    return Path(value)


def _ip_address(value: Any, name: str) -> IpAddress:
    if not isinstance(value, str):
        raise ConfigError(f"`{name}` must be an IP address string")
    try:
        return ipaddress.ip_address(value)
    except ValueError as exc:
        raise ConfigError(f"`{name}` is not a valid IP address: {value!r}") from exc


def _ip_network(value: Any, name: str) -> IpNetwork:
    if not isinstance(value, str):
        raise ConfigError(f"`{name}` must be a network string")
    _, sep, prefix = value.partition("/")
    if not sep or not prefix.isdigit():
        raise ConfigError(f"`{name}` must be in the form address/prefix: {value!r}")
    try:
        return ipaddress.ip_interface(value)
    except ValueError as exc:
        raise ConfigError(f"`{name}` is not a valid network: {value!r}") from exc


def _duration(value: Any, name: str) -> timedelta:
    if isinstance(value, Mapping):
        table = _Table(value, name)
        secs = table.get("secs", _u64)
        nanos = table.get("nanos", _u32)
    elif isinstance(value, list) and len(value) == 2:
        secs = _u64(value[0], f"{name}[0]")
        nanos = _u32(value[1], f"{name}[1]")
    else:
        raise ConfigError(f"`{name}` must be a duration table with `secs` and `nanos`")
    try:
        return timedelta(seconds=secs, microseconds=nanos / 1000)
    except OverflowError as exc:
        raise ConfigError(f"`{name}` is too large") from exc


def _list(item: Converter) -> Converter:
    def convert(value: Any, name: str) -> list[Any]:
        if not isinstance(value, list):
            raise ConfigError(f"`{name}` must be an array")
        return [item(element, f"{name}[{position}]") for position, element in enumerate(value)]

    return convert


def _enum(enum_type: type[Enum]) -> Converter:
    def convert(value: Any, name: str) -> Enum:
        for member in enum_type:
            if member.value == value:
                return member
        expected = ", ".join(f"`{member.value}`" for member in enum_type)
        raise ConfigError(f"unknown variant {value!r} for `{name}`, expected one of {expected}")

    return convert


class _Table:
    """A configuration table with field lookup that reports full key paths."""

    def __init__(self, value: Any, name: str) -> None:
        if not isinstance(value, Mapping):
            raise ConfigError(f"`{name}` must be a table" if name else "configuration must be a table")
        self._data = value
        self._name = name

    def get(self, key: str, convert: Converter, default: Any = _ABSENT) -> Any:
        name = f"{self._name}.{key}" if self._name else key
        if key not in self._data:
            if default is _ABSENT:
                raise ConfigError(f"missing field `{name}`")
            return copy.deepcopy(default)
        return convert(self._data[key], name)


def _field_default(cls: type, attribute: str) -> Any:
    for item in fields(cls):
        if item.name == attribute:
            if item.default is not MISSING:
                return item.default
            if item.default_factory is not MISSING:
                return item.default_factory()
            return _ABSENT
    raise AttributeError(f"{cls.__name__} has no field {attribute!r}")


def _section(
    cls: type, converters: Mapping[str, Converter], required: frozenset[str] = frozenset()
) -> Converter:
    def convert(value: Any, name: str) -> Any:
        table = _Table(value, name)
        values = {
            key: table.get(key, conv, _ABSENT if key in required else _field_default(cls, key))
            for key, conv in converters.items()
        }
        return cls(**values)

    return convert


_log_config = _section(LogConfig, {"level": _string})

_connection_config = _section(
    ConnectionConfig,
    {
        "mtu": _u16,
        "connection_timeout": _duration,
        "keep_alive_interval": _duration,
        "send_buffer_size": _u64,
        "recv_buffer_size": _u64,
    },
)

_crypto_config = _section(
    CryptoConfig, {"key_exchange": _enum(KeyExchange)}, required=frozenset({"key_exchange"})
)

_network_config = _section(
    NetworkConfig, {"routes": _list(_ip_network), "dns_servers": _list(_ip_address)}
)

_server_authentication_config = _section(
    ServerAuthenticationConfig, {"auth_type": _enum(AuthType), "users_file": _path}
)

_client_authentication_config = _section(
    ClientAuthenticationConfig,
    {
        "auth_type": _enum(AuthType),
        "username": _string,
        "password": _string,
        "trusted_certificates": _list(_path),
    },
)

_server_config = _section(
    ServerConfig,
    {
        "name": _string,
        "certificate_file": _path,
        "certificate_key_file": _path,
        "bind_address": _ip_address,
        "bind_port": _u16,
        "reuse_socket": _boolean,
        "tunnel_network": _ip_network,
        "isolate_clients": _boolean,
        "authentication": _server_authentication_config,
        "connection": _connection_config,
        "crypto": _crypto_config,
        "log": _log_config,
    },
)

_client_config = _section(
    ClientConfig,
    {
        "connection_string": _string,
        "authentication": _client_authentication_config,
        "connection": _connection_config,
        "network": _network_config,
        "crypto": _crypto_config,
        "log": _log_config,
    },
)


def _parse_env_value(raw: str) -> Any:
    text = raw.strip()
    if text.startswith("[") and text.endswith("]"):
        inner = text[1:-1].strip()
        return [_parse_env_value(part) for part in inner.split(",")] if inner else []
    try:
        value = tomllib.loads(f"v = {text}")["v"]
    except tomllib.TOMLDecodeError:
        return text
    if isinstance(value, (bool, int, float, str, dict)):
        return value
    return text


def _environment_overrides(prefix: str, environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    folded_prefix = prefix.lower()
    for key, raw in environ.items():
        if not key.lower().startswith(folded_prefix):
            continue
        parts = key[len(prefix):].lower().split("__")
        if not all(parts):
            continue
        node = overrides
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        node[parts[-1]] = _parse_env_value(raw)
    return overrides


def _merge(base: dict[str, Any], override: Mapping[str, Any]) -> None:
    for key, value in override.items():
        current = base.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            _merge(current, value)
        else:
            base[key] = value


def _load(path: str | os.PathLike[str], env_prefix: str, build: Converter) -> Any:
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"failed to load configuration file '{config_path}'")
    try:
        with config_path.open("rb") as handle:
            data = tomllib.load(handle)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"failed to parse configuration file '{config_path}': {exc}") from exc
    _merge(data, _environment_overrides(env_prefix, os.environ))
    return build(data, "")


def load_server_config(
    path: str | os.PathLike[str], env_prefix: str = DEFAULT_ENV_PREFIX
) -> ServerConfig:
    """Load a server configuration from a TOML file with environment overrides."""
    return _load(path, env_prefix, _server_config)


def load_client_config(
    path: str | os.PathLike[str], env_prefix: str = DEFAULT_ENV_PREFIX
) -> ClientConfig:
    """Load a client configuration from a TOML file with environment overrides."""
    return _load(path, env_prefix, _client_config)