"""IP packets carried through the tunnel."""

from __future__ import annotations

from dataclasses import dataclass
from ipaddress import IPv4Address, IPv6Address

_IPV4_HEADER_LEN = 20
_IPV6_HEADER_LEN = 40


class PacketError(ValueError):
    """Raised when a packet's header cannot be interpreted."""


@dataclass(frozen=True, slots=True)
class Packet:
    """A raw network packet with helpers to read its IP header."""

    data: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", bytes(self.data))

    def __len__(self) -> int:
        return len(self.data)

    def __bytes__(self) -> bytes:
        return self.data

    def destination(self) -> IPv4Address | IPv6Address:
        """Return the destination address from the IPv4 or IPv6 header."""
        if not self.data:
            raise PacketError("Packet is empty")

        version = self.data[0] >> 4
        if version == 4:
            if len(self.data) < _IPV4_HEADER_LEN:
                raise PacketError("Packet is too short for IPv4 header")
            return IPv4Address(self.data[16:20])
        if version == 6:
            if len(self.data) < _IPV6_HEADER_LEN:
                raise PacketError("Packet is too short for IPv6 header")
            return IPv6Address(self.data[24:40])
        raise PacketError(f"Unsupported IP version: {version}")