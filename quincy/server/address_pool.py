"""Allocation of client addresses from the tunnel network."""

from __future__ import annotations

import ipaddress
import threading
from ipaddress import IPv4Address, IPv4Interface, IPv6Address, IPv6Interface


class AddressPool:
    """A pool of addresses that can be requested and released."""

    def __init__(self, network: IPv4Interface | IPv6Interface | str) -> None:
        self._network = ipaddress.ip_interface(str(network))
        self._used: set[IPv4Address | IPv6Address] = set()
        self._lock = threading.Lock()
        self.reset()

    @property
    def network(self) -> IPv4Interface | IPv6Interface:
        return self._network

    def next_available_address(self) -> IPv4Interface | IPv6Interface | None:
        """Reserve and return the lowest free address, or None if none is left."""
        net = self._network.network
        address_type = type(self._network.ip)
        first = int(net.network_address)
        last = int(net.broadcast_address)
        with self._lock:
            for value in range(first, last + 1):
                address = address_type(value)
                if address not in self._used:
                    self._used.add(address)
                    return ipaddress.ip_interface(f"{address}/{net.prefixlen}")
        return None

    def release_address(self, address: IPv4Address | IPv6Address | str) -> None:
        """Return an address to the pool."""
        with self._lock:
            self._used.discard(ipaddress.ip_address(str(address)))

    def reset(self) -> None:
        """Release every address, keeping the reserved ones taken."""
        net = self._network.network
        with self._lock:
            self._used = {net.network_address, self._network.ip, net.broadcast_address}