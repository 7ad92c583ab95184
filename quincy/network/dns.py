"""Configuration of the system DNS servers while the tunnel is up."""

from __future__ import annotations

import ipaddress
import sys
import threading
from collections.abc import Iterable, Sequence
from ipaddress import IPv4Address, IPv6Address

from quincy.utils.command import run_command

_RESOLVCONF_COMMAND = "resolvconf"
_NETWORK_SETUP_COMMAND = "networksetup"
_DNS_GET_ARG = "-getdnsservers"
_DNS_SET_ARG = "-setdnsservers"
_SERVICES_GET_ARG = "-listallnetworkservices"

_service_dns_servers: dict[str, list[IPv4Address | IPv6Address]] = {}
_service_lock = threading.Lock()


class DnsError(RuntimeError):
    """Raised when the DNS configuration cannot be changed."""


def resolvconf_input(dns_servers: Iterable[object]) -> str:
    """Return the resolv.conf lines naming the given DNS servers."""
    return "\n".join(f"nameserver {server}" for server in dns_servers)


def parse_service_names(output: str) -> list[str]:
    """Return the service names from `networksetup -listallnetworkservices` output."""
    # The first line explains that an asterisk marks a disabled service.
    return [line.strip() for line in output.splitlines()[1:]]


def _parse_dns_servers(output: str) -> list[IPv4Address | IPv6Address]:
    servers = []
    for line in output.splitlines():
        try:
            servers.append(ipaddress.ip_address(line))
        except ValueError:
            continue
    return servers


def _run(program: str, arguments: Sequence[str], stdin: bytes | None = None) -> tuple[int, str, str]:
    process = run_command(program, arguments)
    stdout, stderr = process.communicate(stdin)
    return (
        process.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


def _is_resolvconf_platform() -> bool:
    return sys.platform.startswith(("linux", "freebsd"))


def _add_resolvconf(dns_servers: Sequence[object], interface_name: str) -> None:
    code, _, stderr = _run(
        _RESOLVCONF_COMMAND,
        ["-a", interface_name, "-x"],
        resolvconf_input(dns_servers).encode(),
    )
    if code != 0:
        raise DnsError(stderr.strip())


def _get_service_names() -> list[str]:
    code, stdout, _ = _run(_NETWORK_SETUP_COMMAND, [_SERVICES_GET_ARG])
    if code != 0:
        raise DnsError(f"failed to get network services: {stdout}")
    return parse_service_names(stdout)


def _add_networksetup(dns_servers: Sequence[object]) -> None:
    server_args = [str(server) for server in dns_servers]

    for service_name in _get_service_names():
        code, stdout, _ = _run(_NETWORK_SETUP_COMMAND, [_DNS_GET_ARG, service_name])
        if code != 0:
            raise DnsError(f"Failed to set DNS configuration: {stdout}")

        with _service_lock:
            _service_dns_servers[service_name] = _parse_dns_servers(stdout)

        code, stdout, _ = _run(_NETWORK_SETUP_COMMAND, [_DNS_SET_ARG, service_name, *server_args])
        if code != 0:
            raise DnsError(f"Failed to set DNS configuration: {stdout}")


def _delete_networksetup() -> None:
    with _service_lock:
        saved = list(_service_dns_servers.items())

    for service_name, original in saved:
        # Services configured by DHCP report no servers and are reset with "Empty".
        server_args = [str(server) for server in original] or ["Empty"]
        code, stdout, _ = _run(_NETWORK_SETUP_COMMAND, [_DNS_SET_ARG, service_name, *server_args])
        if code != 0:
            raise DnsError(f"Failed to clean up DNS configuration: {stdout}")
        with _service_lock:
            _service_dns_servers.pop(service_name, None)


def add_dns_servers(dns_servers: Iterable[object], interface_name: str) -> None:
    """Point the system resolver at the given DNS servers."""
    servers = list(dns_servers)
    if _is_resolvconf_platform():
        _add_resolvconf(servers, interface_name)
    elif sys.platform == "darwin":
        _add_networksetup(servers)
    else:
        raise DnsError(f"DNS configuration is not supported on {sys.platform}")


def delete_dns_servers() -> None:
    """Undo the changes made by add_dns_servers where the system keeps them."""
    if sys.platform == "darwin":
        _delete_networksetup()
    # Elsewhere the settings disappear together with the interface.