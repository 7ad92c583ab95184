"""Routing of networks through the tunnel gateway."""

from __future__ import annotations

import ipaddress
import sys
from collections.abc import Iterable

from quincy.utils.command import run_command

_POSIX_TEMPLATES = {
    "linux": "route add -net {network} netmask {netmask} gw {gateway}",
    "darwin": "route -n add -net {network} -netmask {netmask} {gateway}",
    "freebsd": "route add -net {network} -netmask {netmask} {gateway}",
}
_NETSH_TEMPLATE = (
    'netsh interface ip add route {network} "{interface_name}" {gateway} store=active'
)


class RouteError(RuntimeError):
    """Raised when a route cannot be added."""


def _platform_key(platform: str) -> str:
    for prefix in ("linux", "freebsd"):
        if platform.startswith(prefix):
            return prefix
    if platform in ("darwin", "win32"):
        return platform
    raise RouteError(f"adding routes is not supported on {platform}")


def build_route_command(
    network: object, gateway: object, interface_name: str, platform: str | None = None
) -> list[str]:
    """Return the argument vector that adds a route on the given platform."""
    net = ipaddress.ip_interface(str(network))
    gw = ipaddress.ip_address(str(gateway))
    key = _platform_key(platform or sys.platform)

    if key == "win32":
        command = (
            _NETSH_TEMPLATE.replace("{network}", str(net))
            .replace("{interface_name}", interface_name)
            .replace("{gateway}", str(gw))
        )
    else:
        command = (
            _POSIX_TEMPLATES[key]
            .replace("{network}", str(net.ip))
            .replace("{netmask}", str(net.netmask))
            .replace("{gateway}", str(gw))
        )
    return command.split(" ")


def _add_route(argv: list[str]) -> None:
    process = run_command(argv[0], argv[1:])
    try:
        _, stderr = process.communicate()
    except OSError as exc:
        raise RouteError("failed to create child process") from exc
    if process.returncode != 0:
        message = (stderr or b"").decode("utf-8", errors="replace")
        raise RouteError(f"failed to add route: {message}")


def add_routes(networks: Iterable[object], gateway: object, interface_name: str) -> None:
    """Route each network through the gateway."""
    for network in networks:
        _add_route(build_route_command(network, gateway, interface_name, sys.platform))