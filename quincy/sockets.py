"""Creation of the UDP socket used by QUIC endpoints."""

from __future__ import annotations

import ipaddress
import logging
import socket
import sys

log = logging.getLogger(__name__)

_SO_REUSEPORT_LB = getattr(socket, "SO_REUSEPORT_LB", 0x00010000)


class SocketSetupError(OSError):
    """Raised when the UDP socket cannot be created or configured."""


def _set_option(sock: socket.socket, level: int, option: int, value: int, message: str) -> None:
    try:
        sock.setsockopt(level, option, value)
    except OSError as exc:
        raise SocketSetupError(f"{message}: {exc}") from exc


def bind_socket(
    addr: tuple[str, int],
    send_buffer_size: int,
    recv_buffer_size: int,
    reuse_socket: bool,
) -> socket.socket:
    """Bind a dual-stack-capable UDP socket and size its buffers."""
    host, port = addr[0], addr[1]
    ip = ipaddress.ip_address(host)
    family = socket.AF_INET6 if ip.version == 6 else socket.AF_INET

    try:
        sock = socket.socket(family, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    except OSError as exc:
        raise SocketSetupError(f"failed to create UDP socket: {exc}") from exc

    try:
        if ip.version == 6:
            _set_option(
                sock,
                socket.IPPROTO_IPV6,
                socket.IPV6_V6ONLY,
                0,
                "failed to make UDP socket dual-stack (not IPv6-only)",
            )

        if reuse_socket:
            _set_option(
                sock, socket.SOL_SOCKET, socket.SO_REUSEADDR, 1,
                "failed to set UDP socket SO_REUSEADDR",
            )
            if sys.platform.startswith(("linux", "darwin")) and hasattr(socket, "SO_REUSEPORT"):
                _set_option(
                    sock, socket.SOL_SOCKET, socket.SO_REUSEPORT, 1,
                    "failed to set UDP socket SO_REUSEPORT",
                )
            elif sys.platform.startswith("freebsd"):
                _set_option(
                    sock, socket.SOL_SOCKET, _SO_REUSEPORT_LB, 1,
                    "failed to set UDP socket SO_REUSEPORT_LB",
                )

        try:
            sock.bind((str(ip), port))
        except OSError as exc:
            raise SocketSetupError(f"failed to bind UDP socket: {exc}") from exc

        _set_option(
            sock, socket.SOL_SOCKET, socket.SO_SNDBUF, send_buffer_size,
            f"failed to set UDP socket send buffer size: {send_buffer_size}",
        )
        _set_option(
            sock, socket.SOL_SOCKET, socket.SO_RCVBUF, recv_buffer_size,
            f"failed to set UDP socket recv buffer size: {recv_buffer_size}",
        )

        actual_send = sock.getsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF)
        if actual_send < send_buffer_size:
            log.warning(
                "Unable to set desired send buffer size. Desired: %d, Actual: %d",
                send_buffer_size, actual_send,
            )

        actual_recv = sock.getsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF)
        if actual_recv < recv_buffer_size:
            log.warning(
                "Unable to set desired recv buffer size. Desired: %d, Actual: %d",
                recv_buffer_size, actual_recv,
            )
    except BaseException:
        sock.close()
        raise

    return sock