"""Protocol and sizing constants shared across the VPN."""

from typing import Final

QUIC_MTU_OVERHEAD: Final[int] = 50
"""Maximum MTU overhead of QUIC, since the QUIC header varies in size."""

AUTH_MESSAGE_BUFFER_SIZE: Final[int] = 1024
"""Buffer size for authentication messages."""

PACKET_BUFFER_SIZE: Final[int] = 4
"""Number of packets handled at once on the TUN interface."""

PACKET_CHANNEL_SIZE: Final[int] = 1024 * 1024
"""Capacity of the queues between the TUN interface and the QUIC tunnels."""

TLS_PROTOCOL_VERSIONS: Final[tuple[str, ...]] = ("TLSv1.3",)
"""Supported TLS protocol versions."""

TLS_ALPN_PROTOCOLS: Final[tuple[bytes, ...]] = (b"quincy",)
"""Supported TLS ALPN protocols."""

TLS_INITIAL_CIPHER_SUITE: Final[str] = "TLS_AES_128_GCM_SHA256"
"""Cipher suite used for QUIC initial packets."""