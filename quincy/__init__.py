"""QUIC-based VPN library: configuration, authentication, address pooling and packet relaying."""

__version__ = "0.15.2"