"""Packets, the tunnel interface, routes and DNS configuration."""