# quincy

The building blocks of a VPN carried over QUIC. A server hands out tunnel
addresses to clients that authenticate against a users file, and IP packets
are relayed between a TUN-like interface and QUIC datagrams.

The package is a library driven from your own asyncio program. The QUIC
connections and the packet interface are supplied by the caller.

## Modules

- `quincy.config` – server and client configuration read from TOML with
  environment overrides: `load_server_config`, `load_client_config`,
  `ServerConfig`, `ClientConfig` and their sections. Invalid input raises
  `ConfigError`.
- `quincy.server.address_pool.AddressPool` – hands out and releases
  addresses from the tunnel network.
- `quincy.server.tunnel.QuincyServer` – authenticates incoming connections
  and relays packets between clients and the interface; `relay_isolated` and
  `relay_unisolated` implement the two client isolation modes.
- `quincy.server.connection.QuincyConnection` – one authenticated client
  connection on the server.
- `quincy.client.session.QuincyClient` – authenticates to the server, creates
  the interface and starts relaying; `resolve_server_address` resolves a
  `host:port` connection string.
- `quincy.client.relayer.ClientRelayer` – relays packets between the client
  interface and the connection until stopped or an error occurs.
- `quincy.network.packet.Packet` – reads the destination address of IPv4 and
  IPv6 packets.
- `quincy.network.interface` – `InterfaceIO`, the abstract packet backend,
  and `Interface`, which applies routes and DNS servers and undoes them on
  `close()` (it is also a context manager).
- `quincy.network.route` and `quincy.network.dns` – add routes and DNS
  servers through the system tools (`route` on Linux, macOS and FreeBSD,
  `netsh` on Windows for routes; `resolvconf` on Linux and FreeBSD,
  `networksetup` on macOS for DNS).
- `quincy.auth.users_file` – the users file (`load_users_file`,
  `save_users_file`, `parse_user`, `hash_password`) and `UserDatabase`.
- `quincy.auth.stream` – the JSON authentication messages (`Authenticate`,
  `Authenticated`, `Failed`) exchanged on the first bidirectional stream.
- `quincy.auth.client_auth.AuthClient` and
  `quincy.auth.server_auth.AuthServer` – the two sides of the exchange.
- `quincy.certificates` – DER bytes of the certificates and the PKCS#8
  private key in PEM files.
- `quincy.sockets.bind_socket` – a dual-stack UDP socket with sized buffers.
- `quincy.utils.logs.configure_logging` – console logging from a filter such
  as `"info"` or `"quincy=debug,warn"`.
- `quincy.utils.tasks.abort_all` and `quincy.utils.command.run_command` –
  task cancellation and starting external programs.

## Configuration

A server configuration file:

```toml
name = "quincy"
certificate_file = "cert/server_cert.pem"
certificate_key_file = "cert/server_key.pem"
bind_address = "0.0.0.0"      # default
bind_port = 55555             # default
reuse_socket = false          # default
tunnel_network = "10.0.0.1/24"
isolate_clients = true        # default

[authentication]
users_file = "users"

[connection]
mtu = 1400                                      # default
connection_timeout = { secs = 30, nanos = 0 }   # default

[crypto]
key_exchange = "Hybrid"       # "Standard", "Hybrid" or "PostQuantum"

[log]
level = "info"
```

A client configuration file:

```toml
connection_string = "vpn.example.com:55555"

[authentication]
username = "test"
password = "password"
trusted_certificates = ["cert/ca_cert.pem"]

[network]
routes = ["10.0.1.0/24"]
dns_servers = ["10.0.1.1"]

[log]
level = "info"
```

Any value can be overridden from the environment using a prefix, with nested
keys separated by a double underscore, for example
`QUINCY_CONNECTION__MTU=1300`.

```python
from pathlib import Path

from quincy.config import load_client_config, load_server_config

server_config = load_server_config(Path("server.toml"), "QUINCY_")
client_config = load_client_config(Path("client.toml"), "QUINCY_")

print(server_config.connection.mtu_with_overhead())   # mtu + 50
print(client_config.crypto.key_exchange_groups())
```

## Users file

The users file holds one `username:password_hash` line per user. Hashes are
Argon2id strings in PHC format produced by `hash_password`:

```python
from quincy.auth.users_file import User, UserDatabase, hash_password, save_users_file

password = "password"
users = {"test": User("test", hash_password(password))}
save_users_file("users", users)

UserDatabase(users).authenticate("test", password)   # raises AuthError on failure
```

## Address pool

```python
from quincy.server.address_pool import AddressPool

pool = AddressPool("10.0.0.1/24")
client_address = pool.next_available_address()   # 10.0.0.2/24; None once exhausted
pool.release_address(client_address.ip)
```

The network address, the server's own address and the broadcast address are
never handed out.

## Running a server or client

Both sides take an *I/O factory* and QUIC connections from the caller.

The I/O factory is called as
`io_factory(interface_address, mtu, tunnel_gateway, routes, dns_servers)` and
returns an `InterfaceIO` implementation.

A connection object provides `remote_address`, `open_bi()` / `accept_bi()`
(returning a send stream with `write_all()` and `finish()` and a receive
stream with `read(size)`), `send_datagram()`, `read_datagram()` and
`close(error_code, reason)`.

```python
server = QuincyServer(server_config)
await server.run(io_factory, connections)   # connections: an async iterable

client = QuincyClient(client_config, io_factory)
await client.start(connection)
await client.wait_for_shutdown()
```

`connections` may yield established connections or awaitables that complete
the handshake and return one.

## What the package does not do

- It has no QUIC or TLS transport of its own. Connections must come from a
  QUIC implementation supplied by the caller, and the certificate, key,
  cipher-suite and key-exchange settings are only loaded and reported, not
  applied to a TLS stack.
- It has no TUN device backend. `InterfaceIO` must be implemented by the
  caller.
- It installs no command-line programs. The server, the client and the
  management of the users file are used from Python code.