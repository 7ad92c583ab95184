"""VPN server: address pool, client connections and the tunnel."""