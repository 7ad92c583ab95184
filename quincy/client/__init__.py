"""VPN client: session start-up and packet relaying."""