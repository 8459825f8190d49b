"""IP What: IPv4/IPv6 reachability monitor."""
