"""Port allocation and connect-URL helpers."""
from __future__ import annotations

import socket
from typing import Optional


def can_bind(host: str, port: int) -> bool:
    """Return True if *port* on *host* is free to listen on right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def find_free_port(host: str = "127.0.0.1") -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


def resolve_port(preferred: Optional[int], host: str = "127.0.0.1", fallback: Optional[int] = None) -> int:
    """Pick a port: *preferred* if bindable, else *fallback*, else an ephemeral one."""
    if preferred and can_bind(host, preferred):
        return preferred
    if fallback and fallback != preferred and can_bind(host, fallback):
        return fallback
    return find_free_port(host)


def resolve_lan_ip() -> Optional[str]:
    # UDP connect sends nothing; it only selects the outbound interface
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("10.255.255.255", 1))
            address = sock.getsockname()[0]
    except OSError:
        return None
    if not address or address.startswith("127."):
        return None
    return address


def resolve_connect_url(port: int, override_host: Optional[str] = None) -> dict[str, Optional[str]]:
    """URLs other machines can use to reach a local service on *port*."""
    if override_host and override_host.strip():
        url = f"http://{override_host.strip()}:{port}"
        return {"connect_url": url, "lan_url": url, "mdns_url": None}

    hostname = socket.gethostname().strip()
    mdns_url = None
    if hostname:
        if hostname.endswith(".local"):
            hostname = hostname[: -len(".local")]
        mdns_url = f"http://{hostname}.local:{port}"
    lan_ip = resolve_lan_ip()
    lan_url = f"http://{lan_ip}:{port}" if lan_ip else None
    return {"connect_url": lan_url or mdns_url, "lan_url": lan_url, "mdns_url": mdns_url}
