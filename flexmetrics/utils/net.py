"""``host:port`` address helpers."""
from __future__ import annotations

import socket

from ..core.errors import AddressError


def split_host_port(addr: str) -> tuple[str, int]:
    """Split ``host:port`` into its parts.

    An empty host means every interface and an empty port means 0. IPv6 hosts
    must be bracketed (``[::1]:9090``). An empty ``addr`` is ``:0``.
    """
    if not addr:
        return "", 0
    if addr.startswith("["):
        end = addr.find("]")
        if end < 0:
            raise AddressError(f"address {addr}: missing ']' in address")
        host = addr[1:end]
        rest = addr[end + 1 :]
        if not rest.startswith(":"):
            raise AddressError(f"address {addr}: missing port in address")
        port_s = rest[1:]
    else:
        if ":" not in addr:
            raise AddressError(f"address {addr}: missing port in address")
        host, port_s = addr.rsplit(":", 1)
        if ":" in host:
            raise AddressError(f"address {addr}: too many colons in address")
    if not port_s:
        return host, 0
    try:
        port = int(port_s)
    except ValueError:
        raise AddressError(f"address {addr}: invalid port {port_s!r}") from None
    if not 0 <= port <= 65535:
        raise AddressError(f"address {addr}: invalid port {port_s!r}")
    return host, port


def join_host_port(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def address_family(host: str) -> socket.AddressFamily:
    return socket.AF_INET6 if ":" in host else socket.AF_INET
