"""Access control for the mirror's operational endpoints."""

from __future__ import annotations

import hmac
from functools import lru_cache
from ipaddress import IPv4Network, IPv6Network, ip_address, ip_network
from typing import Optional, Sequence

from fastapi import HTTPException, Request, status


LOOPBACK_NETWORKS = ("127.0.0.0/8", "::1/128")


@lru_cache(maxsize=32)
def _networks(cidrs: tuple[str, ...]) -> tuple[IPv4Network | IPv6Network, ...]:
    return tuple(ip_network(cidr, strict=False) for cidr in cidrs)


def client_in_networks(client_host: Optional[str], cidrs: Sequence[str]) -> bool:
    if not client_host:
        return False
    try:
        address = ip_address(client_host)
    except ValueError:
        return False
    return any(address in network for network in _networks(tuple(cidrs)))


def require_metrics_access(
    request: Request,
    token: Optional[str],
    allowed_networks: Sequence[str] = LOOPBACK_NETWORKS,
) -> None:
    """A configured token is mandatory; without one, only scrapers inside `allowed_networks` get through."""
    if token:
        auth_header = request.headers.get("authorization") or ""
        if not hmac.compare_digest(auth_header, f"Bearer {token}"):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    client_host = request.client.host if request.client else None
    if not client_in_networks(client_host, allowed_networks):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access denied")
