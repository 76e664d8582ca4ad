"""Rate limiting for the gigsettle backend.

Limits are keyed by client IP. X-Forwarded-For is honoured only when the
direct peer is one of the trusted proxies from ``Settings.trusted_proxy_cidrs``.
"""

import ipaddress

from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_settings
from .logging_config import get_logger

logger = get_logger("gigsettle.rate_limit")


def parse_networks(cidrs: list[str]) -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    """Parse CIDR strings, skipping (and logging) invalid entries."""
    networks = []
    for cidr in cidrs:
        try:
            networks.append(ipaddress.ip_network(cidr.strip(), strict=False))
        except ValueError:
            logger.warning(f"Ignoring invalid trusted proxy CIDR: {cidr}")
    return networks


def is_trusted_proxy(ip_str: str, networks) -> bool:
    try:
        addr = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return any(addr in network for network in networks)


def get_client_ip(request) -> str:
    """Rate-limit key: the forwarded client IP behind a trusted proxy, else the peer."""
    direct_ip = get_remote_address(request)
    networks = parse_networks(get_settings().trusted_proxy_cidrs)
    if not is_trusted_proxy(direct_ip, networks):
        return direct_ip

    forwarded_for = request.headers.get("x-forwarded-for", "")
    client_ip = forwarded_for.split(",")[0].strip()
    return client_ip or direct_ip


limiter = Limiter(key_func=get_client_ip)
