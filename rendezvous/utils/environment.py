"""Utilities related to the current execution environment."""
from __future__ import annotations

import ipaddress
import logging
import socket

logger = logging.getLogger(__name__)


def hostname() -> str:
    """Return current hostname."""
    return socket.gethostname()


def ipv4_addresses() -> list[str]:
    """Return the non-loopback IPv4 addresses of this host.

    Addresses are resolved from the hostname so the list may be empty on
    hosts whose name does not resolve.
    """
    try:
        infos = socket.getaddrinfo(hostname(), None, family=socket.AF_INET)
    except socket.gaierror as e:
        logger.warning(f'Failed to resolve addresses of {hostname()}: {e}')
        return []

    addresses: list[str] = []
    for _, _, _, _, sockaddr in infos:
        address = str(sockaddr[0])
        if address in addresses or ipaddress.ip_address(address).is_loopback:
            continue
        addresses.append(address)
    return addresses
