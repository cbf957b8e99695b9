"""Private-network checks for manifest health endpoints.

The health poller requests every service's ``health_endpoint``, so a
manifest must not be able to point new services at loopback, RFC 1918,
link-local or other non-routable addresses. Hostnames are resolved and every
returned address is checked.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
from typing import Iterable
from urllib.parse import urlsplit

from depsera.manifest.types import ManifestServiceEntry
from depsera.utils.logging import sanitize_for_log

logger = logging.getLogger(__name__)

BLOCKED_HOSTNAMES = frozenset({"localhost", "localhost."})
BLOCKED_HOST_SUFFIXES = (".local", ".internal", ".localhost")


def resolve_host(hostname: str) -> list[str]:
    """Addresses ``hostname`` resolves to.

    Raises:
        socket.gaierror: if the name does not resolve.
    """
    infos = socket.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
    return [info[4][0] for info in infos]


def is_private_address(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return True
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
        or ip in ipaddress.ip_network("100.64.0.0/10")
    )


def targets_private_address(url: str) -> bool:
    """Whether ``url``'s host is, or resolves to, a private address.

    A hostname that does not resolve is not treated as private; the poller
    reports it as unreachable instead.
    """
    try:
        hostname = urlsplit(url).hostname
    except ValueError:
        return True
    if not hostname:
        return True
    hostname = hostname.lower()
    if hostname in BLOCKED_HOSTNAMES or hostname.endswith(BLOCKED_HOST_SUFFIXES):
        return True

    try:
        ipaddress.ip_address(hostname.split("%", 1)[0])
    except ValueError:
        pass
    else:
        return is_private_address(hostname)

    try:
        addresses = resolve_host(hostname)
    except (socket.gaierror, UnicodeError) as exc:
        logger.debug(
            "Could not resolve %s: %s", sanitize_for_log(hostname), sanitize_for_log(str(exc))
        )
        return False
    return any(is_private_address(address) for address in addresses)


def private_endpoint_keys(entries: Iterable[ManifestServiceEntry]) -> list[str]:
    """Manifest keys whose ``health_endpoint`` targets a private address."""
    return [entry.key for entry in entries if targets_private_address(entry.health_endpoint)]
