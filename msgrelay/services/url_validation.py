"""
Outbound URL validation with SSRF protection.

Webhook destinations are tenant-supplied, so every delivery checks the URL
before any HTTP request is made.
"""
import asyncio
import ipaddress
import socket
from urllib.parse import urlsplit

from msgrelay.exceptions import UnsafeUrlError
from msgrelay.logging_config import get_logger

log = get_logger(component="url_validation")

ALLOWED_SCHEMES = {"http", "https"}

BLOCKED_HOSTNAMES = {
    "localhost",
    "metadata.google.internal",  # GCP metadata
}

BLOCKED_ADDRESSES = {
    "169.254.169.254",  # AWS metadata
    "100.100.100.200",  # Alibaba/Azure metadata
}


def _check_address(ip: ipaddress.IPv4Address | ipaddress.IPv6Address, context: str) -> None:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    if str(ip) in BLOCKED_ADDRESSES:
        raise UnsafeUrlError(f"Cloud metadata endpoints are not allowed for {context}")
    if ip.is_loopback or ip.is_unspecified:
        raise UnsafeUrlError("Localhost and loopback addresses are not allowed")
    if ip.is_link_local:
        raise UnsafeUrlError("Link-local addresses are not allowed")
    if ip.is_private or ip.is_reserved or ip.is_multicast:
        raise UnsafeUrlError("Private IP addresses are not allowed")


async def validate_url(url: str, context: str = "URL") -> None:
    """
    Validate a URL against the SSRF policy.

    Args:
        url: URL to validate
        context: Used in error messages (e.g. "webhook delivery")

    Raises:
        UnsafeUrlError: If the scheme is not HTTP(S) or the host is, or
            resolves to, a loopback, link-local, private or metadata address
    """
    try:
        parts = urlsplit(url)
        hostname = (parts.hostname or "").lower()
    except ValueError as e:
        raise UnsafeUrlError(f"Invalid {context} format") from e

    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise UnsafeUrlError(f"Only HTTP and HTTPS protocols are allowed for {context}")

    if not hostname:
        raise UnsafeUrlError(f"Invalid {context} format")

    if hostname in BLOCKED_HOSTNAMES or hostname.endswith(".localhost"):
        raise UnsafeUrlError("Localhost and loopback addresses are not allowed")

    try:
        literal = ipaddress.ip_address(hostname)
    except ValueError:
        literal = None

    if literal is not None:
        _check_address(literal, context)
        return

    # Hostname: resolve and check every address (DNS rebinding protection)
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    except UnicodeError as e:
        # IDNA encoding rejects empty or over-long labels
        raise UnsafeUrlError(f"Invalid {context} format") from e
    except socket.gaierror as e:
        # Unresolvable now; the HTTP call will fail on its own
        log.debug("url_dns_lookup_failed", context=context, error=str(e))
        return

    for info in infos:
        address = info[4][0].split("%", 1)[0]
        try:
            ip = ipaddress.ip_address(address)
        except ValueError:
            continue
        try:
            _check_address(ip, context)
        except UnsafeUrlError as e:
            raise UnsafeUrlError(f"URL resolves to a blocked IP address range: {e}") from e
