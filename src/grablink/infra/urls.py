"""URL validation and normalization helpers."""
from __future__ import annotations

import ipaddress
import re
from urllib.parse import urlsplit

_BLOCKED_HOSTNAMES: frozenset[str] = frozenset({"localhost", "localhost.localdomain", "0.0.0.0"})
_DUPLICATE_SLASHES: re.Pattern[str] = re.compile(r"(?<!:)/{2,}")


def _is_internal_address(host: str) -> bool:
    try:
        address = ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_unspecified
        or address.is_reserved
        or address.is_multicast
    )


def validate_url(url: str) -> None:
    """Validate URL has a supported scheme and a public host.

    Notes
    -----
    - Accepts only ``http`` and ``https`` schemes with a non-empty host.
    - Rejects ``localhost`` and IP literals in private, loopback, link-local or
      otherwise internal ranges so the extraction tool cannot be pointed at
      internal services.
    - Raises ``ValueError`` early to avoid invoking the tool on malformed input.
    """

    try:
        parsed = urlsplit(url.strip())
        host: str = (parsed.hostname or "").lower()
    except ValueError as ex:
        raise ValueError("Invalid URL format. Please provide a valid HTTP or HTTPS URL") from ex
    if parsed.scheme not in {"http", "https"} or not host:
        raise ValueError("Invalid URL format. Please provide a valid HTTP or HTTPS URL")
    if host in _BLOCKED_HOSTNAMES or _is_internal_address(host):
        raise ValueError("URLs pointing at internal or private addresses are not allowed")


def normalize_url(url: str) -> str:
    """Normalize a URL before handing it to the extraction tool.

    Trims whitespace, adds ``https://`` when the scheme is missing, strips
    trailing slashes and collapses duplicate slashes after the scheme.
    """

    text: str = url.strip()
    if not text.startswith(("http://", "https://")):
        text = "https://" + text
    text = text.rstrip("/")
    return _DUPLICATE_SLASHES.sub("/", text)


def cache_key(url: str) -> str:
    """Key under which probe results for ``url`` are cached."""

    return url.strip().lower().rstrip("/")
