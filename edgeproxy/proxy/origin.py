from __future__ import annotations

import re

import httpx

from edgeproxy.proxy.exceptions import InvalidTargetError

DEFAULT_PORTS = {"http": 80, "https": 443}
_SCHEME_PREFIX_RE = re.compile(r"^https?://", re.IGNORECASE)

# ASCII hostnames after IDNA encoding; IPv6 literals arrive without brackets.
_HOSTNAME_RE = re.compile(r"^[a-z0-9_-]+(\.[a-z0-9_-]+)*\.?$", re.IGNORECASE)
_IPV6_RE = re.compile(r"^[0-9a-f:.]+$", re.IGNORECASE)


def check_authority(url: httpx.URL, label: str) -> None:
    """Reject hosts and ports that no upstream could be reached at.

    ``httpx.URL`` percent-escapes forbidden host characters instead of
    refusing them and does not range-check the port.
    """
    try:
        host = url.raw_host.decode("ascii")
    except UnicodeDecodeError:
        raise InvalidTargetError(f"invalid host in {label!r}") from None

    if not host:
        raise InvalidTargetError(f"missing host in {label!r}")
    pattern = _IPV6_RE if ":" in host else _HOSTNAME_RE
    if not pattern.match(host):
        raise InvalidTargetError(f"invalid host {host!r} in {label!r}")

    port = url.port
    if port is not None and not 1 <= port <= 65535:
        raise InvalidTargetError(f"port {port} out of range in {label!r}")


def canonical_origin(url: httpx.URL) -> str:
    """Reduce a URL to its ``scheme://host[:port]`` allow-list key."""
    scheme = url.scheme.lower()
    host = url.host.lower()
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"

    port = url.port
    if port is not None and port == DEFAULT_PORTS.get(scheme):
        port = None

    return f"{scheme}://{host}:{port}" if port is not None else f"{scheme}://{host}"


def normalize_origin(raw: str | None) -> str | None:
    """Canonicalize an operator-entered origin; blank input yields None."""
    candidate = (raw or "").strip()
    if not candidate:
        return None
    if not _SCHEME_PREFIX_RE.match(candidate):
        candidate = f"https://{candidate}"

    try:
        url = httpx.URL(candidate)
    except (httpx.InvalidURL, ValueError, TypeError) as exc:
        raise InvalidTargetError(f"invalid origin {raw!r}: {exc}") from exc
    check_authority(url, raw)

    return canonical_origin(url)
