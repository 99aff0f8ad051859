"""Turn the path suffix of an ingress request into the upstream URL."""

from __future__ import annotations

import re

import httpx

from edgeproxy.proxy.exceptions import InvalidTargetError
from edgeproxy.proxy.origin import check_authority

ALLOWED_SCHEMES = {"http", "https"}

# "https:/host" and "https/host" appear when a client or an intermediate
# proxy collapses the double slash of an embedded URL.
_COLLAPSED_COLON_RE = re.compile(r"^(https?):/(?!/)", re.IGNORECASE)
_MISSING_COLON_RE = re.compile(r"^(https?)/(?!/)", re.IGNORECASE)
_SCHEME_PREFIX_RE = re.compile(r"^https?://", re.IGNORECASE)


def repair_scheme_prefix(target: str) -> str:
    target = _COLLAPSED_COLON_RE.sub(r"\1://", target, count=1)
    target = _MISSING_COLON_RE.sub(r"\1://", target, count=1)
    if not _SCHEME_PREFIX_RE.match(target):
        target = f"https://{target}"
    return target


def parse_upstream_url(rest_path: str, query: str = "") -> httpx.URL:
    """Build the upstream URL from everything after ``/{user}``.

    The query string of the inbound request always wins: a query embedded
    in the path suffix is discarded.
    """
    target = rest_path[1:] if rest_path.startswith("/") else rest_path
    target, _, _ = target.partition("?")
    target = repair_scheme_prefix(target)

    query = query.lstrip("?")
    if query:
        target = f"{target}?{query}"

    try:
        url = httpx.URL(target)
    except (httpx.InvalidURL, ValueError, TypeError) as exc:
        raise InvalidTargetError(f"cannot parse upstream url {target!r}: {exc}") from exc

    if url.scheme not in ALLOWED_SCHEMES:
        raise InvalidTargetError(f"unsupported scheme in {target!r}")
    check_authority(url, target)

    return url
