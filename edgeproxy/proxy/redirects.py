"""Single-hop redirect resolution for upstream 3xx responses.

``resolve_redirect`` is pure: it receives the upstream status, its
``Location`` header, the URL that produced it, the direct-domain list and
the request's ``AccessGate`` snapshot, and returns one tagged decision.
The proxy service performs whatever network work the decision implies.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Union

import httpx

from edgeproxy.proxy.access_gate import AccessGate
from edgeproxy.proxy.exceptions import MalformedRedirectError
from edgeproxy.proxy.origin import canonical_origin
from edgeproxy.proxy.url_rewriter import ALLOWED_SCHEMES

# Large-file CDNs whose redirects the client should follow itself.
DEFAULT_DIRECT_DOMAINS: tuple[str, ...] = (
    "ap-cn01.emby.bangumi.ca",
    "ap-cn02.emby.bangumi.ca",
    "ap-cn03.emby.bangumi.ca",
    "quark.cn",
    "mini189.cn",
    "189.cn",
    "ctyunxs.cn",
    "telecomjs.com",
    "xunlei.com",
    "115.com",
    "115cdn.com",
    "115cdn.net",
    "uc.cn",
    "aliyundrive.com",
    "aliyundrive.net",
    "voicehub.top",
    "xiaoya.pro",
)


@dataclass(frozen=True, slots=True)
class PassThrough:
    """Not a redirect: stream the upstream response as is."""


@dataclass(frozen=True, slots=True)
class DirectPassthrough:
    """Hand the redirect to the client with an absolute Location."""

    location: str


@dataclass(frozen=True, slots=True)
class Follow:
    """Re-issue the request to the allow-listed redirect target."""

    url: httpx.URL
    origin: str


@dataclass(frozen=True, slots=True)
class Denied:
    """The redirect target is outside the allow-list."""

    origin: str


@dataclass(frozen=True, slots=True)
class RawForward:
    """Location could not be resolved; forward the upstream response."""

    reason: str


RedirectDecision = Union[PassThrough, DirectPassthrough, Follow, Denied, RawForward]


def is_redirect_status(status_code: int) -> bool:
    return 300 <= status_code < 400


def matches_direct_domain(hostname: str, direct_domains: Iterable[str]) -> bool:
    """True when ``hostname`` is a listed domain or one of its subdomains."""
    candidate = hostname.lower().rstrip(".")
    for domain in direct_domains:
        suffix = domain.strip().lower().lstrip(".")
        if not suffix:
            continue
        if candidate == suffix or candidate.endswith(f".{suffix}"):
            return True
    return False


def resolve_location(location: str, current_url: httpx.URL) -> httpx.URL:
    """Resolve a possibly relative Location against the URL that sent it."""
    try:
        resolved = current_url.join(location.strip())
    except (httpx.InvalidURL, ValueError, TypeError) as exc:
        raise MalformedRedirectError(f"unresolvable Location {location!r}: {exc}") from exc

    if resolved.scheme not in ALLOWED_SCHEMES or not resolved.host:
        raise MalformedRedirectError(f"unsupported redirect target {location!r}")
    return resolved


def resolve_redirect(
    status_code: int,
    location: str | None,
    current_url: httpx.URL,
    direct_domains: Iterable[str],
    gate: AccessGate,
) -> RedirectDecision:
    if not is_redirect_status(status_code) or not location:
        return PassThrough()

    try:
        target = resolve_location(location, current_url)
    except MalformedRedirectError as exc:
        return RawForward(reason=str(exc))

    if matches_direct_domain(target.host, direct_domains):
        return DirectPassthrough(location=str(target))

    origin = canonical_origin(target)
    if not gate.permit(origin):
        return Denied(origin=origin)

    return Follow(url=target, origin=origin)
