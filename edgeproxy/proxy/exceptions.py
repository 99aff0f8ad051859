# edgeproxy/proxy/exceptions.py
"""
Error taxonomy for the proxy path.

Every error carries the HTTP status and the short public message that is
returned to the client. Internal detail stays in the exception chain and the
server log, never in the response body.
"""


class ProxyError(Exception):
    """Base exception for terminal proxy-path failures."""

    status_code = 500
    public_message = "internal error"

    def __init__(self, message: str | None = None, *, origin: str = ""):
        self.origin = origin
        super().__init__(message or self.public_message)


class InvalidTargetError(ProxyError):
    """Raised when the path suffix does not form a usable upstream URL."""

    status_code = 400
    public_message = "invalid target address"


class UserDeniedError(ProxyError):
    """Raised when the entry user is absent or disabled."""

    status_code = 403
    public_message = "forbidden"


class OriginDeniedError(ProxyError):
    """Raised when the upstream (or redirect) origin is not allow-listed."""

    status_code = 403
    public_message = "forbidden"


class UpstreamUnreachableError(ProxyError):
    """Raised when the upstream fetch fails at the transport level."""

    status_code = 502
    public_message = "upstream unreachable"


class StoreUnavailableError(ProxyError):
    """Raised when the backing store is missing or cannot be reached."""

    status_code = 500
    public_message = "store unavailable"


class MalformedRedirectError(ProxyError):
    """Raised when an upstream Location header cannot be resolved.

    Never reaches the client: the redirect resolver turns it into a raw
    forward of the upstream response.
    """

    status_code = 502
    public_message = "malformed redirect"
