"""
Errors which end a request early.

Each carries the status code and the short, fixed message the client
gets to see. Details (upstream error text and the like) belong in the
log, never in `public_message`.
"""


class ProxyError(Exception):
    status_code = 500
    public_message = "internal error"
    # Whether the client may see str(error) instead of public_message.
    expose_detail = False


class BadTarget(ProxyError):
    """The request did not name a usable target."""
    status_code = 400
    public_message = "bad target"
    expose_detail = True


class NotFound(ProxyError):
    """No route matches the request."""
    status_code = 404
    public_message = "nothing to see here"


class BodyTooLarge(ProxyError):
    """A request or response body exceeded the configured limit."""
    status_code = 413
    public_message = "body too large"


class UpstreamBodyTooLarge(BodyTooLarge):
    # The client did nothing wrong here, the upstream sent too much.
    status_code = 502
    public_message = "upstream response too large"


class UpstreamUnreachable(ProxyError):
    """Connecting to, or talking to, the target failed (DNS, TCP, TLS, timeout)."""
    status_code = 502
    public_message = "bad gateway"


class InternalFault(ProxyError):
    status_code = 500
    public_message = "internal error"


class ConfigurationError(ValueError):
    """The proxy cannot start with the given configuration."""
