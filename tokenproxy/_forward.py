"""
Plain forwarding: take a parsed request, make the same request
upstream with httpx, and hand back the (bounded) response.
"""

import logging
from dataclasses import dataclass, field
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import List, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

import httpx
import trio

from ._config import ProxyConfig, TargetMode
from ._errors import BadTarget, InternalFault, NotFound, UpstreamBodyTooLarge, UpstreamUnreachable
from ._headers import Direction, Headers, sanitize, without


logger = logging.getLogger("tokenproxy.forward")

# Never replayed to an origin other than the one the client asked for.
CREDENTIAL_HEADERS = (b"authorization", b"proxy-authorization", b"cookie")


@dataclass
class InboundRequest:
    method: bytes
    target: bytes
    headers: Headers = field(default_factory=list)
    body: bytes = b""


@dataclass
class UpstreamResponse:
    status_code: int
    headers: Headers
    body: bytes
    reason: bytes = b""


def resolve_target(request: InboundRequest, mode: TargetMode) -> str:
    """
    Work out the absolute URL to fetch.

    In PARAM mode, the only route is "/", and the URL comes from its
    `url` query parameter. In URI mode the request target itself must
    be an absolute URL, as sent to any ordinary HTTP proxy.
    """
    try:
        target = request.target.decode("ascii")
    except UnicodeDecodeError:
        raise BadTarget(f"Non-ASCII request target: {request.target!r}") from None

    if mode is TargetMode.PARAM:
        parts = urlsplit(target)
        if parts.scheme or parts.netloc or parts.path not in ("", "/"):
            raise NotFound(f"No route for {target!r}")
        values = parse_qs(parts.query).get("url")
        if not values or not values[0]:
            raise BadTarget("Missing `url` param")
        url = values[0]
    else:
        if target.startswith("/") or target == "*":
            raise NotFound(f"No route for {target!r}")
        url = target

    check_url(url)
    return url


def check_url(url: str) -> None:
    try:
        parts = urlsplit(url)
        parts.port  # raises ValueError on garbage ports
    except ValueError:
        raise BadTarget(f"Malformed URL: {url!r}") from None
    if parts.scheme.lower() not in ("http", "https"):
        raise BadTarget(f"Scheme {parts.scheme!r} is not http or https")
    if not parts.hostname:
        raise BadTarget(f"No host in URL: {url!r}")


def _origin(url: httpx.URL) -> Tuple[str, str, Optional[int]]:
    default_port = {"http": 80, "https": 443}.get(url.scheme)
    return (url.scheme, url.host, url.port or default_port)


class PlainForwarder:
    """
    Forwards parsed requests through an httpx.AsyncClient.

    The client is shared by all connections (it holds the connection
    pool) and is owned by whoever created it.
    """

    def __init__(self, config: ProxyConfig, client: httpx.AsyncClient, credential_header: bytes = b"authorization"):
        self.config = config
        self.client = client
        self.credential_header = credential_header
        self.user_agent = config.user_agent.encode("latin-1")

    def outbound_headers(self, request: InboundRequest) -> Headers:
        headers = sanitize(request.headers, Direction.OUTBOUND_REQUEST, self.user_agent)
        # httpx sets Host and Content-Length itself, from the URL and the body.
        return without(headers, self.credential_header, b"host", b"content-length")

    async def forward(self, request: InboundRequest) -> UpstreamResponse:
        url = resolve_target(request, self.config.target_mode)
        method = request.method.decode("ascii")
        try:
            upstream_request = self.client.build_request(
                method,
                url,
                headers=self.outbound_headers(request),
                content=request.body or None,
                timeout=self.config.request_timeout,
            )
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            raise BadTarget(f"Cannot request {url!r}: {e}") from e

        # The timeout covers the whole exchange, redirects and body included.
        try:
            with trio.fail_after(self.config.request_timeout):
                return await self._follow(upstream_request, method)
        except trio.TooSlowError:
            logger.error("No complete response from %s within %.1fs", url, self.config.request_timeout)
            raise UpstreamUnreachable(f"Timed out after {self.config.request_timeout}s") from None

    async def _follow(self, upstream_request: httpx.Request, method: str) -> UpstreamResponse:
        redirects_left = self.config.redirect_limit
        while True:
            response = await self._send(upstream_request)
            try:
                next_request = response.next_request
                if next_request is None or redirects_left <= 0:
                    return await self._collect(response, head=(method == "HEAD"))
            finally:
                await response.aclose()

            redirects_left -= 1
            if _origin(next_request.url) != _origin(upstream_request.url):
                for name in CREDENTIAL_HEADERS:
                    next_request.headers.pop(name.decode("ascii"), None)
            logger.info("Following redirect %s -> %s", upstream_request.url, next_request.url)
            upstream_request = next_request

    async def _send(self, request: httpx.Request) -> httpx.Response:
        try:
            return await self.client.send(request, stream=True, follow_redirects=False)
        except httpx.TransportError as e:
            logger.error("Upstream request %s %s failed: %r", request.method, request.url, e)
            raise UpstreamUnreachable(str(e)) from e
        except httpx.HTTPError as e:
            logger.error("Unexpected httpx error for %s %s: %r", request.method, request.url, e)
            raise InternalFault(str(e)) from e

    async def _collect(self, response: httpx.Response, head: bool = False) -> UpstreamResponse:
        """Read the body, refusing to buffer more than the configured limit."""
        limit = self.config.body_limit
        chunks: List[bytes] = []
        received = 0
        try:
            # Raw bytes, so that Content-Encoding stays truthful.
            async for chunk in response.aiter_raw():
                received += len(chunk)
                if received > limit:
                    raise UpstreamBodyTooLarge(
                        f"Response from {response.url} exceeds {limit} bytes"
                    )
                chunks.append(chunk)
        except httpx.TransportError as e:
            logger.error("Reading response from %s failed: %r", response.url, e)
            raise UpstreamUnreachable(str(e)) from e

        headers = sanitize(response.headers.raw, Direction.INBOUND_RESPONSE)
        if not head:
            headers = without(headers, b"content-length")
        logger.info("%s %s -> %d (%d bytes)", response.request.method, response.url, response.status_code, received)
        return UpstreamResponse(
            status_code=response.status_code,
            headers=headers,
            body=b"".join(chunks),
            reason=response.reason_phrase.encode("latin-1", "replace"),
        )


def make_client(config: ProxyConfig, **kwargs) -> httpx.AsyncClient:
    """
    The httpx client used for all plain forwarding.

    It keeps no cookies (it is shared between all callers) and adds no
    Accept-Encoding of its own, so that what comes back is what the
    caller asked for.
    """
    kwargs.setdefault("timeout", config.request_timeout)
    client = httpx.AsyncClient(
        cookies=CookieJar(policy=DefaultCookiePolicy(allowed_domains=[])),
        follow_redirects=False,
        trust_env=False,
        **kwargs,
    )
    del client.headers["Accept-Encoding"]
    return client
