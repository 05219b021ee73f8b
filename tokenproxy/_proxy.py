import logging
from typing import List, Optional

import h11
import httpx
import trio

from ._auth import AuthGate, AuthResult
from ._config import ProxyConfig
from ._errors import BodyTooLarge, NotFound, ProxyError
from ._forward import InboundRequest, PlainForwarder, make_client
from ._headers import get_header
from ._shutdown import ShutdownCoordinator
from ._tunnel import TunnelSession
from .adapter import TrioHTTPConnection


logger = logging.getLogger("tokenproxy.proxy")


################################################################
#                  The proxy itself
################################################################

async def handle(stream: trio.abc.Stream, proxy: "TokenProxy") -> None:
    """
    Handles one client connection from start to end.

    Plain requests may be followed by more requests on the same
    connection; a CONNECT request turns the connection into a tunnel,
    and ends it when the tunnel closes.
    """
    start_time = trio.current_time()
    w = TrioHTTPConnection(stream, shutdown_timeout=10)
    requests_served = 0

    try:
        while True:
            try:
                request = await read_request(w, proxy.config)
                if request is None:
                    w.info("Client closed the TCP connection")
                    break
                requests_served += 1
                upgraded = await route(w, request, proxy)
            except trio.TooSlowError:
                # A partly received request head still gets its 408.
                if requests_served and w.conn.their_state is h11.IDLE and not w.conn.trailing_data[0]:
                    w.info("Idle keep-alive connection timed out")
                    break
                raise
            except ProxyError as e:
                w.info(f"{type(e).__name__}: {e}")
                message = str(e) if e.expose_detail and str(e) else e.public_message
                await w.send_error(e.status_code, message)
                upgraded = False

            if upgraded or w.conn.our_state is not h11.DONE or w.conn.their_state is not h11.DONE:
                break
            w.conn.start_next_cycle()

        await w.shutdown_and_clean_up()

    except Exception as e:
        w.info(f"Handling exception: {e!r}")
        try:
            if isinstance(e, (trio.BrokenResourceError, trio.ClosedResourceError)):
                w.info("Client abruptly closed connection; dropping request.")
            elif isinstance(e, h11.RemoteProtocolError):
                await w.send_error(e.error_status_hint, str(e))
            elif isinstance(e, trio.TooSlowError):
                await w.send_error(408, "Client is too slow, terminating connection")
            else:
                logger.exception("Internal error while handling a request")
                await w.send_error(500, "internal error")
            await w.shutdown_and_clean_up()
        except Exception as e:
            w.error(f"Error while responding to an error: {e!r}")
    finally:
        await w.ensure_shutdown()
        end_time = trio.current_time()
        w.info(f"Total time: {end_time - start_time:.6f}s")


async def read_request(w: TrioHTTPConnection, config: ProxyConfig) -> Optional[InboundRequest]:
    """
    Read one complete request (head and body), or None if the client
    closed the connection instead of sending one.

    Raises trio.TooSlowError if that takes longer than the client
    timeout, and BodyTooLarge as soon as the body is known to exceed
    the configured limit.
    """
    with trio.fail_after(config.client_timeout):
        # Regular event sequence:
        # -----------------------
        #   1. Request (= start of request)
        #   2. Data* (optional)
        #   3. EndOfMessage (= end of request)
        #
        # At any moment: ConnectionClosed or exception
        e = await w.next_event()
        assert isinstance(e, (h11.Request, h11.ConnectionClosed)), "This assertion should always hold"

        if isinstance(e, h11.ConnectionClosed):
            return None

        request = InboundRequest(method=e.method, target=e.target, headers=list(e.headers))

        declared = get_header(request.headers, b"content-length")
        if declared is not None and int(declared) > config.body_limit:
            raise BodyTooLarge(f"Declared body of {int(declared)} bytes")

        body: List[bytes] = []
        received = 0
        while True:
            event = await w.next_event()
            if isinstance(event, h11.EndOfMessage):
                break
            assert isinstance(event, h11.Data), "This assertion should always hold"
            received += len(event.data)
            if received > config.body_limit:
                raise BodyTooLarge(f"Body exceeds {config.body_limit} bytes")
            body.append(event.data)

    request.body = b"".join(body)
    return request


async def route(w: TrioHTTPConnection, request: InboundRequest, proxy: "TokenProxy") -> bool:
    """
    Authenticate, then dispatch to the tunnel or to plain forwarding.

    Returns True if the connection was taken over by a tunnel.
    """
    target = request.target.decode("ascii", "replace")
    if proxy.gate.check(request.headers, w.peer, target) is AuthResult.UNAUTHORIZED:
        headers = [
            (b"Content-Type", b"text/plain; charset=utf-8"),
            proxy.gate.challenge(),
            (b"Connection", b"close"),
        ]
        await w.send_response(401, b"unauthorized", headers=headers)
        return False

    if request.method == b"CONNECT":
        if not proxy.config.allow_connect:
            raise NotFound("CONNECT is disabled")
        await TunnelSession(w, proxy.config).run(request.target)
        return True

    response = await w.while_connected(proxy.forwarder.forward, request)
    await w.send_response(
        response.status_code,
        response.body,
        headers=response.headers,
        reason=response.reason,
        with_length=(request.method != b"HEAD"),
    )
    return False


################################################################
#                  User-friendly objects
################################################################

class TokenProxy:
    """
    An authenticated HTTP forward proxy.

    Runs on a trio event loop.
    """

    def __init__(self, config: ProxyConfig, client: Optional[httpx.AsyncClient] = None):
        """
        `client`, if given, is used for plain forwarding instead of a
        client of our own; it then stays open when the proxy stops.
        """
        self.config = config
        self.gate = AuthGate(config.auth_token, config.auth_scheme)
        self._owns_client = client is None
        if client is None:
            client = make_client(config)
        self.forwarder = PlainForwarder(config, client, credential_header=self.gate.credential_header)
        self.coordinator = ShutdownCoordinator(config.shutdown_grace)

    async def handle(self, stream: trio.abc.Stream) -> None:
        await handle(stream, self)

    async def listen(
            self,
            host: Optional[str] = None,
            port: Optional[int] = None,
            *,
            task_status=trio.TASK_STATUS_IGNORED,
        ) -> None:
        """
        Listen for incoming TCP connections, until shutdown() is called.

        Parameters:
          host: the host interface to listen on (default: from the configuration)
          port: the port to listen on (default: from the configuration)

        When started with `nursery.start`, hands back the listeners.
        """
        if host is None:
            host = self.config.listen_host
        if port is None:
            port = self.config.listen_port

        try:
            listeners = await trio.open_tcp_listeners(port, host=host)
            bound_host, bound_port = listeners[0].socket.getsockname()[:2]
            logger.info("Listening on http://%s:%d", bound_host, bound_port)
            await self.coordinator.serve(self.handle, listeners, task_status=task_status)
        finally:
            if self._owns_client:
                with trio.CancelScope(shield=True):
                    await self.forwarder.client.aclose()

    def shutdown(self) -> None:
        """Stop accepting connections, and let the open ones finish within the grace period."""
        self.coordinator.shutdown()
