"""
CONNECT tunnels.

A tunnel goes through these states:

    AWAITING_HANDSHAKE -> ACCEPTED -> RELAYING -> CLOSED

and can jump to CLOSED from anywhere. Once the 200 has gone out, the
connection is no longer HTTP, so nothing that goes wrong afterwards
can be reported to the client: we just close both ends.
"""

import enum
import logging
from typing import List, Optional, Tuple

import h11
import trio

from ._config import ProxyConfig
from ._errors import BadTarget
from .adapter import TrioHTTPConnection


logger = logging.getLogger("tokenproxy.tunnel")

BUFSIZE = 16384

# The other side just went away; that's how tunnels usually end.
BENIGN_ERRORS = (
    trio.BrokenResourceError,
    trio.ClosedResourceError,
    ConnectionResetError,
    BrokenPipeError,
)


class TunnelState(enum.Enum):
    AWAITING_HANDSHAKE = "awaiting-handshake"
    ACCEPTED = "accepted"
    RELAYING = "relaying"
    CLOSED = "closed"


def parse_authority(target: bytes) -> Tuple[str, int]:
    """
    Split a CONNECT target into host and port.

    The port is mandatory; IPv6 literals must be bracketed, as in
    "[::1]:443".
    """
    try:
        text = target.decode("ascii")
    except UnicodeDecodeError:
        raise BadTarget(f"Malformed authority: {target!r}") from None

    if text.startswith("["):
        host, bracket, rest = text[1:].partition("]")
        if not bracket or not rest.startswith(":"):
            raise BadTarget(f"Malformed authority: {text!r}")
        port_string = rest[1:]
    else:
        host, colon, port_string = text.rpartition(":")
        if not colon or ":" in host:
            raise BadTarget(f"Malformed authority: {text!r}")

    if not host or "/" in host or "@" in host:
        raise BadTarget(f"Malformed hostname: {host!r}")
    if not port_string.isdigit() or int(port_string) not in range(1, 65536):
        raise BadTarget(f"Invalid port number: {port_string!r}")
    return host, int(port_string)


async def splice(a: trio.abc.Stream, b: trio.abc.Stream, tally: Optional[List[int]] = None) -> None:
    """
    "Splices" two streams into one.
    That is, it forwards everything from a to b, and vice versa.

    When one part of the connection breaks or finishes, it cleans up
    the other one and returns. If given, `tally` (a list of two ints)
    counts the bytes moved a->b and b->a.
    """
    if tally is None:
        tally = [0, 0]
    async with a:
        async with b:
            async with trio.open_nursery() as nursery:
                # From RFC 7231, §4.3.6:
                # ----------------------
                # A tunnel is closed when a tunnel intermediary detects that
                # either side has closed its connection: the intermediary MUST
                # attempt to send any outstanding data that came from the
                # closed side to the other side, close both connections,
                # and then discard any remaining data left undelivered.

                # This holds, because the coroutines below run until one tries
                # to read from a closed socket, at which point both are cancelled.
                nursery.start_soon(forward, a, b, nursery.cancel_scope, tally, 0)
                nursery.start_soon(forward, b, a, nursery.cancel_scope, tally, 1)


async def forward(
        source: trio.abc.ReceiveStream,
        sink: trio.abc.SendStream,
        cancel_scope: trio.CancelScope,
        tally: List[int],
        index: int,
    ) -> None:
    while True:
        try:
            chunk = await source.receive_some(BUFSIZE)
            if chunk:
                await sink.send_all(chunk)
                tally[index] += len(chunk)
            else:
                break  # nothing more to read
        except BENIGN_ERRORS:
            break

    cancel_scope.cancel()


class TunnelSession:
    """One CONNECT tunnel, from handshake to close."""

    def __init__(self, w: TrioHTTPConnection, config: ProxyConfig):
        self.w = w
        self.config = config
        self.state = TunnelState.AWAITING_HANDSHAKE
        self.upstream: Optional[trio.abc.Stream] = None
        self.host = ""
        self.port = 0
        self._tally = [0, 0]

    @property
    def client(self) -> trio.abc.Stream:
        return self.w.stream

    @property
    def bytes_upstream(self) -> int:
        return self._tally[0]

    @property
    def bytes_downstream(self) -> int:
        return self._tally[1]

    async def run(self, target: bytes) -> None:
        """
        Take the tunnel through all its states.

        Raises BadTarget while still AWAITING_HANDSHAKE, when an error
        response can still be sent; never raises for anything later.
        """
        try:
            self.host, self.port = parse_authority(target)
        except BadTarget:
            self.state = TunnelState.CLOSED
            raise

        try:
            await self._accept()
            await self._relay()
        finally:
            self.state = TunnelState.CLOSED
            logger.info(
                "Tunnel to %s:%d closed: %d bytes up, %d bytes down",
                self.host, self.port, self.bytes_upstream, self.bytes_downstream,
            )
            await self.w.ensure_shutdown()

    async def _accept(self) -> None:
        self.state = TunnelState.ACCEPTED
        await self.w.send(h11.Response(
            status_code=200,
            reason=b"Connection Established",
            headers=self.w.basic_headers(),
        ))
        assert self.w.conn.our_state == self.w.conn.their_state == h11.SWITCHED_PROTOCOL

    async def _relay(self) -> None:
        self.state = TunnelState.RELAYING
        self.w.info(f"Making TCP connection to {self.host}:{self.port}")
        try:
            with trio.fail_after(self.config.request_timeout):
                self.upstream = await self.w.while_connected(trio.open_tcp_stream, self.host, self.port)
        except trio.BrokenResourceError:
            self.w.info("Client went away during the dial")
            return
        except (OSError, trio.TooSlowError) as e:
            logger.warning("Dial to %s:%d failed: %r", self.host, self.port, e)
            return

        # Whatever the client sent after the CONNECT head (often a TLS
        # ClientHello) was read into h11, and belongs upstream.
        preamble, _ = self.w.conn.trailing_data

        try:
            if preamble:
                await self.upstream.send_all(preamble)
                self._tally[0] += len(preamble)
            await splice(self.client, self.upstream, self._tally)
        except BENIGN_ERRORS:
            self.w.info("Tunnel peer went away")
        except Exception as e:
            logger.error("Tunnel to %s:%d failed: %r", self.host, self.port, e)
        finally:
            await trio.aclose_forcefully(self.upstream)
