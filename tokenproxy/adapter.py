import logging
from itertools import count
from typing import List, Optional, Tuple
from wsgiref.handlers import format_date_time

import h11
import trio


MAX_RECV = 2 ** 16

Headers = List[Tuple[bytes, bytes]]

logger = logging.getLogger("tokenproxy.connection")


class TrioHTTPConnection:
    """
    Wraps a trio stream with an h11 server-side connection.

    Every inbound connection gets one of these. It knows how to pull
    events off the wire, how to push responses back, and how to shut
    the connection down cleanly.
    """

    _next_id = count()

    def __init__(self, stream: trio.abc.Stream, shutdown_timeout: float = 10):
        self.stream = stream
        self.conn = h11.Connection(h11.SERVER)
        self.shutdown_timeout = shutdown_timeout
        self.ident = f"tokenproxy/{h11.__version__} {h11.PRODUCT_ID}".encode("ascii")
        self._obj_id = next(TrioHTTPConnection._next_id)
        self._closed = False

    @property
    def peer(self) -> str:
        """Best-effort printable address of the other end."""
        socket = getattr(self.stream, "socket", None)
        if socket is None:
            return "unknown"
        try:
            host, port = socket.getpeername()[:2]
        except OSError:
            return "unknown"
        return f"{host}:{port}"

    async def send(self, event: h11.Event) -> None:
        assert type(event) is not h11.ConnectionClosed
        data = self.conn.send(event)
        try:
            if data:
                await self.stream.send_all(data)
        except BaseException:
            self.conn.send_failed()
            raise

    async def _read_from_peer(self) -> None:
        if self.conn.they_are_waiting_for_100_continue:
            self.info("Sending 100 Continue")
            go_ahead = h11.InformationalResponse(status_code=100, headers=self.basic_headers())
            await self.send(go_ahead)
        try:
            data = await self.stream.receive_some(MAX_RECV)
        except ConnectionError:
            # They've stopped listening. Not much we can do about it here.
            data = b""
        self.conn.receive_data(data)

    async def next_event(self) -> h11.Event:
        while True:
            event = self.conn.next_event()
            if event is h11.NEED_DATA:
                await self._read_from_peer()
                continue
            return event

    async def while_connected(self, async_fn, *args):
        """
        Run `async_fn(*args)` and return its result, but cancel it as
        soon as the client hangs up.

        Raises trio.BrokenResourceError if the client went away before
        the work was done.

        Anything the client sends meanwhile is handed to h11, where it
        waits for the next read.
        """
        gone = False
        finished = False
        error = None
        result = None

        async def watch(cancel_scope: trio.CancelScope) -> None:
            nonlocal gone
            while True:
                try:
                    data = await self.stream.receive_some(MAX_RECV)
                except (trio.BrokenResourceError, trio.ClosedResourceError, ConnectionError):
                    data = b""
                if not data:
                    gone = True
                    cancel_scope.cancel()
                    return
                self.conn.receive_data(data)

        async with trio.open_nursery() as nursery:
            nursery.start_soon(watch, nursery.cancel_scope)
            try:
                result = await async_fn(*args)
                finished = True
            except Exception as e:
                # Re-raised below, outside the nursery, so that callers
                # see the error itself rather than an exception group.
                error = e
            nursery.cancel_scope.cancel()

        if error is not None:
            raise error
        if not finished:
            assert gone
            self.info("Client hung up, upstream work cancelled")
            raise trio.BrokenResourceError("client hung up")
        return result

    async def send_response(
            self,
            status_code: int,
            body: bytes = b"",
            headers: Optional[Headers] = None,
            reason: bytes = b"",
            with_length: bool = True,
        ) -> None:
        """
        Send a complete response: head, body, end of message.

        `headers` are sent as they are, after our own Date and Server
        headers (unless `headers` has its own). A Content-Length is
        computed here, except for statuses which must not carry one, or
        when `with_length` is false (responses to HEAD, where the
        upstream's length is passed on).
        """
        headers = list(headers or [])
        present = {name.lower() for name, _ in headers}
        all_headers = [(name, value) for name, value in self.basic_headers() if name.lower() not in present]
        all_headers.extend(headers)
        if with_length and status_code not in (204, 304):
            all_headers.append((b"Content-Length", str(len(body)).encode("ascii")))

        self.info(f"Sending {status_code} response with {len(body)} bytes")
        await self.send(h11.Response(status_code=status_code, headers=all_headers, reason=reason))
        if body:
            await self.send(h11.Data(data=body))
        await self.send(h11.EndOfMessage())

    async def send_error(self, status_code: int, message: str) -> None:
        """
        Send a short plain-text error, and make sure the connection
        is closed afterwards.

        Does nothing if we're past the point where a response can be sent.
        """
        if self.conn.our_state not in {h11.IDLE, h11.SEND_RESPONSE}:
            self.info(f"Cannot send {status_code} error in state {self.conn.our_state}")
            return
        # The Connection: close header makes h11 go to MUST_CLOSE after this response.
        headers = [
            (b"Content-Type", b"text/plain; charset=utf-8"),
            (b"Connection", b"close"),
        ]
        await self.send_response(status_code, message.encode("utf-8"), headers=headers)

    async def shutdown_and_clean_up(self) -> None:
        """
        Half-close our end, let the client drain, then close for real.

        See https://h11.readthedocs.io/en/latest/api.html#closing-connections
        """
        if self._closed:
            return
        self._closed = True
        try:
            await self.stream.send_eof()
        except (trio.BrokenResourceError, trio.ClosedResourceError):
            await trio.aclose_forcefully(self.stream)
            return
        with trio.move_on_after(self.shutdown_timeout):
            try:
                while True:
                    got = await self.stream.receive_some(MAX_RECV)
                    if not got:
                        break
            except (trio.BrokenResourceError, trio.ClosedResourceError):
                pass
        await trio.aclose_forcefully(self.stream)

    async def ensure_shutdown(self) -> None:
        """Close the stream, unless it has been closed already."""
        if not self._closed:
            self._closed = True
            await trio.aclose_forcefully(self.stream)

    def basic_headers(self) -> Headers:
        # HTTP requires these headers in all responses (client would do
        # something different here)
        return [
            (b"Date", format_date_time(None).encode("ascii")),
            (b"Server", self.ident),
        ]

    def info(self, message: str) -> None:
        logger.info("%d: %s", self._obj_id, message)

    def error(self, message: str) -> None:
        logger.error("%d: %s", self._obj_id, message)
