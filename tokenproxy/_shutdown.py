import logging
import signal
from typing import Awaitable, Callable, Iterable, List

import trio


logger = logging.getLogger("tokenproxy.shutdown")

Handler = Callable[[trio.SocketStream], Awaitable[None]]


class ShutdownCoordinator:
    """
    Owns the accept loops and every connection task they spawn.

    On shutdown() it stops accepting at once, gives the connections
    that are still open `grace` seconds to finish, and then cancels
    whatever is left. Calling shutdown() again changes nothing.
    """

    def __init__(self, grace: float):
        self.grace = grace
        self.in_flight = 0
        self._shutdown_requested = False
        self._accepting = trio.CancelScope()
        self._done = trio.Event()

    @property
    def shutting_down(self) -> bool:
        return self._shutdown_requested

    @property
    def done(self) -> trio.Event:
        """Set once every connection has ended and the listeners are closed."""
        return self._done

    async def wait_done(self) -> None:
        await self._done.wait()

    def shutdown(self) -> None:
        if self._shutdown_requested:
            return
        self._shutdown_requested = True
        logger.info("Shutting down; %d connection(s) still open", self.in_flight)
        self._accepting.cancel()

    async def serve(
            self,
            handler: Handler,
            listeners: List[trio.SocketListener],
            *,
            task_status=trio.TASK_STATUS_IGNORED,
        ) -> None:
        """
        Accept connections on all `listeners` until shutdown() is called,
        running `handler` on each one in its own task.

        A failing accept() is not survivable: the exception propagates,
        and takes the open connections down with it.
        """
        try:
            async with trio.open_nursery() as sessions:
                with self._accepting:
                    async with trio.open_nursery() as acceptors:
                        for listener in listeners:
                            acceptors.start_soon(self._accept_loop, listener, handler, sessions)
                        task_status.started(listeners)

                for listener in listeners:
                    await trio.aclose_forcefully(listener)
                if self.in_flight:
                    logger.info("Waiting up to %.1fs for %d connection(s)", self.grace, self.in_flight)
                sessions.cancel_scope.deadline = trio.current_time() + self.grace
        finally:
            self._done.set()

        if sessions.cancel_scope.cancel_called:
            logger.warning("Grace period over, remaining connections were closed")
        logger.info("All connections closed")

    async def _accept_loop(self, listener: trio.SocketListener, handler: Handler, sessions: trio.Nursery) -> None:
        while True:
            stream = await listener.accept()
            sessions.start_soon(self._run_session, handler, stream)

    async def _run_session(self, handler: Handler, stream: trio.SocketStream) -> None:
        self.in_flight += 1
        try:
            await handler(stream)
        except Exception:
            # One broken connection must not take the server down.
            logger.exception("Unhandled error in connection handler")
        finally:
            self.in_flight -= 1

    async def watch_signals(self, signals: Iterable[int] = (signal.SIGINT, signal.SIGTERM)) -> None:
        """Turn termination signals into shutdown(). Runs until cancelled."""
        with trio.open_signal_receiver(*signals) as received:
            async for signum in received:
                if self._shutdown_requested:
                    logger.info("Signal %d during shutdown, ignored", signum)
                    continue
                logger.info("Received signal %d", signum)
                self.shutdown()
