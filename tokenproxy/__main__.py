"""
Run the proxy as a process:

    AUTH_TOKEN=secret python -m tokenproxy --port 7788

SIGINT or SIGTERM stops accepting connections, and gives the open
ones the configured grace period before closing them.
"""

import logging
import sys
from typing import Optional, Sequence

import trio

from ._config import load_configuration
from ._errors import ConfigurationError
from ._proxy import TokenProxy


logger = logging.getLogger("tokenproxy")


async def serve_until_signalled(proxy: TokenProxy) -> None:
    async with trio.open_nursery() as nursery:
        nursery.start_soon(proxy.coordinator.watch_signals)
        await proxy.listen()
        nursery.cancel_scope.cancel()


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        config = load_configuration(argv)
    except ConfigurationError as e:
        print(f"tokenproxy: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger.info(
        "Starting: auth=%s, targets=%s, CONNECT %s, user agent %r",
        config.auth_scheme.value,
        config.target_mode.value,
        "allowed" if config.allow_connect else "refused",
        config.user_agent,
    )

    trio.run(serve_until_signalled, TokenProxy(config))
    return 0


if __name__ == "__main__":
    sys.exit(main())
