#!/usr/bin/env python3
"""Run the WaitMe broker on its own, without the MCP stdio surface.

Useful for keeping the request queue up while agents come and go: MCP
server processes started later find the port taken and relay through this
broker. Stop with Ctrl+C or SIGTERM.

Exit status: 0 on a clean stop, 1 if another broker already owns the port,
2 if the port cannot be bound for any other reason.
"""

import argparse
import logging
import sys

from config import config
from http_server import BindFailure, BrokerServer, bind_listener
from store import CorrelationStore

logger = logging.getLogger("waitme")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="WaitMe standalone request broker")
    parser.add_argument("--host", default=config.HOST, help="loopback address to bind (default: %(default)s)")
    parser.add_argument("--port", type=int, default=config.PORT, help="broker port (default: %(default)s)")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="[waitme] %(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        sock = bind_listener(args.host, args.port)
    except BindFailure as e:
        logger.error(f"Failed to start broker: {e}")
        return 2
    if sock is None:
        logger.error(f"Port {args.port} is already in use; another WaitMe broker is running")
        return 1

    server = BrokerServer(CorrelationStore(response_ttl=config.RESPONSE_TTL), sock)
    print(f"WaitMe broker running on {server.url}", file=sys.stderr, flush=True)
    print("Press Ctrl+C to stop", file=sys.stderr, flush=True)
    server.run()
    logger.info("Broker stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
