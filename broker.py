"""Broker roles and startup arbitration.

Whichever process binds the well-known port first becomes the primary and
keeps the request table in memory. Every later process becomes a proxy: it
forwards each request to the primary and polls for the answer. The role is
chosen once at startup and never changes.

    agent --stdio--> mcp_server.py (primary) <--HTTP-- editor panels
                            ^
    agent --stdio--> mcp_server.py (proxy) --HTTP proxy/add + proxy/poll--+
"""
import asyncio
import logging
import threading

import anyio

from config import config
from http_client import BrokerClient
from http_server import BrokerServer, bind_listener
from models import HumanRequest, HumanResponse
from store import CorrelationStore

logger = logging.getLogger(__name__)


class RequestLost(RuntimeError):
    """The primary no longer knows a relayed request and holds no answer for it."""


class LocalBroker:
    """Primary role: requests wait on the in-process correlation store."""

    mode = "primary"

    def __init__(self, store: CorrelationStore, server: BrokerServer | None = None):
        self.store = store
        self.server = server
        self._waiting: set[str] = set()
        self._lock = threading.Lock()

    async def ask(self, request: HumanRequest, timeout: float) -> HumanResponse:
        """Queue *request* and wait up to *timeout* seconds for the human."""
        waiter = self.store.submit(request)
        with self._lock:
            self._waiting.add(request.id)
        try:
            return await asyncio.wait_for(asyncio.wrap_future(waiter), timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(f"No response from the user within {timeout:g}s") from None
        finally:
            # No-op once answered; otherwise the entry must not outlive its caller
            self.store.abandon(request.id)
            with self._lock:
                self._waiting.discard(request.id)

    def pending_count(self) -> int:
        """Local callers still waiting plus requests relayed by proxies."""
        with self._lock:
            outstanding = set(self._waiting)
        outstanding.update(r.id for r in self.store.list_requests())
        return len(outstanding)

    def close(self) -> None:
        if self.server is not None:
            self.server.stop()


class ProxyBroker:
    """Proxy role: relays requests to the primary broker and polls for answers."""

    mode = "proxy"

    def __init__(self, client: BrokerClient, poll_interval: float = 0.5):
        self.client = client
        self.poll_interval = poll_interval
        self._waiting: set[str] = set()
        self._lock = threading.Lock()

    async def ask(self, request: HumanRequest, timeout: float) -> HumanResponse:
        with self._lock:
            self._waiting.add(request.id)
        answered = False
        try:
            response = await asyncio.wait_for(self._relay(request), timeout)
            answered = True
            return response
        except asyncio.TimeoutError:
            raise TimeoutError(f"No response from the user within {timeout:g}s") from None
        finally:
            if not answered:
                # Shielded so a cancelled caller still clears the primary's queue
                with anyio.CancelScope(shield=True):
                    await self._withdraw(request.id)
            with self._lock:
                self._waiting.discard(request.id)

    async def _relay(self, request: HumanRequest) -> HumanResponse:
        await self.client.proxy_add(request)
        while True:
            await asyncio.sleep(self.poll_interval)
            response, completed = await self.client.proxy_poll(request.id)
            if response is not None:
                return response
            if completed:
                raise RequestLost(f"Request {request.id} was completed without a response")

    async def _withdraw(self, request_id: str) -> None:
        """Remove an unanswered request from the primary's queue."""
        try:
            await self.client.delete_request(request_id)
        except Exception as e:
            logger.warning(f"Could not withdraw request {request_id} from primary: {e}")

    def pending_count(self) -> int:
        with self._lock:
            return len(self._waiting)

    def close(self) -> None:
        pass


def start_broker(host: str | None = None, port: int | None = None,
                 poll_interval: float | None = None,
                 response_ttl: float | None = None):
    """Become the primary broker if the port is free, otherwise a proxy to it."""
    host = host or config.HOST
    port = config.PORT if port is None else port
    sock = bind_listener(host, port)
    if sock is None:
        logger.info(f"Port {port} is already in use, running in proxy mode")
        return ProxyBroker(
            BrokerClient(host, port),
            poll_interval=config.POLL_INTERVAL if poll_interval is None else poll_interval,
        )

    store = CorrelationStore(
        response_ttl=config.RESPONSE_TTL if response_ttl is None else response_ttl,
    )
    server = BrokerServer(store, sock)
    server.start()
    logger.info(f"Running as primary broker on {server.url}")
    return LocalBroker(store, server)
