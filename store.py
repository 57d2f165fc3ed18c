"""Correlation store: the broker's live table of unanswered requests.

Each request is reachable by id and through a per-origin index, and is bound
to at most one waiter. A waiter is a ``concurrent.futures.Future`` so it can
be completed from the HTTP thread and awaited from the MCP event loop.
Requests relayed by a proxy have no in-process waiter; their answers are
parked in a claimable cache until the proxy polls for them.
"""

import concurrent.futures
import logging
import threading
import time

from models import HumanRequest, HumanResponse, ImageAttachment, now_iso

logger = logging.getLogger(__name__)

DELETED_TEXT = "[Request was removed by the user]"
RESTARTED_TEXT = "[Server restarted, request cancelled]"


class CorrelationStore:
    """Thread-safe table matching request ids to their waiting callers."""

    def __init__(self, response_ttl: float = 300.0):
        self._lock = threading.Lock()
        # Dicts keep insertion order, which is the listing order
        self._requests: dict[str, HumanRequest] = {}
        self._by_origin: dict[str, dict[str, HumanRequest]] = {}
        self._waiters: dict[str, concurrent.futures.Future] = {}
        self._relayed: set[str] = set()
        self._claimable: dict[str, tuple[float, HumanResponse]] = {}
        self._clients: dict[str, dict] = {}
        self._response_ttl = response_ttl

    # -- create ---------------------------------------------------------------

    def submit(self, request: HumanRequest) -> concurrent.futures.Future:
        """Insert *request* and return the future its answer will complete."""
        waiter = concurrent.futures.Future()
        with self._lock:
            if request.id in self._requests:
                raise ValueError(f"Request {request.id} is already pending")
            self._insert(request)
            self._waiters[request.id] = waiter
        logger.info(f"New request {request.id} for {request.origin_path}")
        return waiter

    def add_relayed(self, request: HumanRequest) -> bool:
        """Insert a request forwarded by a proxy. Returns False for a duplicate."""
        with self._lock:
            if request.id in self._requests:
                return False
            self._insert(request)
            self._relayed.add(request.id)
        logger.info(f"New relayed request {request.id} for {request.origin_path}")
        return True

    def _insert(self, request: HumanRequest) -> None:
        self._requests[request.id] = request
        self._by_origin.setdefault(request.origin_path, {})[request.id] = request

    # -- read -----------------------------------------------------------------

    def list_requests(self, origin_path: str | None = None) -> list[HumanRequest]:
        with self._lock:
            if origin_path is None:
                return list(self._requests.values())
            return list(self._by_origin.get(origin_path, {}).values())

    def get(self, request_id: str) -> HumanRequest | None:
        with self._lock:
            return self._requests.get(request_id)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._requests)

    # -- resolve --------------------------------------------------------------

    def resolve(self, request_id: str, free_text: str | None = None,
                chosen_options: list[str] | None = None,
                attachments: list[ImageAttachment] | None = None) -> bool:
        """Hand the human's answer to the waiter. False if *request_id* is not live."""
        with self._lock:
            request = self._remove(request_id)
            if request is None:
                return False
            response = HumanResponse(
                request_id=request_id,
                origin_path=request.origin_path,
                free_text=free_text,
                chosen_options=list(chosen_options or []),
                attachments=list(attachments or []),
            )
            waiter = self._settle(request_id, response)
        _deliver(waiter, response)
        logger.info(f"Request {request_id} answered")
        return True

    def delete(self, request_id: str) -> bool:
        """Cancel a request on the human's behalf. False if *request_id* is not live."""
        with self._lock:
            request = self._remove(request_id)
            if request is None:
                return False
            response = _synthetic(request, DELETED_TEXT)
            waiter = self._settle(request_id, response)
        _deliver(waiter, response)
        logger.info(f"Request {request_id} deleted by user")
        return True

    def abandon(self, request_id: str) -> bool:
        """Drop a request whose caller stopped waiting, without answering it."""
        with self._lock:
            request = self._remove(request_id)
            if request is None:
                return False
            self._waiters.pop(request_id, None)
            self._relayed.discard(request_id)
        logger.info(f"Request {request_id} abandoned by its caller")
        return True

    def clear_all(self) -> int:
        """Cancel every live request and forget all registrations."""
        deliveries = []
        with self._lock:
            count = len(self._requests)
            for request_id, request in list(self._requests.items()):
                self._remove(request_id)
                response = _synthetic(request, RESTARTED_TEXT)
                deliveries.append((self._settle(request_id, response), response))
            self._clients.clear()
        for waiter, response in deliveries:
            _deliver(waiter, response)
        logger.info(f"Server restarted, {count} pending requests cleared")
        return count

    def _remove(self, request_id: str) -> HumanRequest | None:
        """Drop *request_id* from the table and the origin index together."""
        request = self._requests.pop(request_id, None)
        if request is None:
            return None
        bucket = self._by_origin.get(request.origin_path)
        if bucket is not None:
            bucket.pop(request_id, None)
            if not bucket:
                del self._by_origin[request.origin_path]
        return request

    def _settle(self, request_id: str, response: HumanResponse):
        """Detach the waiter, parking the answer for a proxy when relayed."""
        waiter = self._waiters.pop(request_id, None)
        if request_id in self._relayed:
            self._relayed.discard(request_id)
            self._prune_claimable()
            self._claimable[request_id] = (time.monotonic(), response)
        return waiter

    # -- proxy handoff ----------------------------------------------------------

    def claim(self, request_id: str) -> tuple[HumanResponse | None, bool]:
        """Poll a relayed request: (answer, completed).

        Returns the parked answer once, then drops it. A live request gives
        (None, False); an id that is neither live nor parked gives (None, True).
        """
        with self._lock:
            self._prune_claimable()
            parked = self._claimable.pop(request_id, None)
            if parked is not None:
                return parked[1], True
            if request_id in self._requests:
                return None, False
            return None, True

    def _prune_claimable(self) -> None:
        cutoff = time.monotonic() - self._response_ttl
        for request_id in [k for k, (t, _) in self._claimable.items() if t < cutoff]:
            del self._claimable[request_id]

    # -- window registrations ---------------------------------------------------

    def register_client(self, client_id: str, origin_path: str) -> dict:
        entry = {"clientId": client_id, "originPath": origin_path, "registeredAt": now_iso()}
        with self._lock:
            self._clients[client_id] = entry
        logger.debug(f"Client {client_id} registered for {origin_path}")
        return entry

    def clients(self) -> list[dict]:
        with self._lock:
            return [dict(c) for c in self._clients.values()]


def _synthetic(request: HumanRequest, text: str) -> HumanResponse:
    return HumanResponse(request_id=request.id, origin_path=request.origin_path, free_text=text)


def _deliver(waiter: concurrent.futures.Future | None, response: HumanResponse) -> None:
    # A waiter cancelled by its caller's timeout no longer wants the answer
    if waiter is not None and waiter.set_running_or_notify_cancel():
        waiter.set_result(response)
