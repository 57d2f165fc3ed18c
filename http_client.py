"""Async client for the WaitMe broker's HTTP protocol.

Used by proxy instances to forward requests to the primary broker, and by
any Python-side UI or tooling that wants to list or answer requests.
"""
import logging

import httpx

from models import Answer, HumanRequest, HumanResponse

logger = logging.getLogger(__name__)


class TransportFailure(RuntimeError):
    """The broker could not be reached, or answered with an unexpected status."""


class BrokerClient:
    """Talks to the broker at http://host:port."""

    def __init__(self, host: str = "127.0.0.1", port: int = 19528, timeout: float = 10.0):
        self.base_url = f"http://{host}:{port}"
        self._timeout = timeout

    async def _request(self, method: str, path: str, *, allow_404: bool = False, **kwargs) -> dict | None:
        """Issue one call; returns the JSON body, or None for an allowed 404."""
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self._timeout) as client:
                resp = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise TransportFailure(f"{method} {path} failed: {type(e).__name__}: {e}") from e
        if resp.status_code == 404 and allow_404:
            return None
        if resp.status_code >= 400:
            raise TransportFailure(f"{method} {path} returned HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError as e:
            raise TransportFailure(f"{method} {path} returned invalid JSON") from e

    async def health(self) -> dict | None:
        """Broker status and pending count, or None if no broker answers."""
        try:
            return await self._request("GET", "/api/health")
        except TransportFailure as e:
            logger.debug(f"Health check failed: {e}")
            return None

    async def list_requests(self, origin_path: str | None = None) -> list[HumanRequest]:
        params = {"originPath": origin_path} if origin_path is not None else None
        data = await self._request("GET", "/api/requests", params=params)
        return [HumanRequest.from_dict(r) for r in data.get("requests", [])]

    async def list_clients(self) -> list[dict]:
        data = await self._request("GET", "/api/clients")
        return data.get("clients", [])

    async def register(self, client_id: str, origin_path: str) -> None:
        await self._request("POST", "/api/register", json={"clientId": client_id, "originPath": origin_path})

    async def respond(self, answer: Answer) -> bool:
        """Answer a request. False if the broker no longer knows it."""
        data = await self._request("POST", "/api/response", json=answer.to_dict(), allow_404=True)
        return data is not None

    async def delete_request(self, request_id: str) -> bool:
        data = await self._request("DELETE", f"/api/request/{request_id}", allow_404=True)
        return data is not None

    async def restart(self) -> int:
        data = await self._request("POST", "/api/restart")
        return data.get("cleared", 0)

    async def proxy_add(self, request: HumanRequest) -> None:
        await self._request("POST", "/api/proxy/add", json=request.to_dict())

    async def proxy_poll(self, request_id: str) -> tuple[HumanResponse | None, bool]:
        """(answer, completed) for a relayed request."""
        data = await self._request("GET", f"/api/proxy/poll/{request_id}")
        raw = data.get("response")
        if raw:
            try:
                return HumanResponse.from_dict(raw), True
            except ValueError as e:
                raise TransportFailure(f"Malformed response for {request_id}: {e}") from e
        return None, bool(data.get("completed"))
