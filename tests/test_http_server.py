"""Tests for the broker's HTTP surface and port arbitration primitive.

Verifies that:
- every endpoint maps onto the correlation store as documented
- malformed or mistyped JSON bodies yield 400 {error} and change nothing
- unknown routes yield 404 {error}
- /ui serves the browser answering page
- CORS is permissive for local UIs
- bind_listener() distinguishes "address in use" from other bind failures
"""

import os
import socket
import sys

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from http_server import BindFailure, bind_listener, create_app
from models import HumanRequest
from store import DELETED_TEXT, RESTARTED_TEXT, CorrelationStore


@pytest.fixture
def store():
    return CorrelationStore()


@pytest.fixture
def client(store):
    return TestClient(create_app(store))


def submit(store, message="Proceed?", origin="/work/alpha", options=None):
    req = HumanRequest(message=message, origin_path=origin, options=options or [])
    return req, store.submit(req)


# ============================================================
# Health and listing
# ============================================================


class TestHealth:
    def test_health_reports_pending(self, client, store):
        """Health returns status and the live request count."""
        assert client.get("/api/health").json() == {"status": "ok", "pendingCount": 0}
        submit(store)
        submit(store)
        assert client.get("/api/health").json()["pendingCount"] == 2


class TestListRequests:
    def test_lists_all(self, client, store):
        """Unscoped listing returns every pending request in wire form."""
        req, _ = submit(store, options=["A", "B"])
        data = client.get("/api/requests").json()
        assert data == {"requests": [req.to_dict()]}
        wire = data["requests"][0]
        assert wire["id"] == req.id
        assert wire["originPath"] == "/work/alpha"
        assert wire["options"] == ["A", "B"]
        assert wire["richTextHint"] is True
        assert wire["createdAt"]

    def test_scoped_by_origin(self, client, store):
        """originPath filters the listing; no match gives an empty list."""
        a, _ = submit(store, origin="/work/alpha")
        submit(store, origin="/work/beta")
        data = client.get("/api/requests", params={"originPath": "/work/alpha"}).json()
        assert [r["id"] for r in data["requests"]] == [a.id]
        empty = client.get("/api/requests", params={"originPath": "/none"}).json()
        assert empty == {"requests": []}

    def test_empty_origin_is_unscoped(self, client, store):
        """An empty originPath query lists every request."""
        submit(store, origin="/work/alpha")
        submit(store, origin="/work/beta")
        data = client.get("/api/requests", params={"originPath": ""}).json()
        assert len(data["requests"]) == 2

    def test_legacy_poll_alias(self, client, store):
        """/api/poll serves the same listing as /api/requests."""
        submit(store)
        assert client.get("/api/poll").json() == client.get("/api/requests").json()


# ============================================================
# Respond
# ============================================================


class TestRespond:
    def test_respond_resolves_waiter(self, client, store):
        """A posted answer reaches the waiter and unlists the request."""
        req, waiter = submit(store)
        resp = client.post("/api/response", json={
            "id": req.id,
            "freeText": "go ahead",
            "chosenOptions": ["B"],
            "attachments": [{"data": "aGk=", "mediaType": "image/png", "filename": "a.png"}],
        })
        assert resp.status_code == 200
        assert resp.json() == {"success": True}
        response = waiter.result(timeout=1)
        assert response.free_text == "go ahead"
        assert response.chosen_options == ["B"]
        assert response.attachments[0].filename == "a.png"
        assert client.get("/api/requests").json() == {"requests": []}

    def test_second_respond_404(self, client, store):
        """Answering twice: the second call is 404."""
        req, _ = submit(store)
        assert client.post("/api/response", json={"id": req.id}).status_code == 200
        resp = client.post("/api/response", json={"id": req.id})
        assert resp.status_code == 404
        assert resp.json() == {"error": "Request not found"}

    def test_unknown_id_404(self, client):
        """Answering an unknown id is 404."""
        resp = client.post("/api/response", json={"id": "nope", "freeText": "x"})
        assert resp.status_code == 404

    def test_malformed_json_400(self, client, store):
        """Invalid JSON is rejected with 400 and no state change."""
        req, waiter = submit(store)
        resp = client.post("/api/response", content=b"{not json",
                           headers={"Content-Type": "application/json"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Invalid JSON"}
        assert store.pending_count() == 1
        assert not waiter.done()

    def test_non_object_body_400(self, client):
        """A JSON array body is rejected."""
        resp = client.post("/api/response", json=["x"])
        assert resp.status_code == 400
        assert "error" in resp.json()

    def test_missing_id_400(self, client):
        """An answer without an id is malformed."""
        resp = client.post("/api/response", json={"freeText": "hi"})
        assert resp.status_code == 400

    def test_bad_field_types_400(self, client, store):
        """Mistyped options or attachments are rejected and the request stays pending."""
        req, waiter = submit(store)
        bad_options = client.post("/api/response", json={"id": req.id, "chosenOptions": "B"})
        assert bad_options.status_code == 400
        bad_image = client.post("/api/response", json={"id": req.id, "attachments": [{"data": "x"}]})
        assert bad_image.status_code == 400
        assert store.pending_count() == 1
        assert not waiter.done()


# ============================================================
# Delete / register / restart
# ============================================================


class TestDelete:
    def test_delete_cancels_request(self, client, store):
        """DELETE wakes the waiter with the removed-by-user text."""
        req, waiter = submit(store)
        resp = client.delete(f"/api/request/{req.id}")
        assert resp.status_code == 200
        assert resp.json() == {"success": True}
        assert waiter.result(timeout=1).free_text == DELETED_TEXT

    def test_delete_twice_404(self, client, store):
        """The second DELETE on the same id is 404."""
        req, _ = submit(store)
        client.delete(f"/api/request/{req.id}")
        resp = client.delete(f"/api/request/{req.id}")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Request not found"}


class TestRegister:
    def test_register_always_succeeds(self, client, store):
        """Registering a window is informational and repeatable."""
        body = {"clientId": "win-1", "originPath": "/work/alpha"}
        assert client.post("/api/register", json=body).json() == {"success": True}
        assert client.post("/api/register", json=body).json() == {"success": True}
        clients = client.get("/api/clients").json()["clients"]
        assert [(c["clientId"], c["originPath"]) for c in clients] == [("win-1", "/work/alpha")]

    def test_register_malformed_400(self, client, store):
        """A registration without a clientId is rejected."""
        resp = client.post("/api/register", json={"originPath": "/work/alpha"})
        assert resp.status_code == 400
        assert store.clients() == []


class TestRestart:
    def test_restart_cancels_all(self, client, store):
        """Restart cancels every pending request broker-wide."""
        waiters = [submit(store, origin=f"/work/{i}")[1] for i in range(3)]
        resp = client.post("/api/restart")
        assert resp.json() == {"success": True, "cleared": 3}
        for w in waiters:
            assert w.result(timeout=1).free_text == RESTARTED_TEXT
        assert client.get("/api/health").json()["pendingCount"] == 0

    def test_restart_repeatable(self, client):
        """A second restart succeeds and clears nothing more."""
        client.post("/api/restart")
        assert client.post("/api/restart").json() == {"success": True, "cleared": 0}


# ============================================================
# Proxy endpoints
# ============================================================


class TestProxyEndpoints:
    def test_add_then_poll_pending(self, client, store):
        """A relayed request is listed and polls as not completed."""
        req = HumanRequest(message="From proxy", origin_path="/work/proxy")
        assert client.post("/api/proxy/add", json=req.to_dict()).json() == {"success": True}
        assert [r.id for r in store.list_requests()] == [req.id]
        poll = client.get(f"/api/proxy/poll/{req.id}").json()
        assert poll == {"response": None, "completed": False}

    def test_poll_returns_answer_once(self, client, store):
        """The answer is handed out on the first poll only."""
        req = HumanRequest(message="From proxy", origin_path="/work/proxy")
        client.post("/api/proxy/add", json=req.to_dict())
        client.post("/api/response", json={"id": req.id, "chosenOptions": ["B"]})
        first = client.get(f"/api/proxy/poll/{req.id}").json()
        assert first["response"]["requestId"] == req.id
        assert first["response"]["chosenOptions"] == ["B"]
        assert first["response"]["originPath"] == "/work/proxy"
        second = client.get(f"/api/proxy/poll/{req.id}").json()
        assert second == {"response": None, "completed": True}

    def test_poll_unknown_completed(self, client):
        """Polling an id the broker never saw reports completed without answer."""
        assert client.get("/api/proxy/poll/ghost").json() == {"response": None, "completed": True}

    def test_add_malformed_400(self, client, store):
        """A relayed request missing its message is rejected."""
        resp = client.post("/api/proxy/add", json={"id": "x", "originPath": "/w"})
        assert resp.status_code == 400
        assert store.pending_count() == 0


# ============================================================
# Routing and CORS
# ============================================================


class TestRouting:
    def test_ui_page(self, client):
        """/ui serves an HTML page that drives the JSON endpoints."""
        resp = client.get("/ui")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/html")
        assert "<title>WaitMe</title>" in resp.text
        assert "/api/requests" in resp.text
        assert "/api/response" in resp.text

    def test_unknown_route_404(self, client):
        """Unknown paths answer 404 with a JSON error."""
        resp = client.get("/api/nothing-here")
        assert resp.status_code == 404
        assert "error" in resp.json()

    def test_cors_headers(self, client):
        """Responses allow any origin."""
        resp = client.get("/api/health", headers={"Origin": "vscode-webview://panel"})
        assert resp.headers["access-control-allow-origin"] == "*"

    def test_cors_preflight(self, client):
        """Preflight for DELETE from a webview is accepted."""
        resp = client.options("/api/request/abc", headers={
            "Origin": "vscode-webview://panel",
            "Access-Control-Request-Method": "DELETE",
        })
        assert resp.status_code == 200
        assert "DELETE" in resp.headers["access-control-allow-methods"]


# ============================================================
# bind_listener
# ============================================================


class TestBindListener:
    def test_binds_free_port(self):
        """A free port is bound and listening."""
        sock = bind_listener("127.0.0.1", 0)
        try:
            assert sock is not None
            host, port = sock.getsockname()
            assert host == "127.0.0.1"
            assert port > 0
        finally:
            sock.close()

    def test_port_in_use_returns_none(self):
        """A port already owned by another listener is a conflict, not an error."""
        owner = bind_listener("127.0.0.1", 0)
        try:
            port = owner.getsockname()[1]
            assert bind_listener("127.0.0.1", port) is None
        finally:
            owner.close()

    def test_other_bind_error_raises(self):
        """An address this host does not own raises BindFailure."""
        # 192.0.2.0/24 is TEST-NET-1, never assigned to a local interface
        with pytest.raises(BindFailure, match="192.0.2.1"):
            bind_listener("192.0.2.1", 0)

    def test_conflict_with_plain_socket(self):
        """The conflict is detected against any listener, not just our own."""
        other = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            other.bind(("127.0.0.1", 0))
            other.listen(1)
            assert bind_listener("127.0.0.1", other.getsockname()[1]) is None
        finally:
            other.close()
