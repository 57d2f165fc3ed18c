"""
WaitMe broker HTTP surface: the FastAPI application.

Wires the correlation store to the loopback HTTP protocol used by editor
panels and by proxy instances:
- GET    /api/health               liveness and pending count
- GET    /api/requests, /api/poll  pending requests, optionally by originPath
- GET    /api/clients              window registrations
- POST   /api/register             register a window for a project
- POST   /api/response             answer a request
- DELETE /api/request/{id}         cancel a request on the human's behalf
- POST   /api/proxy/add            enqueue a request relayed by a proxy
- GET    /api/proxy/poll/{id}      claim a relayed request's answer
- POST   /api/restart              cancel every pending request
- GET    /ui                       minimal browser page for answering requests

The listening socket is bound up front by bind_listener() so that "port
already owned by another broker" is an explicit outcome rather than a
uvicorn startup failure.
"""
import errno
import logging
import platform
import socket
import threading
import time

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from models import Answer, HumanRequest
from store import CorrelationStore

logger = logging.getLogger(__name__)

IS_WINDOWS = platform.system() == "Windows"

_ADDR_IN_USE = {errno.EADDRINUSE}
if hasattr(errno, "WSAEADDRINUSE"):
    _ADDR_IN_USE.add(errno.WSAEADDRINUSE)


class BindFailure(RuntimeError):
    """The broker port could not be bound for a reason other than it being taken."""


def bind_listener(host: str, port: int) -> socket.socket | None:
    """Bind and listen on host:port.

    Returns None when another process already owns the address; raises
    BindFailure for any other bind error.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    # On Windows SO_REUSEADDR lets a second process steal a bound port
    if not IS_WINDOWS:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
        sock.listen(128)
    except OSError as e:
        sock.close()
        if e.errno in _ADDR_IN_USE:
            return None
        raise BindFailure(f"Cannot bind {host}:{port}: {e}") from e
    return sock


async def _read_json(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError as e:
        logger.warning(f"Invalid JSON on {request.url.path}: {e}")
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object")
    return body


# Minimal answering page for when no editor panel is available. Rendered
# client-side from /api/requests; request text is inserted as text, never HTML.
_UI_PAGE = """<!doctype html>
<html><head><meta charset='utf-8'/>
<title>WaitMe</title>
<meta name='viewport' content='width=device-width, initial-scale=1'/>
<style>
body{font-family:ui-sans-serif,system-ui,-apple-system,Segoe UI,Roboto,Arial;max-width:900px;margin:24px auto;padding:0 16px;}
h1{font-size:20px;margin:0 0 16px 0}
.muted{color:#6b7280;font-size:12px}
.card{border:1px solid #e5e7eb;border-radius:8px;padding:12px;margin:0 0 12px 0}
.message{white-space:pre-wrap;margin:8px 0}
button{margin:0 6px 6px 0;padding:4px 10px}
textarea{width:100%;min-height:60px;box-sizing:border-box}
</style></head>
<body>
<h1>WaitMe: pending requests</h1>
<div id='requests'></div>
<script>
async function submitAnswer(id, answer) {
  await fetch('/api/response', {
    method: 'POST',
    headers: {'Content-Type': 'application/json'},
    body: JSON.stringify(Object.assign({id: id}, answer)),
  });
  loadRequests();
}

function el(tag, cls, text) {
  const node = document.createElement(tag);
  if (cls) node.className = cls;
  if (text !== undefined) node.textContent = text;
  return node;
}

function renderRequest(req) {
  const card = el('div', 'card');
  card.appendChild(el('div', 'muted', req.originPath));
  card.appendChild(el('div', 'message', req.message));
  for (const option of req.options) {
    const button = el('button', null, option);
    button.onclick = () => submitAnswer(req.id, {chosenOptions: [option]});
    card.appendChild(button);
  }
  const input = el('textarea');
  input.placeholder = 'Type a reply...';
  card.appendChild(input);
  const send = el('button', null, 'Send');
  send.onclick = () => submitAnswer(req.id, {freeText: input.value});
  card.appendChild(send);
  return card;
}

async function loadRequests() {
  const container = document.getElementById('requests');
  if (container.contains(document.activeElement)) return;
  const data = await (await fetch('/api/requests')).json();
  container.replaceChildren();
  if (data.requests.length === 0) {
    container.appendChild(el('p', 'muted', 'No pending requests'));
    return;
  }
  data.requests.forEach(req => container.appendChild(renderRequest(req)));
}

loadRequests();
setInterval(loadRequests, 2000);
</script>
</body></html>
"""


def create_app(store: CorrelationStore) -> FastAPI:
    app = FastAPI(title="WaitMe Broker", version="0.1.0")
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code)

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "pendingCount": store.pending_count()}

    @app.get("/api/requests")
    @app.get("/api/poll")
    async def list_requests(originPath: str | None = None):
        """Pending requests; all of them unless scoped to one project."""
        return {"requests": [r.to_dict() for r in store.list_requests(originPath or None)]}

    @app.get("/api/clients")
    async def list_clients():
        return {"clients": store.clients()}

    @app.post("/api/register")
    async def register(request: Request):
        body = await _read_json(request)
        client_id = body.get("clientId")
        origin_path = body.get("originPath", "")
        if not isinstance(client_id, str) or not client_id or not isinstance(origin_path, str):
            raise HTTPException(status_code=400, detail="'clientId' and 'originPath' must be strings")
        store.register_client(client_id, origin_path)
        return {"success": True}

    @app.post("/api/response")
    async def respond(request: Request):
        body = await _read_json(request)
        try:
            answer = Answer.from_dict(body)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        resolved = store.resolve(
            answer.request_id,
            free_text=answer.free_text,
            chosen_options=answer.chosen_options,
            attachments=answer.attachments,
        )
        if not resolved:
            raise HTTPException(status_code=404, detail="Request not found")
        return {"success": True}

    @app.delete("/api/request/{request_id}")
    async def delete_request(request_id: str):
        if not store.delete(request_id):
            raise HTTPException(status_code=404, detail="Request not found")
        return {"success": True}

    @app.post("/api/proxy/add")
    async def proxy_add(request: Request):
        body = await _read_json(request)
        try:
            relayed = HumanRequest.from_dict(body)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        store.add_relayed(relayed)
        return {"success": True}

    @app.get("/api/proxy/poll/{request_id}")
    async def proxy_poll(request_id: str):
        response, completed = store.claim(request_id)
        if response is not None:
            return {"response": response.to_dict()}
        return {"response": None, "completed": completed}

    @app.post("/api/restart")
    async def restart():
        cleared = store.clear_all()
        return {"success": True, "cleared": cleared}

    @app.get("/ui", response_class=HTMLResponse)
    async def ui():
        return HTMLResponse(_UI_PAGE)

    return app


class BrokerServer:
    """Serves the broker app on an already-bound socket."""

    def __init__(self, store: CorrelationStore, sock: socket.socket):
        self.store = store
        self._sock = sock
        host, port = sock.getsockname()[:2]
        self.url = f"http://{host}:{port}"
        # log_config=None keeps uvicorn off stdout, which belongs to MCP
        config = uvicorn.Config(
            create_app(store),
            log_config=None,
            access_log=False,
            lifespan="off",
        )
        self._server = uvicorn.Server(config)
        self._thread: threading.Thread | None = None

    def start(self, ready_timeout: float = 5.0) -> None:
        """Serve from a daemon thread; returns once the server accepts connections."""
        self._thread = threading.Thread(
            target=self._server.run,
            kwargs={"sockets": [self._sock]},
            name="waitme-http",
            daemon=True,
        )
        self._thread.start()
        deadline = time.monotonic() + ready_timeout
        while not self._server.started:
            if not self._thread.is_alive() or time.monotonic() > deadline:
                raise RuntimeError(f"Broker HTTP server failed to start on {self.url}")
            time.sleep(0.01)
        logger.info(f"HTTP server listening on {self.url}")

    def run(self) -> None:
        """Serve in the foreground until SIGINT/SIGTERM."""
        logger.info(f"HTTP server listening on {self.url}")
        self._server.run(sockets=[self._sock])

    def stop(self, timeout: float = 5.0) -> None:
        self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self._sock.close()
        logger.info("HTTP server stopped")
