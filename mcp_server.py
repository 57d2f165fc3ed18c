"""WaitMe: MCP server that lets an agent stop and ask the human.

Exposes a single MCP tool, ``ask-human``. Each call is queued with the local
request broker and suspends until someone answers it from an editor panel,
then comes back to the agent as text plus inline images.

Architecture:
  agent --JSON-RPC/stdio--> mcp_server.py --> broker (primary: in-process store,
                                                      proxy: HTTP to the primary)
                                                  ^
                            editor panel --HTTP---+  (GET /api/requests, POST /api/response)

The first WaitMe process on the machine owns the broker port; later ones
relay through it, so every agent's question lands in the same queue.
"""

import logging
import os
import signal
import sys
import threading
import time
from io import TextIOWrapper

import anyio
from mcp.server.fastmcp import FastMCP
from mcp.server.stdio import stdio_server
from mcp.types import CallToolResult, ImageContent, TextContent

from broker import start_broker
from config import config
from http_server import BindFailure
from models import HumanRequest, HumanResponse, ImageAttachment

logger = logging.getLogger("waitme")

mcp = FastMCP("waitme")

PREVIEW_CHARS = 50
NO_CONTENT_TEXT = "The user did not provide any content."


# ---------------------------------------------------------------------------
# Singleton broker
# ---------------------------------------------------------------------------

_broker = None


def get_broker():
    """The process-wide broker role, chosen by port arbitration on first use."""
    global _broker
    if _broker is None:
        _broker = start_broker()
    return _broker


# ---------------------------------------------------------------------------
# Response formatting
# ---------------------------------------------------------------------------

def _strip_data_prefix(data: str) -> str:
    """Drop a ``data:image/png;base64,`` header, keeping the bare base64."""
    if data.startswith("data:") and "," in data:
        return data.split(",", 1)[1]
    return data


def _format_size(num_bytes: int) -> str:
    if num_bytes < 1024:
        return f"{num_bytes} B"
    if num_bytes < 1024 * 1024:
        return f"{num_bytes / 1024:.1f} KB"
    return f"{num_bytes / (1024 * 1024):.1f} MB"


def _describe_image(index: int, image: ImageAttachment) -> str:
    """Text stand-in for an image, for clients that cannot render one."""
    encoded_len = len(image.data)
    preview = image.data[:PREVIEW_CHARS] + "..." if encoded_len > PREVIEW_CHARS else image.data
    estimated = len(_strip_data_prefix(image.data)) * 3 // 4
    lines = [f"=== Image {index} ==="]
    if image.filename:
        lines.append(f"Filename: {image.filename}")
    lines.append(f"Type: {image.media_type}")
    lines.append(f"Size: {_format_size(estimated)}")
    lines.append(f"Base64 preview: {preview}")
    lines.append(f"Full Base64 length: {encoded_len} characters")
    return "\n".join(lines)


def build_tool_result(response: HumanResponse) -> CallToolResult:
    """Turn the human's answer into the tool's content parts.

    Images come first, one part each, followed by a single text part with the
    chosen options, the free text, and a description of every image.
    """
    content = []
    text_parts = []

    if response.chosen_options:
        text_parts.append(f"Selected options: {', '.join(response.chosen_options)}")

    if response.free_text and response.free_text.strip():
        text_parts.append(response.free_text.strip())

    for i, image in enumerate(response.attachments, start=1):
        content.append(ImageContent(
            type="image",
            data=_strip_data_prefix(image.data),
            mimeType=image.media_type,
        ))
        text_parts.append(_describe_image(i, image))

    if response.attachments:
        text_parts.append(
            f"Note: the user attached {len(response.attachments)} image(s). If they cannot be "
            "displayed, the image data is described in the Base64 details above."
        )

    if text_parts:
        content.append(TextContent(type="text", text="\n\n".join(text_parts)))

    if not content:
        content.append(TextContent(type="text", text=NO_CONTENT_TEXT))

    return CallToolResult(content=content)


def _error_result(message: str) -> CallToolResult:
    return CallToolResult(content=[TextContent(type="text", text=f"Error: {message}")], isError=True)


# ---------------------------------------------------------------------------
# MCP Tools
# ---------------------------------------------------------------------------

@mcp.tool(name="ask-human", description="Ask the user a question and wait for their answer.")
async def ask_human(message: str, options: list[str] | None = None, richText: bool = True) -> CallToolResult:
    """Ask the user a question and wait for their answer.

    Shows ``message`` in the user's editor panel, optionally with a list of
    predefined ``options`` to pick from, and blocks until the user replies.
    Set ``richText`` to false to show the message as literal text instead of
    Markdown. The reply can contain selected options, free text and images.

    Waits up to WAITME_TIMEOUT_SECONDS (default 86400, i.e. 24 hours).
    """
    if not message or not message.strip():
        return _error_result("'message' must be a non-empty string")

    request = HumanRequest(
        message=message,
        origin_path=os.getcwd(),
        options=list(options or []),
        rich_text=richText,
    )
    try:
        response = await get_broker().ask(request, timeout=config.TIMEOUT_SECONDS)
    except TimeoutError as e:
        logger.warning(f"Request {request.id} timed out: {e}")
        return _error_result(str(e))
    except Exception as e:
        logger.error(f"Request {request.id} failed: {type(e).__name__}: {e}")
        return _error_result(f"{type(e).__name__}: {e}")

    return build_tool_result(response)


# ---------------------------------------------------------------------------
# Shutdown drain
# ---------------------------------------------------------------------------

def wait_for_drain(pending_count, grace: float | None = None, interval: float | None = None) -> bool:
    """Wait up to *grace* seconds for *pending_count()* to reach zero.

    Returns True once nothing is pending, False if the grace period ran out
    with requests still outstanding (they are abandoned, not answered).
    """
    grace = config.DRAIN_SECONDS if grace is None else grace
    interval = config.DRAIN_INTERVAL if interval is None else interval

    remaining = pending_count()
    if remaining == 0:
        return True
    logger.info(f"Waiting for {remaining} pending requests to complete...")
    deadline = time.monotonic() + grace
    while True:
        left = deadline - time.monotonic()
        if left <= 0:
            break
        time.sleep(min(interval, left))
        remaining = pending_count()
        if remaining == 0:
            logger.info("All requests completed")
            return True
        logger.info(f"Still waiting... {remaining} requests remaining "
                    f"({max(deadline - time.monotonic(), 0):.0f}s left)")
    logger.warning(f"Drain period elapsed with {remaining} requests outstanding")
    return False


_shutdown_started = threading.Event()


def shutdown(reason: str) -> None:
    """Drain outstanding requests, then stop the broker. Runs at most once."""
    if _shutdown_started.is_set():
        return
    _shutdown_started.set()
    logger.info(f"Shutting down ({reason})...")
    if _broker is not None:
        wait_for_drain(_broker.pending_count)
        _broker.close()
    logger.info("MCP server stopped")


def _on_signal(signum, frame):
    # Drain off the main thread so the MCP loop can still deliver answers
    name = signal.Signals(signum).name

    def _drain_and_exit():
        shutdown(name)
        logging.shutdown()
        os._exit(0)

    threading.Thread(target=_drain_and_exit, name="waitme-drain", daemon=True).start()


def _install_signal_handlers() -> None:
    for sig_name in ("SIGINT", "SIGTERM", "SIGHUP"):
        sig = getattr(signal, sig_name, None)
        if sig is not None:
            signal.signal(sig, _on_signal)


def configure_logging() -> None:
    # stdout carries MCP JSON-RPC; all diagnostics go to stderr.
    # force: FastMCP installs its own root handler on construction
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="[waitme] %(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )


# ---------------------------------------------------------------------------
# Stdio transport
# ---------------------------------------------------------------------------

async def _lines_then_drain(stdin):
    """Pass client lines through; at EOF, drain before the session ends."""
    async for line in stdin:
        yield line
    # The session stays open until this returns, so answers given while
    # draining still reach the agent
    await anyio.to_thread.run_sync(shutdown, "stdin closed")


async def run_stdio(stdin=None) -> None:
    """Serve the MCP session on stdio until the client closes our stdin."""
    if stdin is None:
        stdin = anyio.wrap_file(TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace"))
    async with stdio_server(stdin=_lines_then_drain(stdin)) as (read_stream, write_stream):
        server = mcp._mcp_server
        await server.run(read_stream, write_stream, server.create_initialization_options())


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    configure_logging()
    try:
        broker = get_broker()
    except BindFailure as e:
        logger.error(f"Cannot start broker: {e}")
        sys.exit(1)
    _install_signal_handlers()
    logger.info(f"WaitMe MCP server running on stdio ({broker.mode} mode)")
    try:
        anyio.run(run_stdio)
    finally:
        shutdown("stdin closed")


if __name__ == "__main__":
    main()
