"""
WaitMe configuration from environment variables.

A .env file in the working directory is loaded first, so any of these can
be set there instead of in the editor's MCP launch config.

- WAITME_HOST: loopback address the broker binds and proxies dial (default 127.0.0.1)
- WAITME_PORT: well-known broker port (default 19528)
- WAITME_TIMEOUT_SECONDS: ceiling on a single ask-human call (default 24h)
- WAITME_POLL_INTERVAL: seconds between proxy polls (default 0.5)
- WAITME_DRAIN_SECONDS: shutdown grace period for pending requests (default 30)
- WAITME_DRAIN_INTERVAL: seconds between drain checks (default 1)
- WAITME_RESPONSE_TTL: seconds a relayed answer stays claimable (default 300)
- WAITME_LOG_LEVEL: logging level (default INFO)
"""
import os

from dotenv import load_dotenv

load_dotenv()


class Config:
    """WaitMe configuration from environment variables."""

    # Broker endpoint
    HOST: str = os.environ.get("WAITME_HOST", "127.0.0.1")
    PORT: int = int(os.environ.get("WAITME_PORT", "19528"))

    # ask-human ceiling (seconds)
    TIMEOUT_SECONDS: float = float(os.environ.get("WAITME_TIMEOUT_SECONDS", str(24 * 60 * 60)))

    # Proxy mode
    POLL_INTERVAL: float = float(os.environ.get("WAITME_POLL_INTERVAL", "0.5"))
    RESPONSE_TTL: float = float(os.environ.get("WAITME_RESPONSE_TTL", "300"))

    # Shutdown drain
    DRAIN_SECONDS: float = float(os.environ.get("WAITME_DRAIN_SECONDS", "30"))
    DRAIN_INTERVAL: float = float(os.environ.get("WAITME_DRAIN_INTERVAL", "1"))

    LOG_LEVEL: str = os.environ.get("WAITME_LOG_LEVEL", "INFO").upper()


config = Config()
