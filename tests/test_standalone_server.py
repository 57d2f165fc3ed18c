"""Tests for the standalone broker entry point's startup outcomes.

Verifies that:
- a port already owned by another broker exits with status 1
- any other bind failure exits with status 2
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from http_server import bind_listener
from standalone_server import main


class TestStartup:
    def test_port_taken_exits_1(self, caplog):
        """A second standalone broker on an owned port refuses to start."""
        owner = bind_listener("127.0.0.1", 0)
        try:
            port = owner.getsockname()[1]
            assert main(["--host", "127.0.0.1", "--port", str(port)]) == 1
        finally:
            owner.close()
        assert "already in use" in caplog.text

    def test_bind_failure_exits_2(self, caplog):
        """An unbindable address is fatal with its own status."""
        assert main(["--host", "192.0.2.1", "--port", "0"]) == 2
        assert "Failed to start broker" in caplog.text
