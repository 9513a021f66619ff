from __future__ import annotations

import asyncio
import socket
import threading
from typing import Any

import pytest

pytest.importorskip("websockets")

from mcp_servers.browser_bridge.bridge import BrowserBridge  # noqa: E402
from mcp_servers.browser_bridge.client import GatewayClient  # noqa: E402
from mcp_servers.browser_bridge.config import BridgeConfig  # noqa: E402
from mcp_servers.browser_bridge.errors import CallTimeout, NotConnected, RemoteCallError  # noqa: E402
from mcp_servers.browser_bridge.executor import ExecutorPeer  # noqa: E402
from mcp_servers.browser_bridge.registry import CommandRegistry  # noqa: E402


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


class _FakeExtension:
    """Executor side running on its own thread + loop, like a real extension process."""

    def __init__(self, config: BridgeConfig) -> None:
        self.config = config
        self._stop: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread = threading.Thread(target=lambda: asyncio.run(self._run()), daemon=True)
        self._ready = threading.Event()

    async def _run(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop = asyncio.Event()

        reg = CommandRegistry()
        reg.register("GetTitle", lambda args: "Example")

        def _boom(args: dict[str, Any]) -> Any:
            raise RuntimeError("boom")

        async def _hang(args: dict[str, Any]) -> Any:
            await asyncio.Event().wait()

        reg.register("DoThing", _boom)
        reg.register("Hang", _hang)

        client = GatewayClient(config=self.config)
        executor = ExecutorPeer(client, reg)
        await client.start()
        self._ready.set()
        try:
            await self._stop.wait()
        finally:
            await executor.close()
            await client.stop()

    def start(self) -> None:
        self._thread.start()
        assert self._ready.wait(timeout=3.0)

    def stop(self) -> None:
        if self._loop is not None and self._stop is not None:
            self._loop.call_soon_threadsafe(self._stop.set)
        self._thread.join(timeout=3.0)


def test_blocking_invoke_against_live_extension() -> None:
    cfg = BridgeConfig(host="127.0.0.1", port=_free_port(), reconnect_min_s=0.05, reconnect_max_s=0.2, call_timeout_s=5.0)
    bridge = BrowserBridge(cfg)
    ext = _FakeExtension(cfg)
    bridge.start(wait_timeout=3.0)
    ext.start()
    try:
        assert bridge.wait_for_connection(timeout=3.0)
        assert bridge.is_connected()

        assert bridge.invoke("GetTitle") == "Example"
        with pytest.raises(RemoteCallError) as excinfo:
            bridge.invoke("DoThing", {"x": 1})
        assert str(excinfo.value) == "boom"
        with pytest.raises(CallTimeout):
            bridge.invoke("Hang", timeout=0.1)

        st = bridge.status()
        assert st["running"] is True
        assert st["listening"] is True
        assert st["connected"] is True
        assert st["calls"]["completed"] == 1
        assert st["calls"]["failed"] == 1
        assert st["calls"]["timeouts"] == 1
        assert st["calls"]["pending"] == 0
    finally:
        ext.stop()
        bridge.stop()

    assert bridge.status()["running"] is False


def test_invoke_without_running_bridge_is_not_connected() -> None:
    bridge = BrowserBridge(BridgeConfig(port=_free_port()))
    assert bridge.status() == {"running": False, "listening": False, "connected": False}
    with pytest.raises(NotConnected):
        bridge.invoke("GetTitle")


def test_start_fails_loudly_when_port_is_taken() -> None:
    port = _free_port()
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", port))
    blocker.listen(1)
    bridge = BrowserBridge(BridgeConfig(host="127.0.0.1", port=port))
    try:
        with pytest.raises(RuntimeError):
            bridge.start(wait_timeout=0.3, require_listening=True)
    finally:
        blocker.close()
        bridge.stop()
