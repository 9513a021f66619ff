from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any

from .channel import ChannelState
from .config import BridgeConfig
from .dispatcher import DispatcherPeer
from .errors import CallTimeout, NotConnected
from .gateway import GatewayServer

logger = logging.getLogger("mcp.browser_bridge")


class BrowserBridge:
    """Blocking facade over the gateway + dispatcher for the (synchronous) MCP server.

    Design goals:
    - Sync API for tool handlers (blocking invoke / status / wait_for_connection).
    - Async core internally (runs in a dedicated daemon thread with its own event loop).
    - Fail-soft startup: a busy port is retried in the background and surfaced in status().
    """

    def __init__(self, config: BridgeConfig | None = None) -> None:
        self.config = config or BridgeConfig.from_env()

        self._lock = threading.Lock()
        self._ready = threading.Event()
        self._connected = threading.Event()

        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._stop_evt: asyncio.Event | None = None

        self._gateway: GatewayServer | None = None
        self._dispatcher: DispatcherPeer | None = None
        self._startup_error: str | None = None

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self, *, wait_timeout: float = 5.0, require_listening: bool = True) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        self._ready.clear()
        self._connected.clear()
        with self._lock:
            self._startup_error = None

        t = threading.Thread(target=self._run_thread, name="mcp-browser-bridge", daemon=True)
        self._thread = t
        t.start()

        deadline = time.time() + max(0.05, float(wait_timeout))
        self._ready.wait(timeout=max(0.0, deadline - time.time()))
        while time.time() < deadline:
            gw = self._gateway
            if gw is not None and gw.listening:
                return
            if not t.is_alive():
                break
            time.sleep(0.02)

        gw = self._gateway
        if gw is not None and gw.listening:
            return
        if not t.is_alive():
            raise RuntimeError(f"Browser bridge thread died during startup: {self._startup_error or 'unknown error'}")
        if require_listening:
            bind_error = gw.status().get("bindError") if gw is not None else None
            self.stop()
            raise RuntimeError(
                f"Browser bridge failed to listen on {self.config.host}:{self.config.port}: {bind_error or 'timeout'}"
            )

    def stop(self, *, timeout: float = 2.0) -> None:
        loop = self._loop
        stop_evt = self._stop_evt
        if loop is not None and stop_evt is not None:
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(stop_evt.set)
        t = self._thread
        if t is not None:
            t.join(timeout=timeout)
        self._connected.clear()

    def _run_thread(self) -> None:
        try:
            asyncio.run(self._run_async())
        except Exception as exc:  # noqa: BLE001
            with self._lock:
                self._startup_error = str(exc)
            logger.exception("browser bridge loop crashed")

    async def _run_async(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop_evt = asyncio.Event()

        gw = GatewayServer(config=self.config)
        gw.add_state_listener(self._on_state)
        dispatcher = DispatcherPeer(gw)
        with self._lock:
            self._gateway = gw
            self._dispatcher = dispatcher
        self._ready.set()

        try:
            await gw.start(wait_timeout=0.0, require_listening=False)
            await self._stop_evt.wait()
        finally:
            await gw.stop()
            with self._lock:
                self._dispatcher = None
            self._loop = None

    def _on_state(self, _old: ChannelState, new: ChannelState) -> None:
        if new is ChannelState.CONNECTED:
            self._connected.set()
        else:
            self._connected.clear()

    # ─────────────────────────────────────────────────────────────────────────
    # Calls
    # ─────────────────────────────────────────────────────────────────────────

    def is_connected(self) -> bool:
        return self._connected.is_set()

    def wait_for_connection(self, *, timeout: float = 5.0) -> bool:
        """Block until the extension is connected or timeout."""
        return bool(self._connected.wait(timeout=max(0.0, float(timeout))))

    def invoke(self, operation: str, arguments: Any = None, *, timeout: float | None = None) -> Any:
        """Call `operation` on the extension and block for its result.

        Raises RemoteCallError (extension reported failure), ConnectionLost, CallTimeout,
        or NotConnected (bridge not running / queuing disabled).
        """
        with self._lock:
            loop = self._loop
            dispatcher = self._dispatcher
        if loop is None or dispatcher is None:
            raise NotConnected("Browser bridge is not running")

        call_timeout = self.config.call_timeout_s if timeout is None else float(timeout)
        coro = dispatcher.invoke(operation, arguments, timeout=call_timeout)
        cfut = asyncio.run_coroutine_threadsafe(coro, loop)
        try:
            return cfut.result(timeout=(call_timeout + 1.0) if call_timeout else None)
        except CallTimeout:
            raise
        except FutureTimeoutError as exc:
            cfut.cancel()
            raise CallTimeout(f"call {operation!r} timed out") from exc

    def status(self) -> dict[str, Any]:
        with self._lock:
            loop = self._loop
            gw = self._gateway
            dispatcher = self._dispatcher
        running = bool(self._thread is not None and self._thread.is_alive() and loop is not None)
        if not running or gw is None or dispatcher is None:
            return {
                "running": False,
                "listening": False,
                "connected": False,
                **({"startupError": self._startup_error} if self._startup_error else {}),
            }

        async def _collect() -> dict[str, Any]:
            return {"running": True, **gw.status(), "calls": dispatcher.status()}

        try:
            return asyncio.run_coroutine_threadsafe(_collect(), loop).result(timeout=2.0)
        except Exception as exc:  # noqa: BLE001
            return {"running": True, "connected": self.is_connected(), "statusError": str(exc)}


__all__ = ["BrowserBridge"]
