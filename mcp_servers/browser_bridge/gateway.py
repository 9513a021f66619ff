from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import time
from typing import Any

import websockets
from websockets.datastructures import Headers as WsHeaders
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Response as WsResponse

from .channel import ConnectionManager, ReconnectBackoff
from .config import BridgeConfig
from .transport import WebSocketLink

BRIDGE_PROTOCOL_VERSION = "2026-10-01"
GATEWAY_WELL_KNOWN_PATH = "/.well-known/browser-bridge"

logger = logging.getLogger("mcp.browser_bridge.gateway")


def _now_ms() -> int:
    return int(time.time() * 1000)


class GatewayServer(ConnectionManager):
    """Local WebSocket gateway the browser extension dials into.

    - Exactly one active extension connection; a newer one replaces the older.
    - Bind failures are retried with bounded backoff until `stop()` (another process may
      still hold the port).
    - Non-upgrade HTTP requests get a tiny discovery document or 404.
    """

    def __init__(
        self,
        *,
        config: BridgeConfig | None = None,
        emit_keepalive: bool = False,
        name: str = "gateway",
    ) -> None:
        super().__init__(config=config, emit_keepalive=emit_keepalive, name=name)
        self.host = self.config.host
        self.port = int(self.config.port)
        self._server_started_at_ms = _now_ms()

        # NOTE: explicitly typed as Any to avoid coupling to a specific websockets server class.
        self._server: Any | None = None
        self._bind_error: str | None = None
        self._run_task: asyncio.Task[None] | None = None
        self._stopped = asyncio.Event()

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def listening(self) -> bool:
        return self._server is not None

    async def start(self, *, wait_timeout: float = 5.0, require_listening: bool = True) -> None:
        if self._run_task is not None and not self._run_task.done():
            return

        self._stopped.clear()
        self._bind_error = None
        loop = asyncio.get_running_loop()
        self._run_task = loop.create_task(self._serve_loop(), name=f"{self.name}-serve")

        deadline = loop.time() + max(0.0, float(wait_timeout))
        while True:
            if self._server is not None:
                return
            if self._run_task.done() or loop.time() >= deadline:
                break
            await asyncio.sleep(0.02)

        if self._server is not None:
            return
        if self._run_task.done():
            exc = None if self._run_task.cancelled() else self._run_task.exception()
            raise RuntimeError(f"Bridge gateway died during startup on {self.host}:{self.port}: {exc}")
        if require_listening:
            bind_error = self._bind_error
            await self.stop()
            if bind_error:
                raise RuntimeError(f"Bridge gateway bind failed on {self.host}:{self.port}: {bind_error}")
            raise RuntimeError(f"Bridge gateway failed to start on {self.host}:{self.port}")
        # Otherwise fail-soft: the serve loop keeps retrying the bind.

    async def stop(self, *, timeout: float = 2.0) -> None:
        self._stopped.set()
        await self.close_active("gateway stopping")
        task = self._run_task
        if task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except asyncio.TimeoutError:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            except Exception:  # noqa: BLE001
                logger.debug("gateway serve loop ended with error", exc_info=True)
        self._run_task = None

    async def _serve_loop(self) -> None:
        backoff = ReconnectBackoff.from_config(self.config)
        try:
            while not self._stopped.is_set():
                try:
                    server = await websockets.serve(
                        self._handle_connection,
                        self.host,
                        int(self.port),
                        process_request=self._process_request,
                        max_size=int(self.config.max_message_bytes),
                        ping_interval=None,
                    )
                except OSError as exc:
                    self._bind_error = str(exc)
                    self._record("error", f"gateway bind failed: {exc}")
                    logger.debug("gateway bind failed on %s:%s: %s", self.host, self.port, exc)
                    with contextlib.suppress(asyncio.TimeoutError):
                        await asyncio.wait_for(self._stopped.wait(), timeout=backoff.next_delay())
                    continue

                self._server = server
                self._bind_error = None
                backoff.reset()
                if int(self.port) == 0:
                    with contextlib.suppress(Exception):
                        self.port = int(next(iter(server.sockets)).getsockname()[1])
                logger.info("bridge gateway listening on %s:%s", self.host, self.port)
                self._record("info", f"gateway listening on {self.host}:{self.port}")
                await self._stopped.wait()
        finally:
            await self._close_server()

    async def _close_server(self) -> None:
        srv = self._server
        self._server = None
        if srv is None:
            return
        try:
            srv.close()
            await srv.wait_closed()
        except Exception:  # noqa: BLE001
            logger.debug("gateway close failed", exc_info=True)

    # ─────────────────────────────────────────────────────────────────────────
    # Connections
    # ─────────────────────────────────────────────────────────────────────────

    async def _handle_connection(self, ws) -> None:  # type: ignore[no-untyped-def]
        link = WebSocketLink(ws)
        logger.info("extension connected from %s", link.remote_address or "?")
        await self.attach(link)
        reason = "connection closed"
        try:
            async for raw in ws:
                await self.deliver(raw)
        except ConnectionClosed as exc:
            reason = f"connection closed ({exc})"
        finally:
            await self.detach(link, reason=reason)

    def _discovery_payload(self) -> dict[str, Any]:
        return {
            "type": "browserBridgeGateway",
            "protocolVersion": BRIDGE_PROTOCOL_VERSION,
            "serverStartedAtMs": int(self._server_started_at_ms),
            "gatewayPort": int(self.port),
            "pid": int(os.getpid()),
            "extensionConnected": bool(self.is_connected()),
        }

    def _process_request(self, _conn, request):  # type: ignore[no-untyped-def]
        """Let WS upgrades through; serve the discovery document for plain HTTP probes.

        The extension can probe with `fetch()` before opening a socket, which keeps its
        console quiet while no gateway is running.
        """
        try:
            upgrade = str(request.headers.get("Upgrade") or "").lower()
        except Exception:
            upgrade = ""
        if upgrade == "websocket":
            return None

        headers = WsHeaders()
        headers["Cache-Control"] = "no-store"
        headers["Access-Control-Allow-Origin"] = "*"
        path = str(getattr(request, "path", "") or "")
        if path != GATEWAY_WELL_KNOWN_PATH:
            headers["Content-Type"] = "text/plain"
            headers["Content-Length"] = "9"
            return WsResponse(404, "Not Found", headers, b"not found")

        body = json.dumps(self._discovery_payload(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        headers["Content-Type"] = "application/json"
        headers["Content-Length"] = str(len(body))
        return WsResponse(200, "OK", headers, body)

    # ─────────────────────────────────────────────────────────────────────────
    # Diagnostics
    # ─────────────────────────────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        base = super().status()
        return {
            "listening": self.listening,
            "host": self.host,
            "port": int(self.port),
            "configuredPort": int(self.config.port),
            **({"bindError": self._bind_error} if self._bind_error else {}),
            "serverStartedAtMs": int(self._server_started_at_ms),
            **base,
        }


__all__ = ["BRIDGE_PROTOCOL_VERSION", "GATEWAY_WELL_KNOWN_PATH", "GatewayServer"]
