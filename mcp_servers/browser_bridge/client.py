from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed

from .channel import ChannelState, ConnectionManager, ReconnectBackoff
from .config import BridgeConfig
from .transport import WebSocketLink

logger = logging.getLogger("mcp.browser_bridge.client")


class GatewayClient(ConnectionManager):
    """Dialing side of the channel: connect, and keep reconnecting until stopped.

    Emits keepalive frames by default so the hosting environment does not reclaim an
    idle extension worker.
    """

    def __init__(
        self,
        *,
        config: BridgeConfig | None = None,
        url: str | None = None,
        emit_keepalive: bool = True,
        name: str = "client",
    ) -> None:
        super().__init__(config=config, emit_keepalive=emit_keepalive, name=name)
        self.url = url or self.config.gateway_url
        self._backoff = ReconnectBackoff.from_config(self.config)
        self._run_task: asyncio.Task[None] | None = None
        self._stopped = asyncio.Event()
        self._connected = asyncio.Event()
        self._attempts = 0
        self.add_state_listener(self._track_state)

    def _track_state(self, _old: ChannelState, new: ChannelState) -> None:
        if new is ChannelState.CONNECTED:
            self._connected.set()
        else:
            self._connected.clear()

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._run_task is not None and not self._run_task.done():
            return
        self._stopped.clear()
        self._run_task = asyncio.get_running_loop().create_task(self._run(), name=f"{self.name}-dial")

    async def wait_connected(self, *, timeout: float = 5.0) -> bool:
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=max(0.0, float(timeout)))
        except asyncio.TimeoutError:
            return False
        return True

    async def stop(self) -> None:
        self._stopped.set()
        await self.close_active("client stopping")
        task = self._run_task
        self._run_task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self.abort_connecting("stopped")

    async def _sleep_or_stop(self, delay: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stopped.wait(), timeout=delay)

    async def _run(self) -> None:
        while not self._stopped.is_set():
            self._attempts += 1
            self.begin_connecting()
            try:
                async with websockets.connect(
                    self.url,
                    ping_interval=None,
                    open_timeout=self.config.open_timeout_s,
                    max_size=int(self.config.max_message_bytes),
                ) as ws:
                    link = WebSocketLink(ws)
                    await self.attach(link)
                    self._backoff.reset()
                    reason = "connection closed"
                    try:
                        async for raw in ws:
                            await self.deliver(raw)
                    except ConnectionClosed as exc:
                        reason = f"connection closed ({exc})"
                    finally:
                        await self.detach(link, reason=reason)
            except Exception as exc:  # noqa: BLE001
                self.abort_connecting(str(exc))
                logger.debug("%s: connect to %s failed: %s", self.name, self.url, exc)

            if self._stopped.is_set():
                break
            delay = self._backoff.next_delay()
            self._record("info", f"reconnecting in {delay:.2f}s")
            await self._sleep_or_stop(delay)

    def status(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "attempts": int(self._attempts),
            **super().status(),
        }


__all__ = ["GatewayClient"]
