"""Dispatcher peer: turns `invoke(operation, arguments)` into correlated Call messages."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .channel import ChannelState, ConnectionManager
from .errors import CallTimeout, ConnectionLost, NotConnected, RemoteCallError
from .pending import PendingCallTable, PendingEntry
from .protocol import CallMessage, ResponseMessage, encode_message

logger = logging.getLogger("mcp.browser_bridge.dispatcher")

_USE_DEFAULT: Any = object()


class DispatcherPeer:
    """Calls named operations on the executor peer over a `ConnectionManager`.

    Calls submitted while the channel is down are queued and flushed on the next
    CONNECTED transition (unless `queue_when_disconnected` is False, in which case they
    fail with `NotConnected`). Losing the channel fails every pending call with
    `ConnectionLost`.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        *,
        call_timeout_s: float | None | Any = _USE_DEFAULT,
        queue_when_disconnected: bool | None = None,
    ) -> None:
        self.manager = manager
        cfg = manager.config
        self.call_timeout_s: float | None = cfg.call_timeout_s if call_timeout_s is _USE_DEFAULT else call_timeout_s
        self.queue_when_disconnected = (
            cfg.queue_when_disconnected if queue_when_disconnected is None else bool(queue_when_disconnected)
        )

        self._table = PendingCallTable()
        self._flush_task: asyncio.Task[None] | None = None

        self._completed = 0
        self._failed = 0
        self._timeouts = 0
        self._connection_lost = 0
        self._unmatched = 0

        manager.add_message_handler(self._on_message)
        manager.add_state_listener(self._on_state)

    @property
    def pending_count(self) -> int:
        return len(self._table)

    # ─────────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────────

    async def submit(
        self,
        operation: str,
        arguments: Any = None,
        *,
        timeout: float | None | Any = _USE_DEFAULT,
    ) -> asyncio.Future[Any]:
        """Register and send (or queue) a call. Returns a future for its result.

        Awaiting this coroutine only waits for the hand-off to the transport; await the
        returned future for the response.
        """
        if not isinstance(operation, str) or not operation:
            raise ValueError("operation name is required")
        if arguments is None:
            arguments = {}

        connected = self.manager.is_connected()
        if not connected and not self.queue_when_disconnected:
            raise NotConnected(f"cannot call {operation!r}: channel is not connected")

        loop = asyncio.get_running_loop()
        entry = self._table.create(operation, arguments, loop=loop)

        effective_timeout = self.call_timeout_s if timeout is _USE_DEFAULT else timeout
        if effective_timeout is not None and effective_timeout > 0:
            entry.timer = loop.call_later(float(effective_timeout), self._expire, entry.call_id, float(effective_timeout))

        if connected:
            await self._send(entry)
        else:
            logger.debug("queued call op=%s id=%s (channel %s)", operation, entry.call_id, self.manager.state.value)
        return entry.future

    async def invoke(
        self,
        operation: str,
        arguments: Any = None,
        *,
        timeout: float | None | Any = _USE_DEFAULT,
    ) -> Any:
        fut = await self.submit(operation, arguments, timeout=timeout)
        return await fut

    def status(self) -> dict[str, Any]:
        return {
            "pending": len(self._table),
            "queued": len(self._table.unsent()),
            "completed": int(self._completed),
            "failed": int(self._failed),
            "timeouts": int(self._timeouts),
            "connectionLost": int(self._connection_lost),
            "unmatchedResponses": int(self._unmatched),
            "queueWhenDisconnected": bool(self.queue_when_disconnected),
            **({"callTimeoutS": self.call_timeout_s} if self.call_timeout_s else {}),
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    async def _send(self, entry: PendingEntry) -> None:
        if entry.sent or self._table.get(entry.call_id) is not entry:
            return
        entry.sent = True
        msg: CallMessage = entry.message
        try:
            text = encode_message(msg)
        except Exception as exc:  # noqa: BLE001
            self._failed += 1
            self._table.reject(entry.call_id, exc)
            return
        try:
            await self.manager.send_text(text)
        except Exception as exc:  # noqa: BLE001
            self._connection_lost += 1
            self._table.reject(entry.call_id, ConnectionLost(f"send failed for {entry.operation!r}: {exc}"))

    async def _flush_queued(self) -> None:
        for entry in self._table.unsent():
            if not self.manager.is_connected():
                return
            await self._send(entry)

    def _expire(self, call_id: str, timeout: float) -> None:
        entry = self._table.get(call_id)
        if entry is None:
            return
        entry.timer = None
        if self._table.reject(call_id, CallTimeout(f"call {entry.operation!r} timed out after {timeout:g}s")):
            self._timeouts += 1
            logger.warning("call timed out op=%s id=%s after %.2fs", entry.operation, call_id, timeout)

    def _on_state(self, old: ChannelState, new: ChannelState) -> None:
        if new is ChannelState.CONNECTED:
            if self._table.unsent():
                self._flush_task = asyncio.get_running_loop().create_task(self._flush_queued())
            return

        if old is ChannelState.CONNECTED and new is ChannelState.DISCONNECTED:
            failed = self._table.fail_all(
                lambda e: ConnectionLost(f"connection lost while {e.operation!r} was pending")
            )
            if failed:
                self._connection_lost += failed
                logger.warning("connection lost: failed %d pending call(s)", failed)

    def _on_message(self, msg: CallMessage | ResponseMessage) -> None:
        if not isinstance(msg, ResponseMessage):
            logger.debug("dispatcher ignores inbound %s", type(msg).__name__)
            return

        entry = self._table.get(msg.id)
        if entry is None:
            # Already completed, timed out, or never ours.
            self._unmatched += 1
            logger.debug("discarding response for unknown id=%s", msg.id)
            return

        if msg.ok:
            if self._table.resolve(msg.id, msg.result):
                self._completed += 1
            return

        if self._table.reject(msg.id, RemoteCallError(msg.error or "", operation=entry.operation)):
            self._failed += 1


__all__ = ["DispatcherPeer"]
