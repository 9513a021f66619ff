"""Connection lifecycle shared by the gateway (accepting) and client (dialing) sides.

The manager owns the channel state and the single active link. Peers subscribe to it
for decoded Call/Response messages and state transitions; they never touch the link.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import inspect
import logging
import os
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from .config import BridgeConfig
from .errors import NotConnected, ProtocolError
from .protocol import CallMessage, LivenessMessage, Message, ResponseMessage, decode_message, encode_message
from .transport import Link

logger = logging.getLogger("mcp.browser_bridge.channel")


def _now_ms() -> int:
    return int(time.time() * 1000)


class ChannelState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


_TRANSITIONS: dict[ChannelState, set[ChannelState]] = {
    ChannelState.DISCONNECTED: {ChannelState.CONNECTING},
    ChannelState.CONNECTING: {ChannelState.CONNECTED, ChannelState.DISCONNECTED},
    ChannelState.CONNECTED: {ChannelState.DISCONNECTED},
}

MessageHandler = Callable[[CallMessage | ResponseMessage], Awaitable[None] | None]
StateListener = Callable[[ChannelState, ChannelState], None]


class ReconnectBackoff:
    """Bounded exponential backoff. factor=1.0 gives a fixed retry interval."""

    def __init__(self, min_s: float, max_s: float, factor: float = 1.6) -> None:
        if min_s <= 0:
            raise ValueError("min_s must be positive")
        if factor < 1.0:
            raise ValueError("factor must be >= 1.0")
        self.min_s = float(min_s)
        self.max_s = max(float(max_s), self.min_s)
        self.factor = float(factor)
        self._current = self.min_s

    @classmethod
    def from_config(cls, config: BridgeConfig) -> ReconnectBackoff:
        return cls(config.reconnect_min_s, config.reconnect_max_s, config.reconnect_factor)

    def next_delay(self) -> float:
        delay = self._current
        self._current = min(self._current * self.factor, self.max_s)
        return delay

    def reset(self) -> None:
        self._current = self.min_s


class ConnectionManager:
    """Single-link channel with state machine, keepalive emission and optional watchdog.

    All methods must be called from the owning event loop.
    """

    def __init__(
        self,
        *,
        config: BridgeConfig | None = None,
        emit_keepalive: bool = False,
        name: str = "bridge",
    ) -> None:
        self.config = config or BridgeConfig()
        self.name = name
        self._emit_keepalive = bool(emit_keepalive)

        self._state = ChannelState.DISCONNECTED
        self._link: Link | None = None
        self._session_id: str | None = None

        self._message_handlers: list[MessageHandler] = []
        self._state_listeners: list[StateListener] = []
        self._background: list[asyncio.Task[None]] = []
        self._closing: set[asyncio.Task[None]] = set()

        self._last_seen = 0.0
        self._last_seen_ms = 0
        self._connect_count = 0
        self._protocol_errors = 0
        self._last_error: str | None = None

        # small event buffer (for diagnostics)
        self._logs: deque[dict[str, Any]] = deque(maxlen=200)

    # ─────────────────────────────────────────────────────────────────────────
    # Subscriptions
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def state(self) -> ChannelState:
        return self._state

    def is_connected(self) -> bool:
        return self._state is ChannelState.CONNECTED and self._link is not None

    def add_message_handler(self, handler: MessageHandler) -> None:
        self._message_handlers.append(handler)

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    # ─────────────────────────────────────────────────────────────────────────
    # State machine
    # ─────────────────────────────────────────────────────────────────────────

    def _record(self, level: str, message: str) -> None:
        self._logs.append({"ts": _now_ms(), "level": level, "message": message})

    def _set_state(self, new: ChannelState) -> None:
        old = self._state
        if old is new:
            return
        if new not in _TRANSITIONS[old]:
            raise RuntimeError(f"invalid channel transition {old.value} -> {new.value}")
        self._state = new
        logger.debug("%s: %s -> %s", self.name, old.value, new.value)
        self._record("info", f"state {old.value} -> {new.value}")
        # Listeners run inside the transition so pending calls fail in the same tick.
        for listener in list(self._state_listeners):
            try:
                listener(old, new)
            except Exception:
                logger.exception("%s: state listener failed", self.name)

    def begin_connecting(self) -> None:
        if self._state is ChannelState.DISCONNECTED:
            self._set_state(ChannelState.CONNECTING)

    def abort_connecting(self, reason: str) -> None:
        self._last_error = reason
        if self._state is ChannelState.CONNECTING and self._link is None:
            self._set_state(ChannelState.DISCONNECTED)

    async def attach(self, link: Link) -> None:
        """Make `link` the active channel, replacing (and closing) any previous one."""
        old = self._link
        self._link = link
        self._connect_count += 1
        self._session_id = f"conn-{_now_ms()}-{os.getpid()}-{self._connect_count}"
        self._touch()
        self._last_error = None

        self._stop_background()
        if self._state is not ChannelState.CONNECTED:
            self.begin_connecting()
            self._set_state(ChannelState.CONNECTED)
        self._start_background(link)

        if old is not None and old is not link:
            # Replacement keeps the channel CONNECTED; the old link is just orphaned.
            logger.info("%s: connection replaced by newer one", self.name)
            self._record("info", "connection replaced")
            self._closing.add(asyncio.get_running_loop().create_task(self._close_quietly(old, "replaced")))

    async def _close_quietly(self, link: Link, reason: str) -> None:
        try:
            await link.close(reason)
        except Exception as exc:  # noqa: BLE001
            logger.debug("%s: closing replaced link failed: %s", self.name, exc)
        finally:
            self._closing.discard(asyncio.current_task())  # type: ignore[arg-type]

    async def detach(self, link: Link, *, reason: str = "closed") -> bool:
        """Drop `link` if it is the active one. Returns False for stale/replaced links."""
        if link is not self._link:
            return False
        self._link = None
        self._session_id = None
        self._last_error = reason
        self._stop_background()
        logger.info("%s: connection lost (%s)", self.name, reason)
        self._set_state(ChannelState.DISCONNECTED)
        return True

    async def close_active(self, reason: str = "closed") -> None:
        link = self._link
        if link is None:
            return
        await self.detach(link, reason=reason)
        with contextlib.suppress(Exception):
            await link.close(reason)

    # ─────────────────────────────────────────────────────────────────────────
    # I/O
    # ─────────────────────────────────────────────────────────────────────────

    async def send_text(self, text: str) -> None:
        link = self._link
        if link is None or self._state is not ChannelState.CONNECTED:
            raise NotConnected(f"{self.name}: channel is not connected")
        await link.send(text)

    async def send_message(self, msg: Message) -> None:
        await self.send_text(encode_message(msg))

    def _touch(self) -> None:
        self._last_seen = time.monotonic()
        self._last_seen_ms = _now_ms()

    async def deliver(self, raw: str | bytes) -> None:
        """Decode one inbound frame and hand it to subscribers. Never raises."""
        self._touch()
        try:
            msg = decode_message(raw)
        except ProtocolError as exc:
            self._protocol_errors += 1
            logger.warning("%s: dropped malformed frame: %s", self.name, exc)
            self._record("warn", f"protocol error: {exc}")
            return
        except Exception as exc:  # noqa: BLE001
            self._protocol_errors += 1
            logger.warning("%s: dropped undecodable frame: %s: %s", self.name, type(exc).__name__, exc)
            self._record("warn", f"protocol error: {type(exc).__name__}")
            return

        if isinstance(msg, LivenessMessage):
            return

        for handler in list(self._message_handlers):
            try:
                res = handler(msg)
                if inspect.isawaitable(res):
                    await res
            except Exception:
                logger.exception("%s: message handler failed", self.name)

    # ─────────────────────────────────────────────────────────────────────────
    # Keepalive + watchdog
    # ─────────────────────────────────────────────────────────────────────────

    def _start_background(self, link: Link) -> None:
        loop = asyncio.get_running_loop()
        if self._emit_keepalive and self.config.keepalive_interval_s > 0:
            self._background.append(loop.create_task(self._keepalive_loop(link)))
        if self.config.liveness_timeout_s > 0:
            self._background.append(loop.create_task(self._watchdog_loop(link)))

    def _stop_background(self) -> None:
        current = asyncio.current_task()
        for task in self._background:
            if task is not current:
                task.cancel()
        self._background.clear()

    async def _keepalive_loop(self, link: Link) -> None:
        frame = encode_message(LivenessMessage())
        interval = self.config.keepalive_interval_s
        while self._link is link:
            await asyncio.sleep(interval)
            if self._link is not link:
                return
            try:
                await link.send(frame)
            except Exception as exc:  # noqa: BLE001
                logger.debug("%s: keepalive send failed: %s", self.name, exc)
                return

    async def _watchdog_loop(self, link: Link) -> None:
        timeout = self.config.liveness_timeout_s
        while self._link is link:
            remaining = self._last_seen + timeout - time.monotonic()
            if remaining <= 0:
                logger.warning("%s: no inbound traffic for %.1fs, closing", self.name, timeout)
                await self.detach(link, reason="liveness timeout")
                with contextlib.suppress(Exception):
                    await link.close("liveness timeout")
                return
            await asyncio.sleep(min(remaining, 1.0))

    # ─────────────────────────────────────────────────────────────────────────
    # Diagnostics
    # ─────────────────────────────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "connected": self.is_connected(),
            "sessionId": self._session_id,
            "connectCount": int(self._connect_count),
            "protocolErrors": int(self._protocol_errors),
            **({"lastSeenMs": self._last_seen_ms} if self._last_seen_ms else {}),
            **({"lastError": self._last_error} if self._last_error else {}),
            "logs": list(self._logs)[-20:],
        }


__all__ = ["ChannelState", "ConnectionManager", "MessageHandler", "ReconnectBackoff", "StateListener"]
