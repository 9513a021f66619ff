"""Message links the connection managers run over.

A link is anything with `async send(text)` and `async close(reason)`. Inbound frames are
pushed into the owning manager via `ConnectionManager.deliver()`.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any, Protocol

from .errors import NotConnected

if TYPE_CHECKING:
    from .channel import ConnectionManager


class Link(Protocol):
    async def send(self, text: str) -> None: ...

    async def close(self, reason: str = "closed") -> None: ...


class WebSocketLink:
    """Adapter over a `websockets` connection (server or client side)."""

    def __init__(self, ws: Any) -> None:
        # NOTE: typed as Any to avoid coupling to a specific websockets protocol class.
        self._ws = ws

    @property
    def remote_address(self) -> str | None:
        addr = getattr(self._ws, "remote_address", None)
        if isinstance(addr, tuple) and len(addr) >= 2:
            return f"{addr[0]}:{addr[1]}"
        return None

    async def send(self, text: str) -> None:
        await self._ws.send(text)

    async def close(self, reason: str = "closed") -> None:
        with contextlib.suppress(Exception):
            await self._ws.close(code=1000, reason=str(reason)[:120])


class MemoryLink:
    """In-process link. Closing either end closes both, like a socket pair."""

    def __init__(self) -> None:
        self._peer: MemoryLink | None = None
        self._manager: ConnectionManager | None = None
        self._inbox: asyncio.Queue[str | None] = asyncio.Queue()
        self._pump: asyncio.Task[None] | None = None
        self.closed = False
        self.close_reason: str | None = None

    @classmethod
    def pair(cls) -> tuple[MemoryLink, MemoryLink]:
        left, right = cls(), cls()
        left._peer = right
        right._peer = left
        return left, right

    async def open(self, manager: ConnectionManager) -> None:
        self._manager = manager
        self._pump = asyncio.get_running_loop().create_task(self._pump_loop())
        await manager.attach(self)

    async def _pump_loop(self) -> None:
        while True:
            text = await self._inbox.get()
            if text is None:
                return
            manager = self._manager
            if manager is not None:
                await manager.deliver(text)

    async def send(self, text: str) -> None:
        peer = self._peer
        if self.closed or peer is None or peer.closed:
            raise NotConnected("memory link is closed")
        peer._inbox.put_nowait(text)

    async def close(self, reason: str = "closed") -> None:
        if self.closed:
            return
        self.closed = True
        self.close_reason = reason
        self._inbox.put_nowait(None)
        if self._manager is not None:
            await self._manager.detach(self, reason=reason)
        if self._peer is not None:
            await self._peer.close(reason)


async def connect_memory(left: ConnectionManager, right: ConnectionManager) -> tuple[MemoryLink, MemoryLink]:
    """Wire two managers together in-process and bring both to CONNECTED."""
    a, b = MemoryLink.pair()
    await a.open(left)
    await b.open(right)
    return a, b


__all__ = ["Link", "MemoryLink", "WebSocketLink", "connect_memory"]
