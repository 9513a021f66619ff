from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

from .protocol import CallMessage


def new_correlation_id() -> str:
    return uuid.uuid4().hex


@dataclass(slots=True)
class PendingEntry:
    call_id: str
    operation: str
    future: asyncio.Future[Any]
    message: CallMessage
    created_at: float = field(default_factory=time.monotonic)
    sent: bool = False
    timer: asyncio.TimerHandle | None = None

    def age_s(self) -> float:
        return max(0.0, time.monotonic() - self.created_at)


class PendingCallTable:
    """Outstanding calls keyed by correlation id.

    Every entry leaves the table exactly once: via `resolve`, `reject`, `fail_all`, or
    cancellation of its future by the caller.
    """

    def __init__(self, *, id_factory: Callable[[], str] = new_correlation_id) -> None:
        self._entries: dict[str, PendingEntry] = {}
        self._id_factory = id_factory

    def create(self, operation: str, arguments: Any, *, loop: asyncio.AbstractEventLoop) -> PendingEntry:
        call_id = self._id_factory()
        while call_id in self._entries:
            call_id = self._id_factory()
        fut: asyncio.Future[Any] = loop.create_future()
        entry = PendingEntry(
            call_id=call_id,
            operation=operation,
            future=fut,
            message=CallMessage(id=call_id, operation=operation, arguments=arguments),
        )
        self._entries[call_id] = entry
        fut.add_done_callback(lambda f, cid=call_id: self._on_future_done(cid, f))
        return entry

    def _on_future_done(self, call_id: str, fut: asyncio.Future[Any]) -> None:
        # Caller gave up (cancelled the handle): forget the entry, a late response is ignored.
        if fut.cancelled():
            entry = self._entries.get(call_id)
            if entry is not None and entry.future is fut:
                self._discard(call_id)

    def _discard(self, call_id: str) -> PendingEntry | None:
        entry = self._entries.pop(call_id, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None
        return entry

    def get(self, call_id: str) -> PendingEntry | None:
        return self._entries.get(call_id)

    def resolve(self, call_id: str, result: Any) -> bool:
        entry = self._discard(call_id)
        if entry is None or entry.future.done():
            return False
        entry.future.set_result(result)
        return True

    def reject(self, call_id: str, exc: BaseException) -> bool:
        entry = self._discard(call_id)
        if entry is None or entry.future.done():
            return False
        entry.future.set_exception(exc)
        return True

    def fail_all(self, exc_factory: Callable[[PendingEntry], BaseException]) -> int:
        entries = list(self._entries.values())
        failed = 0
        for entry in entries:
            if self.reject(entry.call_id, exc_factory(entry)):
                failed += 1
        return failed

    def unsent(self) -> list[PendingEntry]:
        # dicts keep insertion order, so this is creation order
        return [e for e in self._entries.values() if not e.sent]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._entries

    def __iter__(self) -> Iterator[PendingEntry]:
        return iter(list(self._entries.values()))


__all__ = ["PendingCallTable", "PendingEntry", "new_correlation_id"]
