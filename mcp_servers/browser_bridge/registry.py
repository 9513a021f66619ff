"""
Command registry for the executor peer.

Operation name -> handler, built once at startup and frozen before dispatch begins.
Lookup is an exact, case-sensitive dict hit; a miss is a normal error path.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .errors import OperationNotFound

logger = logging.getLogger("mcp.browser_bridge.registry")

# Handlers take the call's `arguments` value; they may be sync or async.
HandlerFunc = Callable[[Any], Any]


@dataclass(frozen=True, slots=True)
class RegisteredOperation:
    name: str
    handler: HandlerFunc
    # Run a sync handler in a worker thread so it cannot stall the event loop.
    blocking: bool = False

    async def invoke(self, arguments: Any) -> Any:
        if self.blocking and not inspect.iscoroutinefunction(self.handler):
            result = await asyncio.to_thread(self.handler, arguments)
        else:
            result = self.handler(arguments)
        if inspect.isawaitable(result):
            result = await result
        return result


class CommandRegistry:
    """Registry of named operations the executor peer can run."""

    def __init__(self) -> None:
        self._operations: dict[str, RegisteredOperation] = {}
        self._frozen = False

    def register(self, name: str, handler: HandlerFunc, *, blocking: bool = False) -> None:
        """Register a handler under `name`. Entries are immutable once registered."""
        if self._frozen:
            raise ValueError(f"registry is frozen; cannot register {name!r}")
        if not isinstance(name, str) or not name:
            raise ValueError("operation name must be a non-empty string")
        if not callable(handler):
            raise ValueError(f"handler for {name!r} is not callable")
        if name in self._operations:
            raise ValueError(f"operation already registered: {name}")
        self._operations[name] = RegisteredOperation(name=name, handler=handler, blocking=bool(blocking))

    def register_many(self, handlers: dict[str, HandlerFunc]) -> None:
        """Register multiple handlers at once."""
        for name, handler in handlers.items():
            self.register(name, handler)

    def operation(self, name: str, *, blocking: bool = False) -> Callable[[HandlerFunc], HandlerFunc]:
        """Decorator form of `register`."""

        def _decorator(fn: HandlerFunc) -> HandlerFunc:
            self.register(name, fn, blocking=blocking)
            return fn

        return _decorator

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> RegisteredOperation | None:
        return self._operations.get(name)

    def has(self, name: str) -> bool:
        return name in self._operations

    def resolve(self, name: str) -> RegisteredOperation:
        op = self._operations.get(name)
        if op is None:
            raise OperationNotFound(name)
        return op

    async def dispatch(self, name: str, arguments: Any) -> Any:
        """
        Run the handler registered under `name`.

        Raises:
            OperationNotFound: no handler has that exact name.
            Exception: whatever the handler raised, unchanged.
        """
        op = self.resolve(name)
        return await op.invoke(arguments)

    @property
    def operation_names(self) -> list[str]:
        return list(self._operations.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._operations

    def __len__(self) -> int:
        return len(self._operations)


__all__ = ["CommandRegistry", "HandlerFunc", "RegisteredOperation"]
