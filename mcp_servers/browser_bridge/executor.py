"""Executor peer: runs incoming Call messages against the command registry."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Any

from .channel import ConnectionManager
from .errors import OperationNotFound, ProtocolError
from .protocol import CallMessage, ResponseMessage, encode_message
from .registry import CommandRegistry

logger = logging.getLogger("mcp.browser_bridge.executor")


def describe_error(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class ExecutorPeer:
    """Dispatch Call messages concurrently; answer each call id exactly once.

    Handler failures of any kind become error Responses. Nothing a handler does can
    take down the channel or the process.
    """

    def __init__(self, manager: ConnectionManager, registry: CommandRegistry) -> None:
        self.manager = manager
        self.registry = registry
        registry.freeze()

        self._inflight: dict[str, asyncio.Task[None]] = {}
        self._closing = False
        # call ids answered recently (bounded), so a replayed call is not run twice
        self._completed: OrderedDict[str, None] = OrderedDict()
        self._completed_limit = max(0, int(manager.config.completed_id_memory))

        self._calls = 0
        self._errors = 0
        self._duplicates = 0
        self._dropped_responses = 0

        manager.add_message_handler(self._on_message)

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    def _seen(self, call_id: str) -> bool:
        return call_id in self._inflight or call_id in self._completed

    def _remember(self, call_id: str) -> None:
        if self._completed_limit <= 0:
            return
        self._completed[call_id] = None
        while len(self._completed) > self._completed_limit:
            self._completed.popitem(last=False)

    def _on_message(self, msg: CallMessage | ResponseMessage) -> None:
        if not isinstance(msg, CallMessage):
            logger.debug("executor ignores inbound response id=%s", msg.id)
            return
        if self._seen(msg.id):
            self._duplicates += 1
            logger.warning("duplicate call id=%s op=%s ignored", msg.id, msg.operation)
            return
        self._calls += 1
        task = asyncio.get_running_loop().create_task(self._run_call(msg), name=f"bridge-call-{msg.operation}")
        self._inflight[msg.id] = task

    async def _run_call(self, call: CallMessage) -> None:
        try:
            try:
                result = await self.registry.dispatch(call.operation, call.arguments)
                response = ResponseMessage.success(call.id, result)
            except OperationNotFound as exc:
                self._errors += 1
                logger.info("unknown operation %r (id=%s)", call.operation, call.id)
                response = ResponseMessage.failure(call.id, str(exc))
            except asyncio.CancelledError as exc:
                if self._closing:
                    raise
                # raised by the handler itself, not by close()
                self._errors += 1
                logger.info("operation %s was cancelled inside its handler (id=%s)", call.operation, call.id)
                response = ResponseMessage.failure(call.id, describe_error(exc))
            except Exception as exc:  # noqa: BLE001
                self._errors += 1
                logger.info("operation %s failed: %s", call.operation, describe_error(exc))
                response = ResponseMessage.failure(call.id, describe_error(exc))

            try:
                text = encode_message(response)
            except ProtocolError as exc:
                self._errors += 1
                text = encode_message(ResponseMessage.failure(call.id, f"result is not serializable: {exc}"))

            try:
                await self.manager.send_text(text)
            except Exception as exc:  # noqa: BLE001
                self._dropped_responses += 1
                logger.warning("response for id=%s op=%s dropped: %s", call.id, call.operation, exc)
        finally:
            self._inflight.pop(call.id, None)
            self._remember(call.id)

    async def close(self) -> None:
        self._closing = True
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def status(self) -> dict[str, Any]:
        return {
            "operations": self.registry.operation_names,
            "inflight": len(self._inflight),
            "calls": int(self._calls),
            "errors": int(self._errors),
            "duplicates": int(self._duplicates),
            "droppedResponses": int(self._dropped_responses),
        }


__all__ = ["ExecutorPeer", "describe_error"]
