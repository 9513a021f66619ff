from __future__ import annotations

import asyncio
from typing import Any

import pytest

from mcp_servers.browser_bridge.channel import ConnectionManager
from mcp_servers.browser_bridge.config import BridgeConfig
from mcp_servers.browser_bridge.dispatcher import DispatcherPeer
from mcp_servers.browser_bridge.errors import CallTimeout, ConnectionLost, NotConnected, RemoteCallError
from mcp_servers.browser_bridge.protocol import CallMessage, ResponseMessage
from mcp_servers.browser_bridge.transport import connect_memory


class _Remote:
    """Hand-driven executor side: records calls, replies on demand."""

    def __init__(self, config: BridgeConfig) -> None:
        self.manager = ConnectionManager(config=config, name="remote")
        self.calls: asyncio.Queue[CallMessage] = asyncio.Queue()
        self.manager.add_message_handler(self._on_message)

    def _on_message(self, msg: Any) -> None:
        if isinstance(msg, CallMessage):
            self.calls.put_nowait(msg)

    async def next_call(self) -> CallMessage:
        return await asyncio.wait_for(self.calls.get(), timeout=2.0)

    async def reply(self, call_id: str, result: Any) -> None:
        await self.manager.send_message(ResponseMessage.success(call_id, result))

    async def fail(self, call_id: str, error: str) -> None:
        await self.manager.send_message(ResponseMessage.failure(call_id, error))


def _setup(**dispatcher_kwargs: Any) -> tuple[ConnectionManager, DispatcherPeer, _Remote]:
    cfg = BridgeConfig(call_timeout_s=5.0)
    local = ConnectionManager(config=cfg, name="dispatcher")
    return local, DispatcherPeer(local, **dispatcher_kwargs), _Remote(cfg)


def test_call_submitted_while_disconnected_is_queued_then_delivered() -> None:
    async def _main() -> None:
        local, dispatcher, remote = _setup()
        fut = await dispatcher.submit("GetTitle")
        assert not fut.done()
        assert dispatcher.status()["queued"] == 1

        await connect_memory(local, remote.manager)
        call = await remote.next_call()
        assert call.operation == "GetTitle"
        assert call.arguments == {}

        await remote.reply(call.id, "Example")
        assert await asyncio.wait_for(fut, timeout=2.0) == "Example"
        assert dispatcher.pending_count == 0

    asyncio.run(_main())


def test_queued_calls_flush_in_submit_order() -> None:
    async def _main() -> None:
        local, dispatcher, remote = _setup()
        futs = [await dispatcher.submit(f"op{i}", {"i": i}) for i in range(4)]
        await connect_memory(local, remote.manager)
        seen = [(await remote.next_call()) for _ in futs]
        assert [c.operation for c in seen] == ["op0", "op1", "op2", "op3"]
        for c in seen:
            await remote.reply(c.id, c.arguments["i"])
        assert await asyncio.gather(*futs) == [0, 1, 2, 3]

    asyncio.run(_main())


def test_not_connected_policy_fails_fast() -> None:
    async def _main() -> None:
        _local, dispatcher, _remote = _setup(queue_when_disconnected=False)
        with pytest.raises(NotConnected):
            await dispatcher.submit("GetTitle")
        assert dispatcher.pending_count == 0

    asyncio.run(_main())


def test_error_response_surfaces_message() -> None:
    async def _main() -> None:
        local, dispatcher, remote = _setup()
        await connect_memory(local, remote.manager)
        task = asyncio.ensure_future(dispatcher.invoke("DoThing", {"x": 1}))
        call = await remote.next_call()
        await remote.fail(call.id, "boom")
        with pytest.raises(RemoteCallError) as excinfo:
            await task
        assert str(excinfo.value) == "boom"
        assert excinfo.value.operation == "DoThing"
        assert dispatcher.pending_count == 0

    asyncio.run(_main())


def test_out_of_order_responses_reach_the_right_callers() -> None:
    async def _main() -> None:
        local, dispatcher, remote = _setup()
        await connect_memory(local, remote.manager)
        fut_a = await dispatcher.submit("A")
        fut_b = await dispatcher.submit("B")
        call_a = await remote.next_call()
        call_b = await remote.next_call()

        await remote.reply(call_b.id, "result-b")
        assert await asyncio.wait_for(fut_b, timeout=2.0) == "result-b"
        assert not fut_a.done()
        await remote.reply(call_a.id, "result-a")
        assert await asyncio.wait_for(fut_a, timeout=2.0) == "result-a"

    asyncio.run(_main())


def test_unknown_and_duplicate_responses_are_discarded() -> None:
    async def _main() -> None:
        local, dispatcher, remote = _setup()
        await connect_memory(local, remote.manager)

        await remote.reply("never-sent", 1)
        fut = await dispatcher.submit("GetTitle")
        call = await remote.next_call()
        await remote.reply(call.id, "first")
        await remote.reply(call.id, "second")
        assert await asyncio.wait_for(fut, timeout=2.0) == "first"

        await asyncio.sleep(0.01)
        st = dispatcher.status()
        assert st["completed"] == 1
        assert st["unmatchedResponses"] == 2
        assert local.is_connected()

    asyncio.run(_main())


def test_disconnect_fails_every_pending_call_in_the_same_tick() -> None:
    async def _main() -> None:
        local, dispatcher, remote = _setup()
        await connect_memory(local, remote.manager)
        futs = [await dispatcher.submit(f"op{i}") for i in range(3)]
        for _ in futs:
            await remote.next_call()

        await local.close_active("test disconnect")

        assert all(f.done() for f in futs)
        assert dispatcher.pending_count == 0
        for f in futs:
            assert isinstance(f.exception(), ConnectionLost)
        assert dispatcher.status()["connectionLost"] == 3

    asyncio.run(_main())


def test_remote_side_closing_also_fails_pending() -> None:
    async def _main() -> None:
        local, dispatcher, remote = _setup()
        await connect_memory(local, remote.manager)
        fut = await dispatcher.submit("Slow")
        await remote.next_call()
        await remote.manager.close_active("extension reloaded")
        with pytest.raises(ConnectionLost):
            await asyncio.wait_for(fut, timeout=2.0)
        assert dispatcher.pending_count == 0

    asyncio.run(_main())


def test_call_timeout_removes_entry_and_ignores_late_response() -> None:
    async def _main() -> None:
        local, dispatcher, remote = _setup(call_timeout_s=0.05)
        await connect_memory(local, remote.manager)
        fut = await dispatcher.submit("Silent")
        call = await remote.next_call()
        with pytest.raises(CallTimeout):
            await asyncio.wait_for(fut, timeout=2.0)
        assert dispatcher.pending_count == 0
        assert dispatcher.status()["timeouts"] == 1

        await remote.reply(call.id, "too late")
        await asyncio.sleep(0.01)
        assert dispatcher.status()["unmatchedResponses"] == 1

    asyncio.run(_main())


def test_per_call_timeout_override() -> None:
    async def _main() -> None:
        local, dispatcher, remote = _setup(call_timeout_s=None)
        await connect_memory(local, remote.manager)
        with pytest.raises(CallTimeout):
            await dispatcher.invoke("Silent", timeout=0.05)

        fut = await dispatcher.submit("NoDeadline")
        await asyncio.sleep(0.1)
        assert not fut.done()
        fut.cancel()

    asyncio.run(_main())


def test_cancelled_caller_forgets_pending_entry() -> None:
    async def _main() -> None:
        local, dispatcher, remote = _setup()
        await connect_memory(local, remote.manager)
        task = asyncio.ensure_future(dispatcher.invoke("Slow"))
        call = await remote.next_call()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0)
        assert dispatcher.pending_count == 0
        await remote.reply(call.id, "ignored")

    asyncio.run(_main())


def test_malformed_frames_do_not_break_dispatcher() -> None:
    async def _main() -> None:
        local, dispatcher, remote = _setup()
        await connect_memory(local, remote.manager)
        await remote.manager.send_text("garbage{")
        await remote.manager.send_text('{"kind":"response"}')

        fut = await dispatcher.submit("GetTitle")
        call = await remote.next_call()
        await remote.reply(call.id, "Example")
        assert await asyncio.wait_for(fut, timeout=2.0) == "Example"
        assert local.status()["protocolErrors"] == 2

    asyncio.run(_main())


def test_submit_requires_operation_name() -> None:
    async def _main() -> None:
        _local, dispatcher, _remote = _setup()
        with pytest.raises(ValueError):
            await dispatcher.submit("")

    asyncio.run(_main())


def test_deeply_nested_frame_leaves_link_usable() -> None:
    async def _main() -> None:
        local, dispatcher, remote = _setup()
        await connect_memory(local, remote.manager)
        await remote.manager.send_text("[" * 100_000)

        fut = await dispatcher.submit("GetTitle")
        call = await remote.next_call()
        await remote.reply(call.id, "Example")
        assert await asyncio.wait_for(fut, timeout=2.0) == "Example"
        assert local.status()["protocolErrors"] == 1
        assert local.is_connected()

    asyncio.run(_main())
