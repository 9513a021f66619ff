"""
MCP server that relays tool calls to a browser extension over the local bridge.

This module provides the stdio entry point and JSON-RPC handling; the RPC core lives in
dispatcher.py / executor.py / channel.py.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from typing import Any

from .bridge import BrowserBridge
from .config import BridgeConfig
from .errors import BridgeError, RemoteCallError
from .server.contract import TOOL_INVOKE, TOOL_STATUS, initialize_result, select_protocol, tools_list
from .server.types import ToolResult

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
)
logger = logging.getLogger("mcp.browser_bridge")


def _write_message(payload: dict[str, Any]) -> None:
    """Write JSON-RPC message to stdout."""
    data = json.dumps(payload, ensure_ascii=False)
    sys.stdout.buffer.write((data + "\n").encode())
    sys.stdout.buffer.flush()


def _read_message() -> dict[str, Any] | None:
    """Read JSON-RPC message from stdin. Returns None on EOF, {} for blank/garbled lines."""
    line = sys.stdin.buffer.readline()
    if not line:
        return None
    line = line.strip()
    if not line:
        return {}
    try:
        msg = json.loads(line.decode())
    except ValueError:
        logger.warning("dropping unparsable JSON-RPC line (%d bytes)", len(line))
        return {}
    if os.environ.get("MCP_TRACE"):
        logger.info("recv %s", msg)
    return msg if isinstance(msg, dict) else {}


class McpServer:
    """MCP server exposing the browser bridge as tools."""

    def __init__(self, bridge: BrowserBridge | None = None) -> None:
        self.config = BridgeConfig.from_env()
        self.bridge_error: str | None = None
        if bridge is not None:
            self.bridge = bridge
            return

        self.bridge = BrowserBridge(self.config)
        try:
            # Do not block MCP initialize on the extension; a busy port is retried in the background.
            self.bridge.start(wait_timeout=0.5, require_listening=False)
        except Exception as exc:  # noqa: BLE001
            self.bridge_error = str(exc)
            logger.error("bridge_start_failed: %s", exc)

    def handle_initialize(self, request_id: Any, params: dict[str, Any] | None = None) -> None:
        requested = (params or {}).get("protocolVersion") if isinstance(params, dict) else None
        protocol = select_protocol(requested)
        _write_message({"jsonrpc": "2.0", "id": request_id, "result": initialize_result(protocol)})

    def handle_list_tools(self, request_id: Any) -> None:
        _write_message({"jsonrpc": "2.0", "id": request_id, "result": {"tools": tools_list()}})

    def _invoke(self, arguments: dict[str, Any]) -> ToolResult:
        operation = arguments.get("operation")
        if not isinstance(operation, str) or not operation.strip():
            return ToolResult.error("'operation' is required", tool=TOOL_INVOKE)
        op_args = arguments.get("arguments")
        if op_args is None:
            op_args = {}

        timeout: float | None = None
        raw_timeout = arguments.get("timeoutMs")
        if raw_timeout is not None:
            try:
                timeout = max(0.001, int(raw_timeout) / 1000.0)
            except (TypeError, ValueError):
                return ToolResult.error("'timeoutMs' must be an integer", tool=TOOL_INVOKE)

        if self.bridge_error and not self.bridge.is_connected():
            return ToolResult.error(
                f"Browser bridge failed to start: {self.bridge_error}",
                tool=TOOL_INVOKE,
                suggestion="Check MCP_BRIDGE_HOST/MCP_BRIDGE_PORT and restart the server",
            )
        result = self.bridge.invoke(operation, op_args, timeout=timeout)
        return ToolResult.json(result)

    def handle_call_tool(self, request_id: Any, name: str, arguments: dict[str, Any]) -> None:
        logger.info("tool=%s operation=%s", name, arguments.get("operation") if isinstance(arguments, dict) else None)

        try:
            if not name:
                result = ToolResult.error("Missing tool name")
            elif not isinstance(arguments, dict):
                result = ToolResult.error("Tool arguments must be an object", tool=name)
            elif name == TOOL_INVOKE:
                result = self._invoke(arguments)
            elif name == TOOL_STATUS:
                result = ToolResult.json(self.bridge.status())
            else:
                result = ToolResult.error(f"Unknown tool: {name}", tool=name)
        except RemoteCallError as e:
            logger.info("extension_error operation=%s error=%s", e.operation, e.message)
            result = ToolResult.error(e.message, tool=name)
        except BridgeError as e:
            logger.info("bridge_error %s: %s", type(e).__name__, e)
            result = ToolResult.error(
                str(e),
                tool=name,
                suggestion=f"Ensure the browser extension is installed/enabled, then retry (check via {TOOL_STATUS})",
            )
        except Exception as exc:
            logger.exception("tool_call_failed")
            result = ToolResult.error(str(exc), tool=name)

        _write_message(
            {
                "jsonrpc": "2.0",
                "id": request_id,
                "result": {"content": result.to_content_list(), "isError": result.is_error},
            }
        )

    def dispatch(self, message: dict[str, Any]) -> None:
        """Dispatch incoming JSON-RPC message to appropriate handler."""
        if not message:
            return

        method = message.get("method")
        request_id = message.get("id")
        params = message.get("params") or {}

        if method == "initialize":
            self.handle_initialize(request_id, params)
        elif isinstance(method, str) and method.startswith("notifications/"):
            return
        elif method in ("tools/list", "list_tools"):
            self.handle_list_tools(request_id)
        elif method in ("tools/call", "call_tool"):
            name = params.get("name")
            arguments = params.get("arguments") or params.get("args") or {}
            self.handle_call_tool(request_id, name or "", arguments)
        elif method == "ping":
            _write_message({"jsonrpc": "2.0", "id": request_id, "result": {}})
        else:
            _write_message(
                {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "error": {"code": -32601, "message": f"Method {method} not found"},
                }
            )

    def close(self) -> None:
        self.bridge.stop()


def main() -> None:
    """Main entry point for MCP server."""
    server = McpServer()
    try:
        while True:
            message = _read_message()
            if message is None:
                break
            server.dispatch(message)
    finally:
        server.close()


if __name__ == "__main__":
    main()
