"""MCP-facing surface of the browser bridge (tool contract + result types)."""

from __future__ import annotations

from .contract import initialize_result, select_protocol, tools_list
from .types import ToolContent, ToolResult

__all__ = ["ToolContent", "ToolResult", "initialize_result", "select_protocol", "tools_list"]
