"""Protocol and tool contract definitions.

Single source of truth for supported MCP protocol versions, server identity,
capabilities advertised by initialize, and the tool list.
"""

from __future__ import annotations

from typing import Any

SERVER_INFO: dict[str, str] = {"name": "browser-bridge", "version": "0.1.0"}

SUPPORTED_PROTOCOL_VERSIONS = ["2025-06-18", "2025-03-26", "2024-11-05"]
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[0]
DEFAULT_PROTOCOL_VERSION = LATEST_PROTOCOL_VERSION

CAPABILITIES: dict[str, Any] = {
    "logging": {},
    "tools": {"listChanged": False},
}

TOOL_INVOKE = "browser_invoke"
TOOL_STATUS = "browser_bridge_status"

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": TOOL_INVOKE,
        "description": (
            "Run a named browser operation inside the connected extension and return its result. "
            "Fails if the extension does not know the operation or reports an error."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "operation": {"type": "string", "description": "Extension operation name (case-sensitive)"},
                "arguments": {"type": "object", "description": "Operation arguments", "default": {}},
                "timeoutMs": {"type": "integer", "minimum": 1, "description": "Per-call timeout override"},
            },
            "required": ["operation"],
            "additionalProperties": False,
        },
    },
    {
        "name": TOOL_STATUS,
        "description": "Report gateway/extension connection state and call counters.",
        "inputSchema": {"type": "object", "properties": {}, "additionalProperties": False},
    },
]


def select_protocol(requested: Any) -> str:
    if isinstance(requested, str) and requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return DEFAULT_PROTOCOL_VERSION


def initialize_result(protocol: str) -> dict[str, Any]:
    return {
        "protocolVersion": protocol,
        "serverInfo": SERVER_INFO,
        "capabilities": CAPABILITIES,
        "instructions": "",
    }


def tools_list() -> list[dict[str, Any]]:
    return TOOL_DEFINITIONS
