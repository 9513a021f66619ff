#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[mcp] bridge={os.environ.get('MCP_BRIDGE_HOST', '127.0.0.1')}:{os.environ.get('MCP_BRIDGE_PORT', '8765')} | "
    f"callTimeout={os.environ.get('MCP_BRIDGE_CALL_TIMEOUT', '30')}s | "
    f"queue={os.environ.get('MCP_BRIDGE_QUEUE_WHEN_DISCONNECTED', '1')}",
    file=sys.stderr,
)

from mcp_servers.browser_bridge.main import main  # noqa: E402

if __name__ == "__main__":
    main()
