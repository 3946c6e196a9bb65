#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[relay] url={os.environ.get('MCP_RELAY_URL', 'ws://127.0.0.1:5555/extension')} | "
    f"cdp={os.environ.get('MCP_BROWSER_HOST', '127.0.0.1')}:{os.environ.get('MCP_BROWSER_PORT', '9222')} | "
    f"debug={os.environ.get('MCP_RELAY_DEBUG', '0')}",
    file=sys.stderr,
)

from mcp_servers.browser_relay.main import main  # noqa: E402

if __name__ == "__main__":
    main()
