"""
Browser relay entry point.

Connects to the MCP server's extension endpoint and drives the local browser
through its remote-debugging port. Configuration comes from MCP_RELAY_* /
MCP_BROWSER_* environment variables (see config.py).
"""

from __future__ import annotations

import asyncio
import logging
import signal
from contextlib import suppress

from .config import RelayConfig
from .relay_client import RelayClient

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
)
logger = logging.getLogger("mcp.relay")

__all__ = ["main", "run_relay"]


def set_debug_mode(enabled: bool) -> None:
    logger.setLevel(logging.DEBUG if enabled else logging.INFO)


async def run_relay(config: RelayConfig) -> None:
    client = RelayClient(config)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows event loops.
        with suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, client.stop)
    logger.info(
        "relay starting url=%s browser=%s cdp=%s:%s client=%s",
        config.relay_url,
        config.browser_name,
        config.cdp_host,
        config.cdp_port,
        client.identity.stable_id(),
    )
    await client.run()


def main() -> None:
    """Main entry point for the browser relay."""
    config = RelayConfig.from_env()
    set_debug_mode(config.debug)
    with suppress(KeyboardInterrupt):
        asyncio.run(run_relay(config))


if __name__ == "__main__":
    main()
