from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any

from .backend import DebuggerBackend
from .cdp_backend import CdpBackend
from .client_id import ClientIdentity
from .config import RelayConfig
from .connection import RelayConnection
from .relay_helpers import _import_websockets, _now_ms

_LOGGER = logging.getLogger("mcp.relay.client")


class RelayClient:
    """Keeps one relay connection to the MCP server alive.

    Each socket gets a fresh `RelayConnection`; when it closes, everything it
    owned is released and the client reconnects with exponential backoff.
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        backend: DebuggerBackend | None = None,
        identity: ClientIdentity | None = None,
        connection_factory: Callable[..., RelayConnection] | None = None,
    ) -> None:
        self.config = config
        self.backend = backend or CdpBackend(config.cdp_host, config.cdp_port, timeout=config.cdp_timeout)
        self.identity = identity or ClientIdentity(config.state_dir)
        self._connection_factory = connection_factory or RelayConnection

        self._stop = asyncio.Event()
        self._connection: RelayConnection | None = None
        self._close_task: asyncio.Task | None = None
        self.connected = False
        self.connects = 0
        self.last_error: str | None = None
        self.last_connected_at_ms: int | None = None

    def stop(self) -> None:
        self._stop.set()
        conn = self._connection
        if conn is not None:
            self._close_task = asyncio.create_task(conn.close("stopped"))

    @property
    def connection(self) -> RelayConnection | None:
        return self._connection

    def status(self) -> dict[str, Any]:
        conn = self._connection
        return {
            "url": self.config.relay_url,
            "connected": bool(self.connected),
            "connects": self.connects,
            "clientId": self.identity.stable_id(),
            **({"serverClientId": self.identity.server_id()} if self.identity.server_id() else {}),
            **({"lastError": self.last_error} if self.last_error else {}),
            **({"lastConnectedAtMs": self.last_connected_at_ms} if self.last_connected_at_ms else {}),
            **({"connection": conn.status()} if conn is not None else {}),
        }

    async def run(self, *, max_connections: int | None = None) -> None:
        websockets = _import_websockets()
        backoff_s = 0.25
        max_backoff_s = 5.0
        client_id = self.identity.stable_id()

        while not self._stop.is_set():
            try:
                async with websockets.connect(
                    self.config.relay_url, ping_interval=None, max_size=None, open_timeout=5.0
                ) as ws:
                    self.connected = True
                    self.connects += 1
                    self.last_error = None
                    self.last_connected_at_ms = _now_ms()
                    backoff_s = 0.25
                    _LOGGER.info("relay_connected url=%s client=%s", self.config.relay_url, client_id)

                    conn = self._connection_factory(
                        ws, self.backend, config=self.config, client_id=client_id, identity=self.identity
                    )
                    self._connection = conn
                    try:
                        await conn.run()
                    finally:
                        self._connection = None
                        self.connected = False
                    _LOGGER.info("relay_disconnected reason=%s", conn.close_reason)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                self.connected = False
                self.last_error = str(exc)
                _LOGGER.debug("relay_connect_failed url=%s err=%s", self.config.relay_url, exc)

            if max_connections is not None and self.connects >= max_connections:
                break
            if self._stop.is_set():
                break
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop.wait(), timeout=backoff_s)
            backoff_s = min(backoff_s * 1.6, max_backoff_s)

        close_task, self._close_task = self._close_task, None
        if close_task is not None:
            with contextlib.suppress(Exception):
                await close_task
        with contextlib.suppress(Exception):
            await self.backend.close()


__all__ = ["RelayClient"]
