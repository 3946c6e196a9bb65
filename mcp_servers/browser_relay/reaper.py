from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .backend import DebuggerBackend
from .registry import SessionRegistry
from .telemetry import TelemetryBuffers

_LOGGER = logging.getLogger("mcp.relay.reaper")


class StaleStateReaper:
    """Periodically evicts telemetry and bindings that refer to closed tabs.

    A sweep that cannot enumerate live tabs evicts nothing.
    """

    def __init__(
        self,
        backend: DebuggerBackend,
        telemetry: TelemetryBuffers,
        registry: SessionRegistry,
        *,
        interval_s: float = 60.0,
        on_evicted: Callable[[set[str]], Awaitable[None] | None] | None = None,
    ) -> None:
        self._backend = backend
        self._telemetry = telemetry
        self._registry = registry
        self.interval_s = max(0.05, float(interval_s))
        self._on_evicted = on_evicted
        self._task: asyncio.Task | None = None
        self.sweeps = 0
        self.last_evicted: list[str] = []
        self.last_error: str | None = None

    def start(self) -> bool:
        if self._task is not None and not self._task.done():
            return False
        self._task = asyncio.create_task(self._run())
        return True

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                _LOGGER.warning("reaper_sweep_failed err=%s", exc)

    async def sweep(self) -> set[str]:
        self.sweeps += 1
        referenced = set(self._telemetry.tab_ids()) | set(self._registry.bound_tabs())
        if not referenced:
            self.last_evicted = []
            return set()

        try:
            live = {t.id for t in await self._backend.list_tabs()}
        except Exception as exc:  # noqa: BLE001
            self.last_error = str(exc)
            _LOGGER.debug("reaper_list_tabs_failed err=%s", exc)
            return set()

        dead = referenced - live
        if dead:
            self._telemetry.evict(dead)
            for tab in dead:
                self._registry.evict_tab(tab)
            _LOGGER.info("reaper_evicted tabs=%s", ",".join(sorted(dead)))
            if self._on_evicted is not None:
                res: Any = self._on_evicted(dead)
                if asyncio.iscoroutine(res):
                    await res
        self.last_evicted = sorted(dead)
        self.last_error = None
        return dead

    def status(self) -> dict[str, Any]:
        return {
            "running": self._task is not None and not self._task.done(),
            "intervalS": self.interval_s,
            "sweeps": self.sweeps,
            "lastEvicted": list(self.last_evicted),
            **({"lastError": self.last_error} if self.last_error else {}),
        }


__all__ = ["StaleStateReaper"]
