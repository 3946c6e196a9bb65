"""
Command registry with dispatch table for the relay.

Each entry is `name -> (handler, requires_tab)`. Commands registered with
`requires_tab=True` wait out an attach or recovery in progress and are then
refused with NoTabAttached unless the addressed slot is attached.
"""

from __future__ import annotations

import logging
from typing import Any

from ..errors import UnknownMethod
from .types import CommandContext, HandlerFunc

logger = logging.getLogger("mcp.relay.commands")


class CommandRegistry:
    def __init__(self) -> None:
        # name -> (handler, requires_tab)
        self._handlers: dict[str, tuple[HandlerFunc, bool]] = {}

    def register(self, name: str, handler: HandlerFunc, requires_tab: bool = True) -> None:
        self._handlers[name] = (handler, requires_tab)

    def register_many(self, handlers: dict[str, tuple[HandlerFunc, bool]]) -> None:
        self._handlers.update(handlers)

    def get(self, name: str) -> tuple[HandlerFunc, bool] | None:
        return self._handlers.get(name)

    def has(self, name: str) -> bool:
        return name in self._handlers

    def requires_tab(self, name: str) -> bool:
        entry = self._handlers.get(name)
        return bool(entry[1]) if entry is not None else False

    async def dispatch(self, name: str, ctx: CommandContext, params: dict[str, Any]) -> Any:
        """
        Run one command and return its result augmented with `currentTab`.

        Raises:
            UnknownMethod: If no handler is registered under `name`
            NoTabAttached: If the handler needs a tab and none is attached
            RelayError: Whatever the handler raises
        """
        entry = self._handlers.get(name)
        if entry is None:
            logger.debug("unknown_method name=%s slot=%s", name, ctx.slot_key)
            raise UnknownMethod(name)

        handler, requires_tab = entry
        if requires_tab:
            await ctx.slot.wait_attached()

        result = await handler(ctx, params or {})
        if result is None:
            result = {}
        if isinstance(result, dict):
            result = {**result, "currentTab": ctx.slot.current_tab()}
        return result

    @property
    def command_names(self) -> list[str]:
        return list(self._handlers.keys())

    def __len__(self) -> int:
        return len(self._handlers)


def create_default_registry() -> CommandRegistry:
    from .handlers import ALL_HANDLERS

    registry = CommandRegistry()
    registry.register_many(ALL_HANDLERS)
    return registry


__all__ = ["CommandRegistry", "create_default_registry"]
