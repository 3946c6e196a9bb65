"""
Telemetry handlers - console and network buffers of the attached tab.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..types import CommandContext


async def handle_get_console_messages(ctx: CommandContext, args: dict[str, Any]) -> dict[str, Any]:
    att = ctx.slot.require_attached()
    return {"messages": ctx.telemetry.get_console(att.tab_id)}


async def handle_get_network_requests(ctx: CommandContext, args: dict[str, Any]) -> dict[str, Any]:
    att = ctx.slot.require_attached()
    return {"requests": ctx.telemetry.get_network(att.tab_id)}


async def handle_clear_console_messages(ctx: CommandContext, args: dict[str, Any]) -> dict[str, Any]:
    att = ctx.slot.require_attached()
    ctx.telemetry.clear_console(att.tab_id)
    return {"success": True}


async def handle_clear_network_requests(ctx: CommandContext, args: dict[str, Any]) -> dict[str, Any]:
    att = ctx.slot.require_attached()
    ctx.telemetry.clear_network(att.tab_id)
    return {"success": True}


async def handle_clear_telemetry(ctx: CommandContext, args: dict[str, Any]) -> dict[str, Any]:
    att = ctx.slot.require_attached()
    ctx.telemetry.clear(att.tab_id)
    return {"success": True}


TELEMETRY_HANDLERS: dict[str, tuple] = {
    "getConsoleMessages": (handle_get_console_messages, True),
    "getNetworkRequests": (handle_get_network_requests, True),
    "clearConsoleMessages": (handle_clear_console_messages, True),
    "clearNetworkRequests": (handle_clear_network_requests, True),
    "clearTelemetry": (handle_clear_telemetry, True),
}
