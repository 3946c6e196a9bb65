"""
Relay-level handlers: identity, self-reload, diagnostics.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from ...errors import RelayError

if TYPE_CHECKING:
    from ..types import CommandContext


async def handle_authenticate(ctx: CommandContext, args: dict[str, Any]) -> dict[str, Any]:
    conn = ctx.connection
    return {
        "name": conn.config.browser_name,
        "access_token": conn.config.access_token,
        "client_id": conn.client_id,
    }


async def handle_reload_self(ctx: CommandContext, args: dict[str, Any]) -> dict[str, Any]:
    # The response goes out first; the socket closes shortly after and the client reconnects fresh.
    ctx.connection.schedule_reload(delay_s=0.1)
    return {"reloaded": True}


async def handle_list_extensions(ctx: CommandContext, args: dict[str, Any]) -> dict[str, Any]:
    try:
        extensions = await ctx.backend.list_extensions()
    except Exception as exc:  # noqa: BLE001
        raise RelayError(f"Failed to list extensions: {exc}") from exc
    return {"extensions": extensions, "count": len(extensions)}


async def handle_get_logs(ctx: CommandContext, args: dict[str, Any]) -> dict[str, Any]:
    logs = ctx.connection.recent_logs()
    return {"logs": logs, "count": len(logs)}


async def handle_get_status(ctx: CommandContext, args: dict[str, Any]) -> dict[str, Any]:
    return ctx.connection.status()


RELAY_HANDLERS: dict[str, tuple] = {
    "authenticate": (handle_authenticate, False),
    "reloadSelf": (handle_reload_self, False),
    "listExtensions": (handle_list_extensions, True),
    "getLogs": (handle_get_logs, True),
    "getStatus": (handle_get_status, True),
}
