"""
Raw CDP forwarding to the attached tab.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ...errors import InvalidParams, RelayError

if TYPE_CHECKING:
    from ..types import CommandContext

logger = logging.getLogger("mcp.relay.handlers.cdp")


async def handle_forward_cdp_command(ctx: CommandContext, args: dict[str, Any]) -> Any:
    att = ctx.slot.require_attached()
    method = args.get("method")
    if not isinstance(method, str) or not method.strip():
        raise InvalidParams("method parameter is required")
    params = args.get("params")
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise InvalidParams("params must be an object")
    session_id = args.get("sessionId") if isinstance(args.get("sessionId"), str) and args.get("sessionId") else None

    # Without an explicit context, evaluation may land in an extension's iframe world.
    injected = False
    if method == "Runtime.evaluate" and session_id is None and "contextId" not in params and "uniqueContextId" not in params:
        ctx_id = att.main_context_id
        if ctx_id is not None:
            params = {**params, "contextId": ctx_id}
            injected = True

    try:
        try:
            return await ctx.backend.send_command(att.tab_id, method, params, session_id=session_id)
        except Exception as exc:  # noqa: BLE001
            if not injected or "context" not in str(exc).lower():
                raise
            logger.debug("main_context_stale tab=%s ctx=%s", att.tab_id, params.get("contextId"))
            retry = {k: v for k, v in params.items() if k != "contextId"}
            return await ctx.backend.send_command(att.tab_id, method, retry, session_id=session_id)
    except RelayError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.debug("cdp_forward_failed tab=%s method=%s err=%s", att.tab_id, method, exc)
        raise RelayError(str(exc) or f"{method} failed", details={"method": method}) from exc


CDP_HANDLERS: dict[str, tuple] = {
    "forwardCDPCommand": (handle_forward_cdp_command, True),
}
