"""
Tab handlers: enumeration, selection, creation and attachment lifecycle.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from ...backend import TabInfo, is_automatable_url
from ...errors import InvalidParams, RelayError, TabGone

if TYPE_CHECKING:
    from ..types import CommandContext

logger = logging.getLogger("mcp.relay.handlers.tabs")


def _int_param(args: dict[str, Any], name: str) -> int:
    raw = args.get(name)
    if raw is None:
        raise InvalidParams(f"{name} parameter is required")
    if isinstance(raw, bool):
        raise InvalidParams(f"{name} must be an integer")
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidParams(f"{name} must be an integer") from exc


def _bool_param(args: dict[str, Any], name: str, default: bool) -> bool:
    raw = args.get(name)
    if raw is None:
        return default
    return bool(raw)


def _pick_index(tabs: list[TabInfo], index: int) -> TabInfo:
    if index < 0 or index >= len(tabs):
        raise InvalidParams(f"Tab index {index} out of range (0-{len(tabs) - 1})")
    return tabs[index]


async def attach_tab(ctx: CommandContext, info: TabInfo, *, stealth: bool) -> None:
    """Claim `info` for the addressed session and attach the debugger to it."""
    registry = ctx.connection.registry
    registry.bind(ctx.slot_key, info.id)
    try:
        await ctx.slot.attach(info.id, stealth=stealth, info=info)
    except Exception:
        if registry.resolve_tab(ctx.slot_key) == info.id:
            registry.release_tab(ctx.slot_key)
        raise
    await ctx.connection.send_notification("setStealthMode", {"stealthMode": bool(stealth)})


async def handle_get_tabs(ctx: CommandContext, args: dict[str, Any]) -> dict[str, Any]:
    tabs = await ctx.backend.list_tabs()
    return {"tabs": [t.to_dict() for t in tabs], "count": len(tabs)}


async def handle_select_tab(ctx: CommandContext, args: dict[str, Any]) -> dict[str, Any]:
    index = _int_param(args, "tabIndex")
    activate = _bool_param(args, "activate", False)
    stealth = _bool_param(args, "stealth", False)

    info = _pick_index(await ctx.backend.list_tabs(), index)
    if not info.automatable:
        raise TabGone(
            f'Cannot automate tab {index}: "{info.title}" ({info.url or "no url"}) - '
            "browser-internal and extension pages cannot be automated"
        )
    if activate:
        await ctx.backend.activate_tab(info.id)

    await attach_tab(ctx, info, stealth=stealth)
    return {"success": True, "activated": activate, "tab": info.brief()}


async def handle_create_tab(ctx: CommandContext, args: dict[str, Any]) -> dict[str, Any]:
    url = str(args.get("url") or "about:blank")
    activate = _bool_param(args, "activate", True)
    stealth = _bool_param(args, "stealth", False)
    if not is_automatable_url(url):
        raise TabGone(f"Cannot create a tab for {url}: browser-internal and extension pages cannot be automated")

    info = await ctx.backend.create_tab(url, active=activate)
    if not info.automatable:
        raise TabGone(f"Tab {info.id} opened on {info.url} which cannot be automated")
    await attach_tab(ctx, info, stealth=stealth)
    # The new tab may still report about:blank; answer with the requested URL.
    return {"success": True, "activated": activate, "tab": {"id": info.id, "title": info.title, "url": url}}


async def handle_attach_to_tab(ctx: CommandContext, args: dict[str, Any]) -> dict[str, Any]:
    await ctx.slot.settle()
    if not ctx.slot.is_attached:
        info = await ctx.backend.create_tab("about:blank", active=False)
        await asyncio.sleep(0.1)
        await attach_tab(ctx, info, stealth=_bool_param(args, "stealth", False))
    att = ctx.slot.require_attached()
    try:
        res = await ctx.backend.send_command(att.tab_id, "Target.getTargetInfo", {})
    except Exception as exc:  # noqa: BLE001
        logger.debug("target_info_failed tab=%s err=%s", att.tab_id, exc)
        res = {}
    target = res.get("targetInfo") if isinstance(res, dict) else None
    return {"targetInfo": target if isinstance(target, dict) else {"targetId": att.tab_id, "type": "page"}}


async def handle_activate_tab(ctx: CommandContext, args: dict[str, Any]) -> dict[str, Any]:
    index = _int_param(args, "tabIndex")
    tabs = [t for t in await ctx.backend.list_tabs() if t.automatable]
    info = _pick_index(tabs, index)
    await ctx.backend.activate_tab(info.id)
    # Visual focus only; the attached tab does not change.
    return {"success": True, "activated": True, "tab": {**info.brief(), "index": index}}


async def handle_close_tab(ctx: CommandContext, args: dict[str, Any]) -> dict[str, Any]:
    att = ctx.slot.require_attached()
    tab = att.tab_id
    await ctx.slot.detach(reason="tab_closed")
    try:
        await ctx.backend.close_tab(tab)
    except Exception as exc:  # noqa: BLE001
        raise RelayError(f"Failed to close tab {tab}: {exc}") from exc
    return {"success": True, "closedTabId": tab}


async def handle_detach_tab(ctx: CommandContext, args: dict[str, Any]) -> dict[str, Any]:
    tab = ctx.slot.tab_id
    detached = await ctx.slot.detach(reason="detach")
    return {"success": True, "detached": detached, **({"tabId": tab} if tab else {})}


async def handle_set_stealth_mode(ctx: CommandContext, args: dict[str, Any]) -> dict[str, Any]:
    stealth = _bool_param(args, "stealth", _bool_param(args, "stealthMode", False))
    ctx.slot.set_stealth(stealth)
    await ctx.connection.send_notification("setStealthMode", {"stealthMode": stealth})
    return {"success": True, "stealth": stealth}


async def handle_open_test_page(ctx: CommandContext, args: dict[str, Any]) -> dict[str, Any]:
    url = ctx.connection.config.test_page_url
    info = await ctx.backend.create_tab(url, active=True)
    return {"url": url, "tab": {"id": info.id}}


TAB_HANDLERS: dict[str, tuple] = {
    "getTabs": (handle_get_tabs, False),
    "selectTab": (handle_select_tab, False),
    "createTab": (handle_create_tab, False),
    "openTestPage": (handle_open_test_page, False),
    "attachToTab": (handle_attach_to_tab, False),
    "activateTab": (handle_activate_tab, False),
    "closeTab": (handle_close_tab, True),
    "detachTab": (handle_detach_tab, True),
    "setStealthMode": (handle_set_stealth_mode, True),
}
