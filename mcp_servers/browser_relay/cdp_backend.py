"""Chrome DevTools Protocol implementation of the debugger backend.

One browser-level WebSocket (from `/json/version`) carries everything:
tabs are attached with `Target.attachToTarget(flatten=True)` and each
attachment gets its own CDP sessionId. Events are routed back to tabs by
sessionId; `Target.detachedFromTarget` for a session we did not release
ourselves is reported as an unsolicited detach.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any

from .backend import (
    ATTACH_ALREADY_DEBUGGED,
    ATTACH_BLOCKED,
    ATTACH_OTHER,
    AttachFailed,
    BackendError,
    DetachSink,
    EventSink,
    TabInfo,
)
from .relay_helpers import _http_get_json, _import_websockets, _ws_send_json

logger = logging.getLogger("mcp.relay.cdp")


def _classify_attach_error(message: str) -> str:
    low = (message or "").lower()
    if "another debugger" in low or "already attached" in low:
        return ATTACH_ALREADY_DEBUGGED
    if "chrome-extension://" in low or "cannot access" in low or "cannot attach" in low:
        return ATTACH_BLOCKED
    return ATTACH_OTHER


class CdpBackend:
    def __init__(self, host: str = "127.0.0.1", port: int = 9222, *, timeout: float = 10.0) -> None:
        self.host = host
        self.port = int(port)
        self.timeout = float(timeout)

        self._on_event: EventSink | None = None
        self._on_detach: DetachSink | None = None

        self._ws: Any | None = None
        self._reader: asyncio.Task | None = None
        self._connect_lock: asyncio.Lock | None = None
        self._next_id = 1
        self._pending: dict[int, asyncio.Future] = {}
        # request id -> sessionId for in-flight session commands
        self._pending_sessions: dict[int, str] = {}

        # tabId <-> CDP sessionId
        self._sessions: dict[str, str] = {}
        self._session_tabs: dict[str, str] = {}
        self._last_activated: str | None = None

    def set_event_sink(self, on_event: EventSink, on_detach: DetachSink) -> None:
        self._on_event = on_event
        self._on_detach = on_detach

    # ─────────────────────────────────────────────────────────────────────────
    # Connection
    # ─────────────────────────────────────────────────────────────────────────

    def _http_url(self, path: str) -> str:
        return f"http://{self.host}:{self.port}{path}"

    async def _http_json(self, path: str, *, method: str = "GET") -> Any:
        return await asyncio.to_thread(_http_get_json, self._http_url(path), self.timeout, method=method)

    async def _ensure_connected(self) -> Any:
        if self._ws is not None:
            return self._ws
        if self._connect_lock is None:
            self._connect_lock = asyncio.Lock()
        async with self._connect_lock:
            if self._ws is not None:
                return self._ws
            websockets = _import_websockets()
            version = await self._http_json("/json/version")
            ws_url = version.get("webSocketDebuggerUrl") if isinstance(version, dict) else None
            if not isinstance(ws_url, str) or not ws_url:
                raise BackendError(f"No browser websocket at {self._http_url('/json/version')}")
            try:
                ws = await websockets.connect(ws_url, ping_interval=None, max_size=None, open_timeout=self.timeout)
            except Exception as exc:  # noqa: BLE001
                raise BackendError(f"CDP connect failed: {exc}") from exc
            self._ws = ws
            self._reader = asyncio.create_task(self._read_loop(ws))
            logger.info("cdp_connected url=%s", ws_url)
            return ws

    async def close(self) -> None:
        self._sessions.clear()
        self._session_tabs.clear()
        ws = self._ws
        self._ws = None
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
        reader = self._reader
        self._reader = None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await reader
        self._fail_pending("CDP connection closed")

    def _fail_pending(self, reason: str) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        self._pending_sessions.clear()
        for fut in pending:
            if not fut.done():
                fut.set_exception(BackendError(reason))

    def _fail_session(self, session_id: str, reason: str) -> None:
        """Session commands carry no timeout, so a gone session must fail them."""
        for req_id in [r for r, sid in self._pending_sessions.items() if sid == session_id]:
            self._pending_sessions.pop(req_id, None)
            fut = self._pending.pop(req_id, None)
            if fut is not None and not fut.done():
                fut.set_exception(BackendError(reason))

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                try:
                    msg = json.loads(raw)
                except Exception:
                    continue
                if isinstance(msg, dict):
                    self._on_message(msg)
        except Exception as exc:  # noqa: BLE001
            logger.debug("cdp_read_loop_ended err=%s", exc)
        finally:
            if self._ws is ws:
                self._ws = None
            self._fail_pending("CDP connection lost")
            lost = list(self._sessions)
            self._sessions.clear()
            self._session_tabs.clear()
            for tab in lost:
                self._emit_detach(tab, "browser_disconnected")

    def _on_message(self, msg: dict[str, Any]) -> None:
        if "id" in msg:
            fut = self._pending.pop(msg.get("id"), None)  # type: ignore[arg-type]
            if fut is None or fut.done():
                return
            err = msg.get("error")
            if isinstance(err, dict):
                fut.set_exception(BackendError(str(err.get("message") or err)))
            else:
                fut.set_result(msg.get("result") if isinstance(msg.get("result"), dict) else {})
            return

        method = msg.get("method")
        params = msg.get("params") if isinstance(msg.get("params"), dict) else {}
        if not isinstance(method, str):
            return

        if method == "Target.detachedFromTarget":
            sid = params.get("sessionId")
            tab = self._session_tabs.pop(sid, None) if isinstance(sid, str) else None
            if tab is not None:
                self._sessions.pop(tab, None)
                self._fail_session(sid, f"Tab {tab} detached")
                self._emit_detach(tab, "target_detached")
            return

        sid = msg.get("sessionId")
        tab = self._session_tabs.get(sid) if isinstance(sid, str) else None
        if tab is None:
            return
        if method == "Inspector.detached":
            self._session_tabs.pop(sid, None)
            self._sessions.pop(tab, None)
            self._fail_session(sid, f"Tab {tab} detached")
            self._emit_detach(tab, str(params.get("reason") or "inspector_detached"))
            return
        if self._on_event is not None:
            self._on_event(tab, method, params)

    def _emit_detach(self, tab: str, reason: str) -> None:
        logger.info("cdp_detached tab=%s reason=%s", tab, reason)
        if self._on_detach is not None:
            self._on_detach(tab, reason)

    async def _call(self, method: str, params: dict[str, Any] | None = None, *, session_id: str | None = None) -> Any:
        ws = await self._ensure_connected()
        req_id = self._next_id
        self._next_id += 1
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut
        if session_id:
            self._pending_sessions[req_id] = session_id
        msg: dict[str, Any] = {"id": req_id, "method": method, "params": params or {}}
        if session_id:
            msg["sessionId"] = session_id
        try:
            await _ws_send_json(ws, msg)
            if session_id:
                # Commands inside a tab session may legitimately run long (awaitPromise, navigation).
                return await fut
            return await asyncio.wait_for(fut, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise BackendError(f"CDP command timed out: {method}") from exc
        finally:
            self._pending.pop(req_id, None)
            self._pending_sessions.pop(req_id, None)

    # ─────────────────────────────────────────────────────────────────────────
    # DebuggerBackend
    # ─────────────────────────────────────────────────────────────────────────

    async def attach(self, tab_id: str) -> None:
        tab = str(tab_id)
        if tab in self._sessions:
            return
        try:
            res = await self._call("Target.attachToTarget", {"targetId": tab, "flatten": True})
        except BackendError as exc:
            msg = str(exc)
            if "no target" in msg.lower():
                raise
            raise AttachFailed(msg, kind=_classify_attach_error(msg)) from exc
        sid = res.get("sessionId") if isinstance(res, dict) else None
        if not isinstance(sid, str) or not sid:
            raise AttachFailed("Target.attachToTarget returned no sessionId")
        self._sessions[tab] = sid
        self._session_tabs[sid] = tab

    async def detach(self, tab_id: str) -> None:
        tab = str(tab_id)
        sid = self._sessions.pop(tab, None)
        if sid is None:
            return
        self._session_tabs.pop(sid, None)
        self._fail_session(sid, f"Tab {tab} detached")
        with contextlib.suppress(BackendError):
            await self._call("Target.detachFromTarget", {"sessionId": sid})

    async def send_command(
        self,
        tab_id: str,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        session_id: str | None = None,
    ) -> Any:
        sid = session_id or self._sessions.get(str(tab_id))
        if not sid:
            raise BackendError(f"Tab {tab_id} is not attached")
        return await self._call(method, params, session_id=sid)

    async def list_tabs(self) -> list[TabInfo]:
        res = await self._call("Target.getTargets", {})
        infos = res.get("targetInfos") if isinstance(res, dict) else None
        tabs: list[TabInfo] = []
        for t in infos if isinstance(infos, list) else []:
            if not isinstance(t, dict) or t.get("type") != "page":
                continue
            tid = str(t.get("targetId") or "")
            if not tid:
                continue
            tabs.append(
                TabInfo(
                    id=tid,
                    url=str(t.get("url") or ""),
                    title=str(t.get("title") or ""),
                    index=len(tabs),
                    active=tid == self._last_activated,
                    window_id=t.get("windowId") if isinstance(t.get("windowId"), int) else None,
                )
            )
        return tabs

    async def get_tab(self, tab_id: str) -> TabInfo | None:
        tab = str(tab_id)
        for info in await self.list_tabs():
            if info.id == tab:
                return info
        return None

    async def create_tab(self, url: str, *, active: bool = True) -> TabInfo:
        res = await self._call("Target.createTarget", {"url": url or "about:blank", "background": not active})
        tid = res.get("targetId") if isinstance(res, dict) else None
        if not isinstance(tid, str) or not tid:
            raise BackendError("Failed to create browser tab")
        if active:
            self._last_activated = tid
        info = await self.get_tab(tid)
        return info or TabInfo(id=tid, url=url or "about:blank", active=active)

    async def activate_tab(self, tab_id: str) -> None:
        await self._call("Target.activateTarget", {"targetId": str(tab_id)})
        self._last_activated = str(tab_id)

    async def close_tab(self, tab_id: str) -> None:
        await self._call("Target.closeTarget", {"targetId": str(tab_id)})

    async def list_extensions(self) -> list[dict[str, Any]]:
        # CDP has no management API; background targets are the closest signal.
        res = await self._call("Target.getTargets", {})
        infos = res.get("targetInfos") if isinstance(res, dict) else None
        seen: dict[str, dict[str, Any]] = {}
        for t in infos if isinstance(infos, list) else []:
            if not isinstance(t, dict):
                continue
            url = str(t.get("url") or "")
            if not url.startswith("chrome-extension://"):
                continue
            ext_id = url[len("chrome-extension://") :].split("/", 1)[0]
            if not ext_id or ext_id in seen:
                continue
            seen[ext_id] = {"name": str(t.get("title") or ext_id), "id": ext_id, "enabled": True, "version": ""}
        return list(seen.values())


__all__ = ["CdpBackend"]
