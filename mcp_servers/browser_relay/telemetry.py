"""Per-tab console/network buffers fed by passively observed CDP events.

- Console and network entries are kept per tab, ordered by arrival, bounded by
  `max_entries` (oldest entries dropped first).
- Network requests live in a global pending index keyed by CDP requestId until
  their response (or failure) arrives, then they are promoted into the buffer of
  the tab that issued them.
- Main-frame navigation clears a tab's buffers; sub-frame navigation does not.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from .relay_helpers import _now_ms

logger = logging.getLogger("mcp.relay.telemetry")

DEFAULT_MAX_ENTRIES = 1000
DEFAULT_MAX_PENDING = 2000


def _str(x: Any, *, max_len: int = 2000) -> str:
    try:
        s = str(x)
    except Exception:
        s = "<unstringifiable>"
    if len(s) <= max_len:
        return s
    return s[:max_len] + f"… <truncated len={len(s)}>"


def _remote_obj_to_str(obj: Any) -> str:
    if not isinstance(obj, dict):
        return _str(obj)
    for k in ("value", "unserializableValue", "description"):
        if k in obj and obj.get(k) is not None:
            return _str(obj.get(k))
    typ = obj.get("type")
    subtype = obj.get("subtype")
    return _str(f"<{typ}{('/' + subtype) if subtype else ''}>")


def _stack_top(params: dict[str, Any]) -> tuple[str | None, int | None]:
    st = params.get("stackTrace")
    if not isinstance(st, dict):
        return None, None
    frames = st.get("callFrames")
    if not isinstance(frames, list) or not frames or not isinstance(frames[0], dict):
        return None, None
    f0 = frames[0]
    url = f0.get("url") if isinstance(f0.get("url"), str) and f0.get("url") else None
    line = f0.get("lineNumber") if isinstance(f0.get("lineNumber"), int) else None
    return url, line


def _ts_ms(params: dict[str, Any]) -> int:
    # Runtime events carry epoch milliseconds, Network wallTime is epoch seconds.
    ts = params.get("timestamp")
    if isinstance(ts, (int, float)) and ts > 1e11:
        return int(ts)
    wall = params.get("wallTime")
    if isinstance(wall, (int, float)) and wall > 0:
        return int(wall * 1000)
    return _now_ms()


@dataclass(slots=True)
class TabTelemetry:
    console: deque[dict[str, Any]]
    network: deque[dict[str, Any]]

    @classmethod
    def create(cls, max_entries: int) -> TabTelemetry:
        return cls(console=deque(maxlen=max_entries), network=deque(maxlen=max_entries))


@dataclass(slots=True)
class _Pending:
    tab_id: str | None
    meta: dict[str, Any] = field(default_factory=dict)


class TelemetryBuffers:
    def __init__(self, *, max_entries: int = DEFAULT_MAX_ENTRIES, max_pending: int = DEFAULT_MAX_PENDING) -> None:
        self.max_entries = max(1, int(max_entries))
        self.max_pending = max(1, int(max_pending))
        self._tabs: dict[str, TabTelemetry] = {}
        self._pending: dict[str, _Pending] = {}

    # ─────────────────────────────────────────────────────────────────────────
    # Recording
    # ─────────────────────────────────────────────────────────────────────────

    def _tab(self, tab_id: str) -> TabTelemetry:
        tid = str(tab_id)
        buf = self._tabs.get(tid)
        if buf is None:
            buf = TabTelemetry.create(self.max_entries)
            self._tabs[tid] = buf
        return buf

    def record_console(self, tab_id: str, entry: dict[str, Any]) -> None:
        item = dict(entry)
        item.setdefault("timestamp", _now_ms())
        self._tab(tab_id).console.append(item)

    def record_network_request_start(self, request_id: str, meta: dict[str, Any], *, tab_id: str | None = None) -> None:
        rid = str(request_id or "")
        if not rid:
            return
        # Redirects reuse the requestId; the latest request wins.
        self._pending.pop(rid, None)
        self._pending[rid] = _Pending(tab_id=str(tab_id) if tab_id is not None else None, meta=dict(meta))
        if len(self._pending) > self.max_pending:
            drop = len(self._pending) - self.max_pending
            for k in list(self._pending.keys())[:drop]:
                self._pending.pop(k, None)

    def record_network_response(self, request_id: str, meta: dict[str, Any], *, tab_id: str | None = None) -> bool:
        rid = str(request_id or "")
        pending = self._pending.pop(rid, None)
        if pending is None:
            logger.debug("network_response_unmatched requestId=%s", rid)
            return False
        owner = pending.tab_id if pending.tab_id is not None else (str(tab_id) if tab_id is not None else None)
        if owner is None:
            logger.debug("network_response_without_tab requestId=%s", rid)
            return False
        entry = {**pending.meta, **meta, "requestId": rid}
        self._tab(owner).network.append(entry)
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────────────

    def get_console(self, tab_id: str) -> list[dict[str, Any]]:
        buf = self._tabs.get(str(tab_id))
        return [dict(e) for e in buf.console] if buf is not None else []

    def get_network(self, tab_id: str) -> list[dict[str, Any]]:
        buf = self._tabs.get(str(tab_id))
        return [dict(e) for e in buf.network] if buf is not None else []

    def pending_count(self) -> int:
        return len(self._pending)

    def tab_ids(self) -> list[str]:
        tabs = set(self._tabs)
        tabs.update(p.tab_id for p in self._pending.values() if p.tab_id is not None)
        return sorted(tabs)

    # ─────────────────────────────────────────────────────────────────────────
    # Clearing / eviction
    # ─────────────────────────────────────────────────────────────────────────

    def clear(self, tab_id: str) -> None:
        tid = str(tab_id)
        self._tabs.pop(tid, None)
        for rid in [k for k, p in self._pending.items() if p.tab_id == tid]:
            self._pending.pop(rid, None)

    def clear_console(self, tab_id: str) -> None:
        buf = self._tabs.get(str(tab_id))
        if buf is not None:
            buf.console.clear()

    def clear_network(self, tab_id: str) -> None:
        buf = self._tabs.get(str(tab_id))
        if buf is not None:
            buf.network.clear()

    def evict(self, tab_ids: list[str] | set[str]) -> None:
        for tid in tab_ids:
            self.clear(tid)

    def clear_all(self) -> None:
        self._tabs.clear()
        self._pending.clear()

    # ─────────────────────────────────────────────────────────────────────────
    # CDP event mapping
    # ─────────────────────────────────────────────────────────────────────────

    def ingest(self, tab_id: str, method: str, params: dict[str, Any] | None, *, stealth: bool = False) -> None:
        """Map one CDP event onto the buffers of `tab_id`.

        Stealth suppresses console capture only; network capture and
        navigation clearing continue.
        """
        p = params if isinstance(params, dict) else {}
        tid = str(tab_id)

        if method == "Runtime.consoleAPICalled":
            if stealth:
                return
            args = p.get("args") if isinstance(p.get("args"), list) else []
            url, line = _stack_top(p)
            entry: dict[str, Any] = {
                "type": _str(p.get("type") or "log", max_len=40),
                "text": " ".join(_remote_obj_to_str(a) for a in args),
                "timestamp": _ts_ms(p),
            }
            if url:
                entry["url"] = url
            if line is not None:
                entry["lineNumber"] = line
            self.record_console(tid, entry)
            return

        if method == "Runtime.exceptionThrown":
            if stealth:
                return
            details = p.get("exceptionDetails") if isinstance(p.get("exceptionDetails"), dict) else {}
            exc = details.get("exception") if isinstance(details.get("exception"), dict) else {}
            text = exc.get("description") or details.get("text") or "Uncaught exception"
            entry = {"type": "error", "text": _str(text), "timestamp": _ts_ms(p)}
            if isinstance(details.get("url"), str) and details.get("url"):
                entry["url"] = details["url"]
            if isinstance(details.get("lineNumber"), int):
                entry["lineNumber"] = details["lineNumber"]
            self.record_console(tid, entry)
            return

        if method == "Log.entryAdded":
            if stealth:
                return
            raw = p.get("entry") if isinstance(p.get("entry"), dict) else {}
            entry = {
                "type": _str(raw.get("level") or "info", max_len=40),
                "text": _str(raw.get("text") or ""),
                "timestamp": _ts_ms(raw),
            }
            if isinstance(raw.get("url"), str) and raw.get("url"):
                entry["url"] = raw["url"]
            if isinstance(raw.get("lineNumber"), int):
                entry["lineNumber"] = raw["lineNumber"]
            self.record_console(tid, entry)
            return

        if method == "Network.requestWillBeSent":
            req = p.get("request") if isinstance(p.get("request"), dict) else {}
            meta: dict[str, Any] = {
                "url": _str(req.get("url") or "", max_len=4000),
                "method": _str(req.get("method") or "GET", max_len=16),
                "timestamp": _ts_ms(p),
            }
            if isinstance(p.get("type"), str) and p.get("type"):
                meta["type"] = p["type"]
            self.record_network_request_start(str(p.get("requestId") or ""), meta, tab_id=tid)
            return

        if method == "Network.responseReceived":
            resp = p.get("response") if isinstance(p.get("response"), dict) else {}
            meta = {
                "statusCode": resp.get("status") if isinstance(resp.get("status"), int) else 0,
                "statusText": _str(resp.get("statusText") or "", max_len=200),
            }
            if isinstance(p.get("type"), str) and p.get("type"):
                meta["type"] = p["type"]
            self.record_network_response(str(p.get("requestId") or ""), meta, tab_id=tid)
            return

        if method == "Network.loadingFailed":
            meta = {
                "statusCode": 0,
                "statusText": "",
                "errorText": _str(p.get("errorText") or "failed", max_len=200),
            }
            if p.get("canceled") is True:
                meta["canceled"] = True
            self.record_network_response(str(p.get("requestId") or ""), meta, tab_id=tid)
            return

        if method == "Page.frameNavigated":
            frame = p.get("frame") if isinstance(p.get("frame"), dict) else {}
            if frame.get("parentId"):
                return
            logger.debug("main_frame_navigated tab=%s url=%s", tid, frame.get("url"))
            # Buffers only; in-flight requests stay pending.
            self._tabs.pop(tid, None)
            return


__all__ = ["DEFAULT_MAX_ENTRIES", "DEFAULT_MAX_PENDING", "TabTelemetry", "TelemetryBuffers"]
