"""One relay connection: the socket to the MCP server and everything it owns.

All per-connection state (slots, registry, telemetry, reaper) lives on the
instance, so several connections can coexist in a process. Inbound requests
run as independent tasks; backend events are funneled through one queue and
processed in order by a single pump task.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from typing import Any

from .addressing import MODE_CONTROL, MODE_PROXY, Address, resolve_address
from .attachment import AttachmentSlot
from .backend import DebuggerBackend
from .client_id import ClientIdentity
from .config import RelayConfig
from .errors import GENERIC_ERROR, MalformedFrame, RelayError
from .frames import Notification, Request, decode, encode_error, encode_notification, encode_response
from .reaper import StaleStateReaper
from .registry import SessionRegistry
from .relay_helpers import _now_ms
from .server.registry import CommandRegistry, create_default_registry
from .server.types import CommandContext
from .telemetry import TelemetryBuffers

logger = logging.getLogger("mcp.relay.connection")

RELAY_VERSION = "0.1.0"

# Registry keys for the non-tenant slots. Tenant keys never contain ":" so these cannot collide.
DIRECT_KEY = ":direct"
CONTROL_KEY = ":control"

_STEALTH_HIDDEN_PREFIXES = ("Runtime.consoleAPICalled", "Runtime.exceptionThrown", "Console.", "Log.")


class RelayConnection:
    def __init__(
        self,
        ws: Any,
        backend: DebuggerBackend,
        *,
        config: RelayConfig | None = None,
        client_id: str = "",
        identity: ClientIdentity | None = None,
        commands: CommandRegistry | None = None,
        forward_events: bool = True,
    ) -> None:
        self._ws = ws
        self.backend = backend
        self.config = config or RelayConfig()
        self.identity = identity
        self.client_id = client_id or (identity.stable_id() if identity is not None else "")
        self.commands = commands or create_default_registry()
        self.forward_events = forward_events

        self.telemetry = TelemetryBuffers(max_entries=self.config.max_entries, max_pending=self.config.max_pending)
        self.registry = SessionRegistry()
        self.reaper = StaleStateReaper(
            backend,
            self.telemetry,
            self.registry,
            interval_s=self.config.reaper_interval,
            on_evicted=self._on_tabs_evicted,
        )

        self._slots: dict[str, AttachmentSlot] = {}
        self._events: asyncio.Queue = asyncio.Queue()
        self._pump_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

        self.closed = False
        self.close_reason: str | None = None
        self.server_status: dict[str, Any] = {}
        self.server_client_id: str | None = identity.server_id() if identity is not None else None
        self.opened_at_ms = _now_ms()

        # small connection log buffer (for getLogs)
        self._logs: deque[dict[str, Any]] = deque(maxlen=200)

        backend.set_event_sink(self._on_backend_event, self._on_backend_detach)

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump())
        self.reaper.start()

    async def send_handshake(self) -> None:
        params: dict[str, Any] = {"name": self.config.browser_name, "clientId": self.client_id, "version": RELAY_VERSION}
        if self.config.access_token:
            params["accessToken"] = self.config.access_token
        self._log("info", "handshake sent" + (" (with access token)" if self.config.access_token else ""))
        await self._send(encode_notification("extension_handshake", params))

    async def run(self) -> None:
        """Serve the socket until it closes, then release everything."""
        self.start()
        try:
            await self.send_handshake()
            async for raw in self._ws:
                await self.handle_raw(raw)
        finally:
            await self.close("socket_closed")

    async def close(self, reason: str = "closed") -> None:
        if self.closed:
            return
        self.closed = True
        self.close_reason = reason
        self._log("info", f"connection closing: {reason}")

        await self.reaper.stop()
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for t in tasks:
            t.cancel()
        for t in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await t
        pump = self._pump_task
        self._pump_task = None
        if pump is not None and pump is not current:
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump

        for slot in list(self._slots.values()):
            with contextlib.suppress(Exception):
                await slot.detach(reason="connection_closed")
        self._slots.clear()
        self.registry.discard()
        self.telemetry.clear_all()

        with contextlib.suppress(Exception):
            await self._ws.close()

    def schedule_reload(self, *, delay_s: float = 0.1) -> None:
        async def _reload() -> None:
            await asyncio.sleep(max(0.0, float(delay_s)))
            self._log("info", "reload requested by server")
            with contextlib.suppress(Exception):
                await self._ws.close()

        self._spawn(_reload())

    # ─────────────────────────────────────────────────────────────────────────
    # Inbound
    # ─────────────────────────────────────────────────────────────────────────

    async def handle_raw(self, raw: str | bytes) -> asyncio.Task | None:
        """Decode one frame. Requests are spawned as tasks and the task is returned."""
        try:
            frame = decode(raw)
        except MalformedFrame as exc:
            self._log("warn", exc.message)
            await self._send(encode_error(None, exc.code, exc.message))
            return None
        if isinstance(frame, Request):
            return self._spawn(self._handle_request(frame))
        await self._handle_notification(frame)
        return None

    def slot_for(self, address: Address) -> tuple[str, AttachmentSlot]:
        if address.mode == MODE_PROXY and address.tenant_key is not None:
            key = address.tenant_key
            self.registry.touch(key)
        elif address.mode == MODE_CONTROL:
            key = CONTROL_KEY
        else:
            key = DIRECT_KEY
        slot = self._slots.get(key)
        if slot is None:
            slot = AttachmentSlot(
                self.backend,
                self.telemetry,
                label=key,
                settings=self.config.attach_settings(),
                on_released=lambda tab, _key=key: self._on_slot_released(_key, tab),
            )
            self._slots[key] = slot
        return key, slot

    def get_slot(self, key: str) -> AttachmentSlot | None:
        return self._slots.get(key)

    async def _handle_request(self, req: Request) -> None:
        address = resolve_address(req.id)
        key, slot = self.slot_for(address)
        ctx = CommandContext(connection=self, address=address, slot=slot, slot_key=key, method=req.method)
        try:
            result = await self.commands.dispatch(req.method, ctx, req.params)
        except RelayError as exc:
            logger.debug("command_failed method=%s id=%s err=%s", req.method, req.id, exc.message)
            err = exc.to_error()
            await self._send(encode_error(req.id, err["code"], err["message"], err.get("data")))
            return
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("command_crashed method=%s id=%s", req.method, req.id)
            self._log("error", f"{req.method} failed: {exc}")
            await self._send(encode_error(req.id, GENERIC_ERROR, str(exc) or type(exc).__name__))
            return
        await self._send(encode_response(req.id, result))

    async def _handle_notification(self, note: Notification) -> None:
        method = note.method
        params = note.params
        if method == "connection_status":
            self.server_status = dict(params)
            self._log("info", f"connection status: {params}")
            return
        if method == "authenticated":
            cid = params.get("client_id")
            if isinstance(cid, str) and cid:
                self.server_client_id = cid
                if self.identity is not None:
                    self.identity.store_server_id(cid)
            self._log("info", f"authenticated as {cid}")
            return
        if method == "client_disconnected":
            key = params.get("tenant") or params.get("mcp_client_id") or params.get("client_id")
            if isinstance(key, str) and key:
                await self.drop_tenant(key)
            return
        logger.debug("notification_ignored method=%s", method)

    async def drop_tenant(self, key: str) -> None:
        slot = self._slots.pop(key, None)
        if slot is not None:
            await slot.detach(reason="client_disconnected")
        self.registry.unbind(key)
        self._log("info", f"tenant disconnected: {key}")

    # ─────────────────────────────────────────────────────────────────────────
    # Backend events
    # ─────────────────────────────────────────────────────────────────────────

    def _on_backend_event(self, tab_id: str, method: str, params: dict[str, Any]) -> None:
        if not self.closed:
            self._events.put_nowait(("event", str(tab_id), method, params))

    def _on_backend_detach(self, tab_id: str, reason: str) -> None:
        if not self.closed:
            self._events.put_nowait(("detach", str(tab_id), reason, None))

    def _slot_for_tab(self, tab_id: str) -> tuple[str, AttachmentSlot] | None:
        key = self.registry.tenant_for_tab(tab_id)
        if key is None:
            return None
        slot = self._slots.get(key)
        if slot is None or slot.tab_id != tab_id:
            return None
        return key, slot

    async def _pump(self) -> None:
        while True:
            kind, tab, a, b = await self._events.get()
            try:
                await self.process_backend_item(kind, tab, a, b)
            except Exception:  # noqa: BLE001
                logger.exception("event_pump_failed kind=%s tab=%s", kind, tab)

    async def process_backend_item(self, kind: str, tab: str, a: Any, b: Any) -> None:
        found = self._slot_for_tab(tab)
        if found is None:
            return
        key, slot = found
        if kind == "detach":
            # Recovery sleeps between attempts; events must keep flowing meanwhile.
            self._spawn(slot.handle_detached(tab, str(a or "")))
            return
        method, params = str(a), b if isinstance(b, dict) else {}
        slot.handle_event(tab, method, params)
        if self.forward_events and not (slot.stealth and method.startswith(_STEALTH_HIDDEN_PREFIXES)):
            payload: dict[str, Any] = {"tabId": tab, "method": method, "params": params}
            if key not in {DIRECT_KEY, CONTROL_KEY}:
                payload["tenant"] = key
            await self._send(encode_notification("forwardCDPEvent", payload))

    async def drain_events(self) -> None:
        """Process queued backend items inline (used when no pump task runs)."""
        while not self._events.empty():
            kind, tab, a, b = self._events.get_nowait()
            await self.process_backend_item(kind, tab, a, b)

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    def _on_slot_released(self, key: str, tab: str) -> None:
        if self.registry.tenant_for_tab(tab) == key:
            self.registry.release_tab(key)

    async def _on_tabs_evicted(self, tabs: set[str]) -> None:
        for slot in list(self._slots.values()):
            if slot.tab_id in tabs:
                slot.abandon(reason="tab_gone")

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def send_notification(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self._send(encode_notification(method, params))

    async def _send(self, text: str) -> None:
        if self.closed:
            return
        try:
            await self._ws.send(text)
        except Exception as exc:  # noqa: BLE001
            logger.debug("send_failed err=%s", exc)

    def _log(self, level: str, message: str) -> None:
        self._logs.append({"ts": _now_ms(), "level": level, "message": message})
        logger.log(logging.WARNING if level in {"warn", "error"} else logging.DEBUG, "%s", message)

    def recent_logs(self) -> list[dict[str, Any]]:
        return list(self._logs)

    def status(self) -> dict[str, Any]:
        return {
            "clientId": self.client_id,
            **({"serverClientId": self.server_client_id} if self.server_client_id else {}),
            "closed": self.closed,
            "openedAtMs": self.opened_at_ms,
            "slots": {k: s.status() for k, s in self._slots.items()},
            "tenants": [t for t in self.registry.tenants() if t not in {DIRECT_KEY, CONTROL_KEY}],
            "telemetryTabs": self.telemetry.tab_ids(),
            "reaper": self.reaper.status(),
        }


__all__ = ["CONTROL_KEY", "DIRECT_KEY", "RELAY_VERSION", "RelayConnection"]
