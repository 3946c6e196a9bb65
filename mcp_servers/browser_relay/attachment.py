"""Tab attachment state machine.

States:
- detached:   no tab under control
- attaching:  debugger attach + domain enable + main-context resolution in flight
- attached:   commands may be forwarded
- recovering: the browser detached us unexpectedly; reattach is in progress

Every transition bumps a generation counter. Async continuations capture the
generation they started under and give up when it changed underneath them, so
a late completion never resurrects state that was already superseded.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from .backend import ATTACH_ALREADY_DEBUGGED, ATTACH_BLOCKED, AttachFailed, DebuggerBackend, TabInfo
from .blockers import extension_id_from_origin, identify_blocker
from .errors import AttachmentBlocked, NoTabAttached, RelayError, TabGone
from .telemetry import TelemetryBuffers

logger = logging.getLogger("mcp.relay.attachment")

STATE_DETACHED = "detached"
STATE_ATTACHING = "attaching"
STATE_ATTACHED = "attached"
STATE_RECOVERING = "recovering"

ENABLE_DOMAINS: tuple[str, ...] = ("Runtime.enable", "Network.enable", "Page.enable", "Log.enable")


@dataclass(frozen=True, slots=True)
class AttachSettings:
    context_retries: int = 3
    context_retry_delay: float = 0.1
    reattach_attempts: int = 3
    reattach_delay: float = 0.5


@dataclass(slots=True)
class TabAttachment:
    tab_id: str
    stealth: bool = False
    main_context_id: int | None = None
    main_frame_id: str | None = None
    info: TabInfo | None = None
    extension_ids: set[str] = field(default_factory=set)
    attached_at: float = field(default_factory=time.time)
    recoveries: int = 0


class AttachmentSlot:
    """One attachment context: the direct session or a single tenant."""

    def __init__(
        self,
        backend: DebuggerBackend,
        telemetry: TelemetryBuffers,
        *,
        label: str = "direct",
        settings: AttachSettings | None = None,
        on_released: Callable[[str], None] | None = None,
    ) -> None:
        self._backend = backend
        self._telemetry = telemetry
        self.label = label
        self.settings = settings or AttachSettings()
        self._on_released = on_released

        self._state = STATE_DETACHED
        # Set whenever the slot is not attaching or recovering.
        self._settled = asyncio.Event()
        self._settled.set()
        self.generation = 0
        self.attachment: TabAttachment | None = None
        self.last_detach_reason: str | None = None
        # Extension origins seen per tab; kept after release to explain a later attach refusal.
        self._seen_extensions: dict[str, set[str]] = {}

    # ─────────────────────────────────────────────────────────────────────────
    # Introspection
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def state(self) -> str:
        return self._state

    @state.setter
    def state(self, value: str) -> None:
        self._state = value
        if value in {STATE_ATTACHING, STATE_RECOVERING}:
            self._settled.clear()
        else:
            self._settled.set()

    @property
    def is_busy(self) -> bool:
        return self._state in {STATE_ATTACHING, STATE_RECOVERING}

    @property
    def tab_id(self) -> str | None:
        return self.attachment.tab_id if self.attachment is not None else None

    @property
    def is_attached(self) -> bool:
        return self.state == STATE_ATTACHED and self.attachment is not None

    @property
    def stealth(self) -> bool:
        return bool(self.attachment.stealth) if self.attachment is not None else False

    @property
    def main_context_id(self) -> int | None:
        return self.attachment.main_context_id if self.attachment is not None else None

    def require_attached(self) -> TabAttachment:
        if not self.is_attached or self.attachment is None:
            if self.state in {STATE_RECOVERING, STATE_ATTACHING}:
                raise NoTabAttached(
                    "No tab is connected right now: the tab is reconnecting. Retry in a moment."
                )
            raise NoTabAttached()
        return self.attachment

    async def settle(self) -> None:
        """Wait until an in-flight attach or recovery has finished either way."""
        while self.is_busy:
            await self._settled.wait()

    async def wait_attached(self) -> TabAttachment:
        """Like `require_attached`, but rides out an attach or recovery in progress.

        Recovery is bounded by `reattach_attempts`, so the wait is bounded too.
        """
        await self.settle()
        return self.require_attached()

    def current_tab(self) -> dict[str, Any] | None:
        att = self.attachment
        if att is None or self.state != STATE_ATTACHED:
            return None
        if att.info is not None:
            return att.info.brief()
        return {"id": att.tab_id, "title": "", "url": "", "index": 0}

    def status(self) -> dict[str, Any]:
        att = self.attachment
        return {
            "label": self.label,
            "state": self.state,
            "generation": self.generation,
            "tabId": self.tab_id,
            "stealth": self.stealth,
            "mainContextId": att.main_context_id if att is not None else None,
            **({"lastDetachReason": self.last_detach_reason} if self.last_detach_reason else {}),
        }

    def set_stealth(self, stealth: bool) -> None:
        if self.attachment is not None:
            self.attachment.stealth = bool(stealth)

    # ─────────────────────────────────────────────────────────────────────────
    # Transitions
    # ─────────────────────────────────────────────────────────────────────────

    def _bump(self) -> int:
        self.generation += 1
        return self.generation

    def _stale(self, gen: int) -> bool:
        return gen != self.generation

    def _release(self, reason: str) -> str | None:
        """Drop the current tab: clear its telemetry and notify the owner."""
        att = self.attachment
        self.attachment = None
        self.state = STATE_DETACHED
        self.last_detach_reason = reason
        if att is None:
            return None
        self._telemetry.clear(att.tab_id)
        if self._on_released is not None:
            self._on_released(att.tab_id)
        logger.info("tab_released slot=%s tab=%s reason=%s", self.label, att.tab_id, reason)
        return att.tab_id

    async def attach(self, tab_id: str, *, stealth: bool = False, info: TabInfo | None = None) -> TabAttachment:
        tab = str(tab_id)
        current = self.attachment
        if current is not None and current.tab_id == tab and self.state == STATE_ATTACHED:
            current.stealth = bool(stealth)
            if info is not None:
                current.info = info
            return current

        if current is not None and current.tab_id == tab:
            # Same tab mid-attach or mid-recovery: take it over in place so the
            # owner's binding survives; the older attempt sees a new generation.
            att = current
            att.stealth = bool(stealth)
            if info is not None:
                att.info = info
        else:
            if current is not None:
                await self.detach(reason="switch")
            att = TabAttachment(tab_id=tab, stealth=bool(stealth), info=info)
            self.attachment = att

        gen = self._bump()
        self.state = STATE_ATTACHING
        logger.debug("attach_start slot=%s tab=%s gen=%s", self.label, tab, gen)

        try:
            await self._backend.attach(tab)
        except AttachFailed as exc:
            if not self._stale(gen):
                self._release("attach_failed")
            logger.warning("attach_failed slot=%s tab=%s kind=%s err=%s", self.label, tab, exc.kind, exc)
            raise await self._attach_error(tab, exc) from exc
        except Exception as exc:  # noqa: BLE001
            if not self._stale(gen):
                self._release("attach_failed")
            logger.warning("attach_failed slot=%s tab=%s err=%s", self.label, tab, exc)
            raise RelayError(f"Failed to attach to tab {tab}: {exc}") from exc

        if self._stale(gen):
            return await self._superseded(tab)

        await self._enable_domains(tab)
        await self._resolve_main_context(att, gen)
        if self._stale(gen):
            return await self._superseded(tab)

        self.state = STATE_ATTACHED
        logger.info("tab_attached slot=%s tab=%s ctx=%s", self.label, tab, att.main_context_id)
        return att

    async def _superseded(self, tab: str) -> TabAttachment:
        if self.tab_id == tab:
            # A newer attach of the same tab took over; answer with its outcome.
            return await self.wait_attached()
        # Superseded by another tab; do not steal the slot back.
        with contextlib.suppress(Exception):
            await self._backend.detach(tab)
        raise NoTabAttached("Attach was superseded by a newer tab selection; retry.")

    async def detach(self, *, reason: str = "detach") -> bool:
        """Voluntary detach. Returns False when nothing was attached."""
        att = self.attachment
        if att is None:
            return False
        self._bump()
        tab = self._release(reason)
        if tab is not None:
            try:
                await self._backend.detach(tab)
            except Exception as exc:  # noqa: BLE001
                logger.debug("detach_primitive_failed slot=%s tab=%s err=%s", self.label, tab, exc)
        return True

    def abandon(self, *, reason: str = "gone") -> str | None:
        """Drop the attachment without talking to the primitive (tab already gone)."""
        if self.attachment is None:
            return None
        self._bump()
        return self._release(reason)

    async def handle_detached(self, tab_id: str, reason: str = "") -> None:
        """Unsolicited detach from the primitive: try to get the same tab back."""
        tab = str(tab_id)
        att = self.attachment
        if att is None or att.tab_id != tab or self.state != STATE_ATTACHED:
            return

        gen = self._bump()
        self.state = STATE_RECOVERING
        self.last_detach_reason = reason or "detached"
        logger.info("tab_recovering slot=%s tab=%s reason=%s", self.label, tab, reason)

        try:
            info = await self._backend.get_tab(tab)
        except Exception as exc:  # noqa: BLE001
            logger.debug("recover_lookup_failed slot=%s tab=%s err=%s", self.label, tab, exc)
            info = None
        if self._stale(gen):
            return
        if info is None or not info.automatable:
            self._bump()
            self._release("tab_gone" if info is None else "not_automatable")
            return
        att.info = info

        attempts = max(1, int(self.settings.reattach_attempts))
        for attempt in range(attempts):
            await asyncio.sleep(max(0.0, float(self.settings.reattach_delay)))
            if self._stale(gen):
                return
            try:
                await self._backend.attach(tab)
            except Exception as exc:  # noqa: BLE001
                logger.debug("reattach_failed slot=%s tab=%s attempt=%s err=%s", self.label, tab, attempt + 1, exc)
                continue
            break
        else:
            if not self._stale(gen):
                self._bump()
                self._release("recover_failed")
            return

        if self._stale(gen):
            return
        # The previous main context id stays as a fallback until a new one is announced.
        await self._enable_domains(tab)
        await self._resolve_main_context(att, gen)
        if self._stale(gen):
            return
        att.recoveries += 1
        self.state = STATE_ATTACHED
        logger.info("tab_recovered slot=%s tab=%s ctx=%s", self.label, tab, att.main_context_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Events
    # ─────────────────────────────────────────────────────────────────────────

    def handle_event(self, tab_id: str, method: str, params: dict[str, Any]) -> bool:
        """Track context identity and feed telemetry. Returns False if not our tab."""
        att = self.attachment
        if att is None or att.tab_id != str(tab_id):
            return False
        p = params if isinstance(params, dict) else {}

        if method == "Runtime.executionContextCreated":
            ctx = p.get("context") if isinstance(p.get("context"), dict) else {}
            self._on_context_created(att, ctx)
        elif method == "Runtime.executionContextDestroyed":
            ctx_id = p.get("executionContextId")
            if ctx_id is not None and ctx_id == att.main_context_id:
                att.main_context_id = None
        elif method == "Runtime.executionContextsCleared":
            # Keep the last main context id as a fallback until a new one is announced.
            pass
        elif method == "Page.frameNavigated":
            frame = p.get("frame") if isinstance(p.get("frame"), dict) else {}
            if not frame.get("parentId"):
                if isinstance(frame.get("id"), str):
                    att.main_frame_id = frame["id"]
                if att.info is not None and isinstance(frame.get("url"), str):
                    att.info = replace(att.info, url=frame["url"])

        self._telemetry.ingest(att.tab_id, method, p, stealth=att.stealth)
        return True

    def _on_context_created(self, att: TabAttachment, ctx: dict[str, Any]) -> None:
        ext_id = extension_id_from_origin(ctx.get("origin"))
        if ext_id:
            att.extension_ids.add(ext_id)
            self._seen_extensions.setdefault(att.tab_id, set()).add(ext_id)
            return
        aux = ctx.get("auxData") if isinstance(ctx.get("auxData"), dict) else {}
        if aux.get("isDefault") is not True or not isinstance(ctx.get("id"), int):
            return
        frame_id = aux.get("frameId")
        if att.main_frame_id is None or frame_id == att.main_frame_id:
            att.main_context_id = int(ctx["id"])
            if att.main_frame_id is None and isinstance(frame_id, str):
                att.main_frame_id = frame_id

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    async def _enable_domains(self, tab: str) -> None:
        for method in ENABLE_DOMAINS:
            try:
                await self._backend.send_command(tab, method, {})
            except Exception as exc:  # noqa: BLE001
                logger.debug("domain_enable_failed tab=%s method=%s err=%s", tab, method, exc)

    async def _resolve_main_context(self, att: TabAttachment, gen: int) -> None:
        """Poke the runtime until the main-frame default context has been announced."""
        retries = max(1, int(self.settings.context_retries))
        for attempt in range(retries):
            if self._stale(gen):
                return
            try:
                if att.main_frame_id is None:
                    tree = await self._backend.send_command(att.tab_id, "Page.getFrameTree", {})
                    frame = (tree or {}).get("frameTree", {}).get("frame", {}) if isinstance(tree, dict) else {}
                    if isinstance(frame.get("id"), str):
                        att.main_frame_id = frame["id"]
                await self._backend.send_command(
                    att.tab_id, "Runtime.evaluate", {"expression": "1", "returnByValue": True}
                )
            except Exception as exc:  # noqa: BLE001
                logger.debug("context_probe_failed tab=%s attempt=%s err=%s", att.tab_id, attempt + 1, exc)
            if att.main_context_id is not None:
                return
            if attempt + 1 < retries:
                await asyncio.sleep(max(0.0, float(self.settings.context_retry_delay)))
        logger.debug("main_context_unresolved tab=%s", att.tab_id)

    async def _attach_error(self, tab: str, exc: AttachFailed) -> RelayError:
        if exc.kind == ATTACH_ALREADY_DEBUGGED:
            return AttachmentBlocked(tab, cause="debugger")
        if exc.kind == ATTACH_BLOCKED:
            try:
                extensions = await self._backend.list_extensions()
            except Exception:  # noqa: BLE001
                extensions = []
            blocker = identify_blocker(sorted(self._seen_extensions.get(tab, set())), extensions)
            return AttachmentBlocked(tab, cause="extension", blocker=blocker)
        info = None
        with contextlib.suppress(Exception):
            info = await self._backend.get_tab(tab)
        if info is None:
            return TabGone(f"Tab {tab} no longer exists")
        return RelayError(f"Failed to attach to tab {tab}: {exc}")


__all__ = [
    "ENABLE_DOMAINS",
    "STATE_ATTACHED",
    "STATE_ATTACHING",
    "STATE_DETACHED",
    "STATE_RECOVERING",
    "AttachSettings",
    "AttachmentSlot",
    "TabAttachment",
]
