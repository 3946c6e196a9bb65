"""Narrow interface to the browser debugging primitive.

The relay core only talks to a `DebuggerBackend`. The shipped implementation
(`cdp_backend.CdpBackend`) speaks the Chrome DevTools Protocol; tests use
in-memory fakes.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

# Schemes the debugger cannot (or must not) attach to.
NON_AUTOMATABLE_PREFIXES: tuple[str, ...] = (
    "chrome://",
    "chrome-extension://",
    "chrome-untrusted://",
    "edge://",
    "devtools://",
    "moz-extension://",
    "about:debugging",
    "view-source:",
)

ATTACH_ALREADY_DEBUGGED = "already_debugged"
ATTACH_BLOCKED = "blocked"
ATTACH_OTHER = "other"


def is_automatable_url(url: str | None) -> bool:
    u = str(url or "").strip().lower()
    if not u:
        # Fresh tabs report an empty URL until their first commit.
        return True
    return not any(u.startswith(p) for p in NON_AUTOMATABLE_PREFIXES)


@dataclass(frozen=True, slots=True)
class TabInfo:
    id: str
    url: str = ""
    title: str = ""
    index: int = 0
    active: bool = False
    window_id: int | None = None

    @property
    def automatable(self) -> bool:
        return is_automatable_url(self.url)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "url": self.url,
            "active": self.active,
            "windowId": self.window_id,
            "index": self.index,
            "automatable": self.automatable,
        }

    def brief(self) -> dict[str, Any]:
        return {"id": self.id, "title": self.title, "url": self.url, "index": self.index}


class AttachFailed(Exception):
    """Attach was refused by the browser.

    `kind` is one of "already_debugged", "blocked" or "other".
    """

    def __init__(self, message: str, *, kind: str = ATTACH_OTHER) -> None:
        super().__init__(message)
        self.kind = kind


class BackendError(Exception):
    pass


EventSink = Callable[[str, str, dict[str, Any]], None]
DetachSink = Callable[[str, str], None]


class DebuggerBackend(Protocol):
    def set_event_sink(self, on_event: EventSink, on_detach: DetachSink) -> None: ...

    def attach(self, tab_id: str) -> Awaitable[None]: ...

    def detach(self, tab_id: str) -> Awaitable[None]: ...

    def send_command(
        self,
        tab_id: str,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        session_id: str | None = None,
    ) -> Awaitable[Any]: ...

    def list_tabs(self) -> Awaitable[list[TabInfo]]: ...

    def get_tab(self, tab_id: str) -> Awaitable[TabInfo | None]: ...

    def create_tab(self, url: str, *, active: bool = True) -> Awaitable[TabInfo]: ...

    def activate_tab(self, tab_id: str) -> Awaitable[None]: ...

    def close_tab(self, tab_id: str) -> Awaitable[None]: ...

    def list_extensions(self) -> Awaitable[list[dict[str, Any]]]: ...

    def close(self) -> Awaitable[None]: ...


__all__ = [
    "ATTACH_ALREADY_DEBUGGED",
    "ATTACH_BLOCKED",
    "ATTACH_OTHER",
    "NON_AUTOMATABLE_PREFIXES",
    "AttachFailed",
    "BackendError",
    "DebuggerBackend",
    "DetachSink",
    "EventSink",
    "TabInfo",
    "is_automatable_url",
]
