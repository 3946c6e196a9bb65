"""
Relay error taxonomy.

Every error that can reach the wire carries a JSON-RPC code. The dispatcher
converts them into `{code, message}` objects keyed to the originating request id.
"""

from __future__ import annotations

from typing import Any

PARSE_ERROR = -32700
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
GENERIC_ERROR = -32000
NO_TAB_ATTACHED = -32001
TAB_ALREADY_BOUND = -32002
ATTACHMENT_BLOCKED = -32003
TAB_GONE = -32004


class RelayError(Exception):
    """Base error for the relay; carries a JSON-RPC code and an optional hint."""

    code: int = GENERIC_ERROR

    def __init__(self, message: str, *, suggestion: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion
        self.details = dict(details or {})

    def to_error(self) -> dict[str, Any]:
        err: dict[str, Any] = {"code": int(self.code), "message": self.message}
        data: dict[str, Any] = {}
        if self.suggestion:
            data["suggestion"] = self.suggestion
        if self.details:
            data.update(self.details)
        if data:
            err["data"] = data
        return err


class MalformedFrame(RelayError):
    code = PARSE_ERROR


class UnknownMethod(RelayError):
    code = METHOD_NOT_FOUND

    def __init__(self, method: str) -> None:
        super().__init__(f"Method {method} not found")
        self.method = method


class InvalidParams(RelayError):
    code = INVALID_PARAMS


class NoTabAttached(RelayError):
    code = NO_TAB_ATTACHED

    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message
            or "No tab is connected. The tab may be reconnecting after a navigation; retry in a moment.",
            suggestion="Retry shortly, or call selectTab/createTab to attach a tab",
        )


class TabAlreadyBound(RelayError):
    code = TAB_ALREADY_BOUND

    def __init__(self, tab_id: str, owner: str) -> None:
        super().__init__(
            f"Tab {tab_id} is already attached to another client ({owner})",
            suggestion="Select or create a different tab",
            details={"tabId": tab_id, "owner": owner},
        )
        self.tab_id = tab_id
        self.owner = owner


class AttachmentBlocked(RelayError):
    """The debugging primitive refused to attach.

    `cause` is "debugger" when another debugger already holds the tab, or
    "extension" when a browser extension interferes (then `blocker` names it).
    """

    code = ATTACHMENT_BLOCKED

    def __init__(self, tab_id: str, *, cause: str, blocker: str | None = None, reason: str | None = None) -> None:
        if cause == "debugger":
            message = (
                f"Cannot attach to tab {tab_id}: another debugger is already attached "
                "(DevTools or another automation client)"
            )
            suggestion = "Close DevTools for this tab or detach the other client, then retry"
        else:
            name = blocker or "unknown"
            message = f"Cannot attach to tab {tab_id}: a browser extension is blocking the debugger ({name})"
            suggestion = "Disable the blocking extension for this site, then retry"
        if reason:
            message = f"{message}: {reason}"
        details: dict[str, Any] = {"tabId": tab_id, "cause": cause}
        if cause != "debugger":
            details["blocker"] = blocker or "unknown"
        super().__init__(message, suggestion=suggestion, details=details)
        self.tab_id = tab_id
        self.cause = cause
        self.blocker = blocker


class TabGone(RelayError):
    code = TAB_GONE


__all__ = [
    "ATTACHMENT_BLOCKED",
    "GENERIC_ERROR",
    "INVALID_PARAMS",
    "METHOD_NOT_FOUND",
    "NO_TAB_ATTACHED",
    "PARSE_ERROR",
    "TAB_ALREADY_BOUND",
    "TAB_GONE",
    "AttachmentBlocked",
    "InvalidParams",
    "MalformedFrame",
    "NoTabAttached",
    "RelayError",
    "TabAlreadyBound",
    "TabGone",
    "UnknownMethod",
]
