"""Best-effort identification of the extension that blocks debugger attach.

Order of evidence:
1) extension ids seen as execution-context origins (`chrome-extension://<id>`) in the tab,
   matched against the installed extension list;
2) a keyword heuristic over enabled extension names (ad blockers, privacy tools);
3) "unknown".
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

UNKNOWN_BLOCKER = "unknown"

_KEYWORDS: tuple[str, ...] = (
    "adblock",
    "ad block",
    "ublock",
    "adguard",
    "ghostery",
    "privacy badger",
    "noscript",
    "scriptsafe",
    "debugger",
    "devtools",
    "blocker",
)

_EXT_SCHEME = "chrome-extension://"


def extension_id_from_origin(origin: Any) -> str | None:
    if not isinstance(origin, str) or not origin.startswith(_EXT_SCHEME):
        return None
    rest = origin[len(_EXT_SCHEME) :]
    ext_id = rest.split("/", 1)[0].strip()
    return ext_id or None


def identify_blocker(extension_ids: Iterable[str], extensions: list[dict[str, Any]] | None) -> str:
    installed = [e for e in (extensions or []) if isinstance(e, dict)]
    seen = [str(x) for x in extension_ids if x]

    for ext_id in seen:
        for ext in installed:
            if str(ext.get("id") or "") == ext_id:
                return str(ext.get("name") or ext_id)
    if seen:
        return seen[0]

    for ext in installed:
        if ext.get("enabled") is False:
            continue
        name = str(ext.get("name") or "")
        low = name.lower()
        if any(k in low for k in _KEYWORDS):
            return name

    return UNKNOWN_BLOCKER


__all__ = ["UNKNOWN_BLOCKER", "extension_id_from_origin", "identify_blocker"]
