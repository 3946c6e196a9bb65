"""Helper utilities shared across relay submodules."""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any

from .backend import BackendError


def _now_ms() -> int:
    return int(time.time() * 1000)


def _repo_root() -> Path:
    # mcp_servers/browser_relay/relay_helpers.py -> repo root is parents[2]
    return Path(__file__).resolve().parents[2]


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "The relay requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


def _http_get_json(url: str, timeout: float = 2.0, *, method: str = "GET") -> Any:
    """Fetch JSON from a DevTools HTTP endpoint."""
    from urllib.error import URLError
    from urllib.request import Request, urlopen

    req = Request(url, method=method, headers={"User-Agent": "mcp-relay/1.0"})
    try:
        with urlopen(req, timeout=timeout) as resp:
            body = resp.read().decode("utf-8", errors="replace")
    except (URLError, OSError) as e:
        raise BackendError(str(e)) from e
    if not body.strip():
        return None
    try:
        return json.loads(body)
    except ValueError:
        # /json/activate and /json/close answer with plain text.
        return body


async def _ws_send_json(ws, payload: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
    await ws.send(json.dumps(payload, ensure_ascii=False))


__all__ = [
    "_http_get_json",
    "_import_websockets",
    "_now_ms",
    "_repo_root",
    "_ws_send_json",
]
