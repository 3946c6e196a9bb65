"""Stable relay identity (disk-backed).

- `chrome-<uuid4>` is generated once and reused across restarts, so the MCP
  server can recognize a reconnecting browser without renegotiation.
- The id assigned by the server after authentication is stored alongside.
- Atomic writes: write temp file then replace.
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from contextlib import suppress
from pathlib import Path
from typing import Any

logger = logging.getLogger("mcp.relay.client_id")

STATE_FILENAME = "client_id.json"


def _load(path: Path) -> dict[str, Any]:
    try:
        if not path.exists() or not path.is_file():
            return {}
        obj = json.loads(path.read_text(encoding="utf-8", errors="replace"))
    except Exception:
        # Corrupt state is treated as absent; a new id is minted.
        return {}
    return obj if isinstance(obj, dict) else {}


def _save(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {**data, "updatedAt": int(time.time() * 1000)}
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, ensure_ascii=True, indent=2, sort_keys=True), encoding="utf-8")
    with suppress(Exception):
        os.chmod(tmp, 0o600)
    tmp.replace(path)
    with suppress(Exception):
        os.chmod(path, 0o600)


class ClientIdentity:
    def __init__(self, state_dir: str | Path, *, prefix: str = "chrome") -> None:
        self.path = Path(state_dir) / STATE_FILENAME
        self.prefix = prefix
        self._cache: dict[str, Any] | None = None

    def _state(self) -> dict[str, Any]:
        if self._cache is None:
            self._cache = _load(self.path)
        return self._cache

    def stable_id(self) -> str:
        state = self._state()
        cid = state.get("stableClientId")
        if isinstance(cid, str) and cid.strip():
            return cid
        cid = f"{self.prefix}-{uuid.uuid4()}"
        state["stableClientId"] = cid
        try:
            _save(self.path, state)
        except OSError as exc:
            logger.warning("client_id_persist_failed path=%s err=%s", self.path, exc)
        else:
            logger.info("client_id_generated id=%s", cid)
        return cid

    def server_id(self) -> str | None:
        sid = self._state().get("serverExtensionId")
        return sid if isinstance(sid, str) and sid else None

    def store_server_id(self, server_id: str) -> None:
        state = self._state()
        if state.get("serverExtensionId") == server_id:
            return
        state["serverExtensionId"] = str(server_id)
        try:
            _save(self.path, state)
        except OSError as exc:
            logger.warning("server_id_persist_failed path=%s err=%s", self.path, exc)


__all__ = ["STATE_FILENAME", "ClientIdentity"]
