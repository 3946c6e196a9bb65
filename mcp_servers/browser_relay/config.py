from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from .attachment import AttachSettings
from .relay_helpers import _repo_root

DEFAULT_RELAY_PORT = 5555
DEFAULT_RELAY_URL = f"ws://127.0.0.1:{DEFAULT_RELAY_PORT}/extension"
DEFAULT_TEST_PAGE_URL = "https://example.com/"


def _bool_env(name: str, *, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return str(raw).strip().lower() not in {"0", "false", "no", "off", ""}


def _float_env(name: str, *, default: float, lo: float, hi: float) -> float:
    try:
        val = float(os.environ.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


def _int_env(name: str, *, default: int, lo: int, hi: int) -> int:
    return int(_float_env(name, default=default, lo=lo, hi=hi))


def _with_port(url: str, port: int) -> str:
    parts = urlsplit(url)
    host = parts.hostname or "127.0.0.1"
    return urlunsplit((parts.scheme or "ws", f"{host}:{int(port)}", parts.path, parts.query, parts.fragment))


@dataclass
class RelayConfig:
    relay_url: str = DEFAULT_RELAY_URL
    access_token: str | None = None
    browser_name: str = "Chrome"
    debug: bool = False
    cdp_host: str = "127.0.0.1"
    cdp_port: int = 9222
    cdp_timeout: float = 10.0
    reaper_interval: float = 60.0
    max_entries: int = 1000
    max_pending: int = 2000
    state_dir: str = ""
    test_page_url: str = DEFAULT_TEST_PAGE_URL
    context_retries: int = 3
    context_retry_delay: float = 0.1
    reattach_attempts: int = 3
    reattach_delay: float = 0.5

    @classmethod
    def from_env(cls) -> RelayConfig:
        url = (os.environ.get("MCP_RELAY_URL") or "").strip() or DEFAULT_RELAY_URL
        port_raw = (os.environ.get("MCP_RELAY_PORT") or "").strip()
        if port_raw:
            try:
                url = _with_port(url, int(port_raw))
            except ValueError:
                pass
        token = (os.environ.get("MCP_RELAY_TOKEN") or "").strip() or None
        state_raw = (os.environ.get("MCP_RELAY_STATE_DIR") or "").strip()
        state_dir = str(Path(state_raw).expanduser()) if state_raw else str(_repo_root() / "data" / "relay")
        return cls(
            relay_url=url,
            access_token=token,
            browser_name=(os.environ.get("MCP_RELAY_BROWSER_NAME") or "").strip() or "Chrome",
            debug=_bool_env("MCP_RELAY_DEBUG", default=False),
            cdp_host=(os.environ.get("MCP_BROWSER_HOST") or "").strip() or "127.0.0.1",
            cdp_port=_int_env("MCP_BROWSER_PORT", default=9222, lo=1, hi=65535),
            cdp_timeout=_float_env("MCP_RELAY_CDP_TIMEOUT", default=10.0, lo=0.5, hi=120.0),
            reaper_interval=_float_env("MCP_RELAY_REAPER_INTERVAL", default=60.0, lo=1.0, hi=3600.0),
            max_entries=_int_env("MCP_RELAY_MAX_ENTRIES", default=1000, lo=10, hi=100_000),
            max_pending=_int_env("MCP_RELAY_MAX_PENDING", default=2000, lo=10, hi=100_000),
            state_dir=state_dir,
            test_page_url=(os.environ.get("MCP_RELAY_TEST_PAGE_URL") or "").strip() or DEFAULT_TEST_PAGE_URL,
            context_retries=_int_env("MCP_RELAY_CONTEXT_RETRIES", default=3, lo=1, hi=20),
            context_retry_delay=_float_env("MCP_RELAY_CONTEXT_RETRY_DELAY", default=0.1, lo=0.0, hi=5.0),
            reattach_attempts=_int_env("MCP_RELAY_REATTACH_ATTEMPTS", default=3, lo=1, hi=20),
            reattach_delay=_float_env("MCP_RELAY_REATTACH_DELAY", default=0.5, lo=0.0, hi=10.0),
        )

    def attach_settings(self) -> AttachSettings:
        return AttachSettings(
            context_retries=self.context_retries,
            context_retry_delay=self.context_retry_delay,
            reattach_attempts=self.reattach_attempts,
            reattach_delay=self.reattach_delay,
        )


__all__ = ["DEFAULT_RELAY_PORT", "DEFAULT_RELAY_URL", "DEFAULT_TEST_PAGE_URL", "RelayConfig"]
