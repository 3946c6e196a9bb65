"""Command dispatch for the relay.

Keep this package import light: importing `mcp_servers.browser_relay.server.*` should not
eagerly pull every handler module (avoids circular imports with the connection).
"""

from __future__ import annotations

from typing import Any

__all__ = ["CommandRegistry", "create_default_registry"]


def __getattr__(name: str) -> Any:  # pragma: no cover
    if name in {"CommandRegistry", "create_default_registry"}:
        from .registry import CommandRegistry, create_default_registry

        return {"CommandRegistry": CommandRegistry, "create_default_registry": create_default_registry}[name]
    raise AttributeError(name)
