"""
Type definitions for relay command handlers.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..addressing import Address
    from ..attachment import AttachmentSlot
    from ..backend import DebuggerBackend
    from ..connection import RelayConnection
    from ..telemetry import TelemetryBuffers


@dataclass(slots=True)
class CommandContext:
    """Everything a handler may touch for one inbound request."""

    connection: RelayConnection
    address: Address
    slot: AttachmentSlot
    slot_key: str
    method: str = ""

    @property
    def backend(self) -> DebuggerBackend:
        return self.connection.backend

    @property
    def telemetry(self) -> TelemetryBuffers:
        return self.connection.telemetry


HandlerFunc = Callable[[CommandContext, dict[str, Any]], Awaitable[Any]]
