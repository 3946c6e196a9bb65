"""
Command handlers organized by domain.

All handlers follow the signature: async (ctx, params) -> result
"""

from .cdp import CDP_HANDLERS
from .relay import RELAY_HANDLERS
from .tabs import TAB_HANDLERS
from .telemetry import TELEMETRY_HANDLERS

# Aggregate all handlers
ALL_HANDLERS: dict[str, tuple] = {
    **RELAY_HANDLERS,
    **TAB_HANDLERS,
    **TELEMETRY_HANDLERS,
    **CDP_HANDLERS,
}

__all__ = [
    "ALL_HANDLERS",
    "CDP_HANDLERS",
    "RELAY_HANDLERS",
    "TAB_HANDLERS",
    "TELEMETRY_HANDLERS",
]
