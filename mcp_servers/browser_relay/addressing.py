"""Classify request ids into addressing modes.

Numeric ids belong to the single-tenant direct session. String ids of the form
`<tenant>:<local-id>` come from the multiplexing proxy, and ids starting with
the control prefix address the proxy itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

MODE_DIRECT = "direct"
MODE_PROXY = "proxy"
MODE_CONTROL = "control"

TENANT_SEPARATOR = ":"
PROXY_CONTROL_PREFIX = "proxy_control:"


@dataclass(frozen=True, slots=True)
class Address:
    mode: str
    tenant_key: str | None = None
    local_id: Any = None

    @property
    def is_proxy(self) -> bool:
        return self.mode == MODE_PROXY


def resolve_address(request_id: Any) -> Address:
    # bool is an int subclass but never a valid numeric id
    if isinstance(request_id, bool):
        return Address(MODE_DIRECT, None, request_id)
    if isinstance(request_id, (int, float)):
        return Address(MODE_DIRECT, None, request_id)
    if isinstance(request_id, str):
        if request_id.startswith(PROXY_CONTROL_PREFIX):
            return Address(MODE_CONTROL, None, request_id[len(PROXY_CONTROL_PREFIX) :])
        if TENANT_SEPARATOR in request_id:
            tenant, _, local = request_id.partition(TENANT_SEPARATOR)
            return Address(MODE_PROXY, tenant, local)
    return Address(MODE_DIRECT, None, request_id)


__all__ = [
    "MODE_CONTROL",
    "MODE_DIRECT",
    "MODE_PROXY",
    "PROXY_CONTROL_PREFIX",
    "TENANT_SEPARATOR",
    "Address",
    "resolve_address",
]
