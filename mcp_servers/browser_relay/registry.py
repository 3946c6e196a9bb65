"""Tenant <-> tab ownership for multiplexed connections."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from .errors import TabAlreadyBound

logger = logging.getLogger("mcp.relay.registry")


@dataclass(slots=True)
class TenantSession:
    tenant_key: str
    tab_id: str | None = None
    created_at: float = 0.0
    last_seen: float = 0.0


class SessionRegistry:
    """Keeps `tenant -> tab` and `tab -> tenant` in lockstep.

    A tab is owned by at most one tenant. Both maps are mutated together in every
    operation so lookups in either direction always agree.
    """

    def __init__(self) -> None:
        self._tenants: dict[str, TenantSession] = {}
        self._owners: dict[str, str] = {}

    def touch(self, tenant: str) -> TenantSession:
        now = time.time()
        session = self._tenants.get(tenant)
        if session is None:
            session = TenantSession(tenant_key=tenant, created_at=now)
            self._tenants[tenant] = session
            logger.debug("tenant_created tenant=%s", tenant)
        session.last_seen = now
        return session

    def bind(self, tenant: str, tab_id: str) -> None:
        tab = str(tab_id)
        owner = self._owners.get(tab)
        if owner is not None and owner != tenant:
            raise TabAlreadyBound(tab, owner)

        session = self.touch(tenant)
        prev = session.tab_id
        if prev is not None and prev != tab:
            self._owners.pop(prev, None)
        session.tab_id = tab
        self._owners[tab] = tenant

    def resolve_tab(self, tenant: str) -> str | None:
        session = self._tenants.get(tenant)
        return session.tab_id if session is not None else None

    def tenant_for_tab(self, tab_id: str) -> str | None:
        return self._owners.get(str(tab_id))

    def release_tab(self, tenant: str) -> str | None:
        """Drop the tenant's binding but keep the tenant session itself."""
        session = self._tenants.get(tenant)
        if session is None or session.tab_id is None:
            return None
        tab = session.tab_id
        session.tab_id = None
        if self._owners.get(tab) == tenant:
            self._owners.pop(tab, None)
        return tab

    def unbind(self, tenant: str) -> str | None:
        """Forget the tenant entirely. Unknown tenants are a no-op."""
        tab = self.release_tab(tenant)
        self._tenants.pop(tenant, None)
        return tab

    def evict_tab(self, tab_id: str) -> str | None:
        tab = str(tab_id)
        tenant = self._owners.pop(tab, None)
        if tenant is not None:
            session = self._tenants.get(tenant)
            if session is not None and session.tab_id == tab:
                session.tab_id = None
        return tenant

    def has_tenant(self, tenant: str) -> bool:
        return tenant in self._tenants

    def tenants(self) -> list[str]:
        return list(self._tenants)

    def bound_tabs(self) -> list[str]:
        return list(self._owners)

    def discard(self) -> None:
        self._tenants.clear()
        self._owners.clear()


__all__ = ["SessionRegistry", "TenantSession"]
