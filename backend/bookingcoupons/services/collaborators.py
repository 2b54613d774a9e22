from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol
from uuid import UUID


class ServiceCatalog(Protocol):
    async def service_exists(self, service_id: UUID) -> bool: ...


class TenantDirectory(Protocol):
    async def is_tenant_active(self, tenant_id: UUID) -> bool: ...


class InMemoryServiceCatalog:
    """Service catalog backed by a set of known ids.

    With ``allow_any=True`` every id is accepted, which is how the API runs when
    no catalog has been wired in.
    """

    def __init__(self, service_ids: Iterable[UUID] = (), *, allow_any: bool = False) -> None:
        self.service_ids: set[UUID] = set(service_ids)
        self.allow_any = allow_any

    def add(self, *service_ids: UUID) -> None:
        self.service_ids.update(service_ids)

    async def service_exists(self, service_id: UUID) -> bool:
        return self.allow_any or service_id in self.service_ids


class InMemoryTenantDirectory:
    """Tenants are active unless explicitly deactivated."""

    def __init__(self, inactive: Iterable[UUID] = ()) -> None:
        self.inactive: set[UUID] = set(inactive)

    def deactivate(self, tenant_id: UUID) -> None:
        self.inactive.add(tenant_id)

    def activate(self, tenant_id: UUID) -> None:
        self.inactive.discard(tenant_id)

    async def is_tenant_active(self, tenant_id: UUID) -> bool:
        return tenant_id not in self.inactive
