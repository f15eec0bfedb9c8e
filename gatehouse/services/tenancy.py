from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from gatehouse.core.config import MAX_NAME_LENGTH
from gatehouse.core.errors import AlreadyExistsError, ConsistencyFaultError
from gatehouse.persistence.db import SessionFactory
from gatehouse.persistence.repos.tenants import get_tenant_id_by_name, insert_tenant, normalize_name
from gatehouse.persistence.transactions import run_in_transaction
from gatehouse.services.validation import check_parameter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _CacheEntry:
    tenant_id: str
    version: int


class ApplicationScopeResolver:
    """Map application names to tenant ids, creating tenants on first use.

    Entries remember the cache version they were filled at; ``invalidate`` bumps
    the version so the next ``resolve`` goes back to the database.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._id_factory = id_factory or (lambda: uuid4().hex)
        self._entries: dict[str, _CacheEntry] = {}
        self._version = 0

    @property
    def version(self) -> int:
        return self._version

    def invalidate(self) -> None:
        self._version += 1
        logger.info("tenant_cache_invalidated version=%s", self._version)

    def cached_tenant_id(self, name: str) -> str | None:
        entry = self._entries.get(normalize_name(name))
        if entry is None or entry.version != self._version:
            return None
        return entry.tenant_id

    async def resolve(self, name: str) -> str:
        name = check_parameter(name, name="application_name", reject_commas=True, max_length=MAX_NAME_LENGTH)
        cached = self.cached_tenant_id(name)
        if cached is not None:
            return cached
        version = self._version
        try:
            tenant_id = await run_in_transaction(
                self._session_factory,
                lambda session: self._fetch_or_create(session, name),
                name="resolve_tenant",
            )
        except AlreadyExistsError:
            # A concurrent resolver inserted the tenant first; its row is now visible.
            logger.info("tenant_create_conflict name=%s", name)
            tenant_id = await run_in_transaction(
                self._session_factory,
                lambda session: get_tenant_id_by_name(session, name),
                name="reread_tenant",
            )
            if tenant_id is None:
                raise ConsistencyFaultError(f"Tenant {name} conflicted on insert but cannot be read back")
        self._entries[normalize_name(name)] = _CacheEntry(tenant_id=tenant_id, version=version)
        return tenant_id

    async def _fetch_or_create(self, session: AsyncSession, name: str) -> str:
        tenant_id = await get_tenant_id_by_name(session, name)
        if tenant_id is not None:
            return tenant_id
        tenant = await insert_tenant(session, tenant_id=self._id_factory(), name=name)
        logger.info("tenant_created tenant_id=%s name=%s", tenant.id, name)
        return tenant.id
