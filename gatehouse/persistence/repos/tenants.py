from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gatehouse.domain.models import Tenant


def normalize_name(value: str) -> str:
    # Case-folded lookup key shared by tenants, users, emails, and roles.
    return value.strip().casefold()


async def get_tenant_id_by_name(session: AsyncSession, name: str) -> str | None:
    result = await session.execute(
        select(Tenant.id).where(Tenant.normalized_name == normalize_name(name))
    )
    return result.scalar_one_or_none()


async def insert_tenant(session: AsyncSession, *, tenant_id: str, name: str) -> Tenant:
    # Flush immediately so a uniqueness violation surfaces inside the caller's transaction.
    tenant = Tenant(
        id=tenant_id,
        name=name.strip(),
        normalized_name=normalize_name(name),
        created_at=datetime.now(timezone.utc),
    )
    session.add(tenant)
    await session.flush()
    return tenant
