from __future__ import annotations

from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gatehouse.domain.models import Role, User, UserRole
from gatehouse.persistence.guards import require_tenant_id, tenant_predicate
from gatehouse.persistence.repos.tenants import normalize_name


async def get_role_by_name(
    session: AsyncSession,
    *,
    tenant_id: str,
    role_name: str,
) -> Role | None:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(Role).where(
            tenant_predicate(Role, tenant_id),
            Role.normalized_role_name == normalize_name(role_name),
        )
    )
    return result.scalar_one_or_none()


async def get_roles_by_names(
    session: AsyncSession,
    *,
    tenant_id: str,
    role_names: Iterable[str],
) -> list[Role]:
    require_tenant_id(tenant_id)
    normalized = sorted({normalize_name(name) for name in role_names})
    if not normalized:
        return []
    result = await session.execute(
        select(Role)
        .where(tenant_predicate(Role, tenant_id), Role.normalized_role_name.in_(normalized))
        .order_by(Role.normalized_role_name.asc())
    )
    return list(result.scalars().all())


async def insert_role(
    session: AsyncSession,
    *,
    tenant_id: str,
    role_name: str,
    description: str | None = None,
) -> Role:
    # Flush so a concurrent creator's row trips the unique constraint here.
    require_tenant_id(tenant_id)
    role = Role(
        id=uuid4().hex,
        tenant_id=tenant_id,
        role_name=role_name.strip(),
        normalized_role_name=normalize_name(role_name),
        description=description,
    )
    session.add(role)
    await session.flush()
    return role


async def delete_role_row(session: AsyncSession, *, tenant_id: str, role_id: str) -> Any:
    require_tenant_id(tenant_id)
    return await session.execute(
        delete(Role)
        .where(tenant_predicate(Role, tenant_id), Role.id == role_id)
        .execution_options(synchronize_session=False)
    )


async def count_role_members(session: AsyncSession, *, role_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(UserRole).where(UserRole.role_id == role_id)
    )
    return int(result.scalar_one())


async def delete_memberships_for_role(session: AsyncSession, *, role_id: str) -> Any:
    return await session.execute(
        delete(UserRole).where(UserRole.role_id == role_id).execution_options(synchronize_session=False)
    )


async def list_role_names(session: AsyncSession, *, tenant_id: str) -> list[str]:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(Role.role_name)
        .where(tenant_predicate(Role, tenant_id))
        .order_by(Role.normalized_role_name.asc())
    )
    return list(result.scalars().all())


async def list_role_names_for_user(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
) -> list[str]:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(Role.role_name)
        .join(UserRole, UserRole.role_id == Role.id)
        .where(tenant_predicate(Role, tenant_id), UserRole.user_id == user_id)
        .order_by(Role.normalized_role_name.asc())
    )
    return list(result.scalars().all())


async def list_user_names_in_role(
    session: AsyncSession,
    *,
    tenant_id: str,
    role_id: str,
    name_contains: str | None = None,
) -> list[str]:
    # Membership rows carry no tenant column; scope through the user side of the join.
    require_tenant_id(tenant_id)
    stmt = (
        select(User.user_name)
        .join(UserRole, UserRole.user_id == User.id)
        .where(tenant_predicate(User, tenant_id), UserRole.role_id == role_id)
    )
    if name_contains is not None:
        stmt = stmt.where(
            User.normalized_user_name.contains(normalize_name(name_contains), autoescape=True)
        )
    result = await session.execute(stmt.order_by(User.normalized_user_name.asc()))
    return list(result.scalars().all())


async def is_member(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_name: str,
    role_name: str,
) -> bool:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(func.count())
        .select_from(UserRole)
        .join(User, User.id == UserRole.user_id)
        .join(Role, Role.id == UserRole.role_id)
        .where(
            tenant_predicate(User, tenant_id),
            tenant_predicate(Role, tenant_id),
            User.normalized_user_name == normalize_name(user_name),
            Role.normalized_role_name == normalize_name(role_name),
        )
    )
    return int(result.scalar_one()) > 0


async def list_memberships(
    session: AsyncSession,
    *,
    user_ids: Iterable[str],
    role_ids: Iterable[str],
) -> set[tuple[str, str]]:
    # Existing (user_id, role_id) pairs within the cross product of the given ids.
    user_ids = list(user_ids)
    role_ids = list(role_ids)
    if not user_ids or not role_ids:
        return set()
    result = await session.execute(
        select(UserRole.user_id, UserRole.role_id).where(
            UserRole.user_id.in_(user_ids),
            UserRole.role_id.in_(role_ids),
        )
    )
    return {(row.user_id, row.role_id) for row in result}


async def insert_memberships(session: AsyncSession, pairs: Iterable[tuple[str, str]]) -> int:
    rows = [UserRole(user_id=user_id, role_id=role_id) for user_id, role_id in pairs]
    session.add_all(rows)
    await session.flush()
    return len(rows)


async def delete_membership(session: AsyncSession, *, user_id: str, role_id: str) -> Any:
    return await session.execute(
        delete(UserRole)
        .where(UserRole.user_id == user_id, UserRole.role_id == role_id)
        .execution_options(synchronize_session=False)
    )
