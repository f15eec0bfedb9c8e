from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gatehouse.domain.models import User, UserRole
from gatehouse.persistence.guards import require_tenant_id, tenant_predicate
from gatehouse.persistence.repos.tenants import normalize_name


async def get_user_by_name(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_name: str,
) -> User | None:
    # Lookups always go through the normalized key so display casing never matters.
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(User).where(
            tenant_predicate(User, tenant_id),
            User.normalized_user_name == normalize_name(user_name),
        )
    )
    return result.scalar_one_or_none()


async def get_user_by_id(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
) -> User | None:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(User).where(tenant_predicate(User, tenant_id), User.id == user_id)
    )
    return result.scalar_one_or_none()


async def get_users_by_names(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_names: Iterable[str],
) -> list[User]:
    require_tenant_id(tenant_id)
    normalized = sorted({normalize_name(name) for name in user_names})
    if not normalized:
        return []
    result = await session.execute(
        select(User)
        .where(tenant_predicate(User, tenant_id), User.normalized_user_name.in_(normalized))
        .order_by(User.normalized_user_name.asc())
    )
    return list(result.scalars().all())


async def get_user_name_by_email(
    session: AsyncSession,
    *,
    tenant_id: str,
    email: str,
) -> str | None:
    # Several users may share an email when uniqueness is off; report the first alphabetically.
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(User.user_name)
        .where(tenant_predicate(User, tenant_id), User.normalized_email == normalize_name(email))
        .order_by(User.normalized_user_name.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def email_in_use(
    session: AsyncSession,
    *,
    tenant_id: str,
    email: str,
    exclude_user_id: str | None = None,
) -> bool:
    require_tenant_id(tenant_id)
    stmt = select(func.count()).select_from(User).where(
        tenant_predicate(User, tenant_id),
        User.normalized_email == normalize_name(email),
    )
    if exclude_user_id is not None:
        stmt = stmt.where(User.id != exclude_user_id)
    result = await session.execute(stmt)
    return int(result.scalar_one()) > 0


async def user_id_taken(session: AsyncSession, *, user_id: str) -> bool:
    # User ids are globally unique primary keys, so the check spans every tenant.
    result = await session.execute(select(func.count()).select_from(User).where(User.id == user_id))
    return int(result.scalar_one()) > 0


async def insert_user(session: AsyncSession, user: User) -> User:
    require_tenant_id(user.tenant_id)
    session.add(user)
    await session.flush()
    return user


async def update_user_fields(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str,
    values: dict[str, Any],
    require_unlocked: bool = False,
) -> Any:
    """Apply ``values`` to one user row and return the cursor result.

    Callers check the affected row count; ``require_unlocked`` turns a concurrent
    lockout into a zero-row update instead of a silent overwrite.
    """
    require_tenant_id(tenant_id)
    stmt = update(User).where(tenant_predicate(User, tenant_id), User.id == user_id)
    if require_unlocked:
        stmt = stmt.where(User.is_locked_out.is_(False))
    stmt = stmt.values(**values).execution_options(synchronize_session=False)
    return await session.execute(stmt)


async def delete_user_row(session: AsyncSession, *, tenant_id: str, user_id: str) -> Any:
    require_tenant_id(tenant_id)
    return await session.execute(
        delete(User)
        .where(tenant_predicate(User, tenant_id), User.id == user_id)
        .execution_options(synchronize_session=False)
    )


async def count_memberships_for_user(session: AsyncSession, *, user_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(UserRole).where(UserRole.user_id == user_id)
    )
    return int(result.scalar_one())


async def delete_memberships_for_user(session: AsyncSession, *, user_id: str) -> Any:
    return await session.execute(
        delete(UserRole).where(UserRole.user_id == user_id).execution_options(synchronize_session=False)
    )


def _search_predicates(
    tenant_id: str,
    *,
    name_contains: str | None,
    email_contains: str | None,
) -> list[Any]:
    # Substring matches run against normalized columns for case-insensitive search.
    predicates: list[Any] = [tenant_predicate(User, tenant_id)]
    if name_contains is not None:
        predicates.append(
            User.normalized_user_name.contains(normalize_name(name_contains), autoescape=True)
        )
    if email_contains is not None:
        predicates.append(
            User.normalized_email.contains(normalize_name(email_contains), autoescape=True)
        )
    return predicates


async def count_users(
    session: AsyncSession,
    *,
    tenant_id: str,
    name_contains: str | None = None,
    email_contains: str | None = None,
) -> int:
    require_tenant_id(tenant_id)
    predicates = _search_predicates(tenant_id, name_contains=name_contains, email_contains=email_contains)
    result = await session.execute(select(func.count()).select_from(User).where(*predicates))
    return int(result.scalar_one())


async def search_users(
    session: AsyncSession,
    *,
    tenant_id: str,
    offset: int,
    limit: int,
    name_contains: str | None = None,
    email_contains: str | None = None,
) -> list[User]:
    # Stable alphabetical order so consecutive pages never overlap.
    require_tenant_id(tenant_id)
    predicates = _search_predicates(tenant_id, name_contains=name_contains, email_contains=email_contains)
    result = await session.execute(
        select(User)
        .where(*predicates)
        .order_by(User.normalized_user_name.asc(), User.id.asc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def count_users_active_since(
    session: AsyncSession,
    *,
    tenant_id: str,
    since: datetime,
) -> int:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(func.count())
        .select_from(User)
        .where(tenant_predicate(User, tenant_id), User.last_activity_at > since)
    )
    return int(result.scalar_one())
