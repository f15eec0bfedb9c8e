from __future__ import annotations

import logging
from typing import Awaitable, Callable, Sequence, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from gatehouse.core.config import MAX_NAME_LENGTH, RolePolicy, Settings, get_settings, role_policy_from_settings
from gatehouse.core.errors import AlreadyExistsError, NotFoundError, RoleNotEmptyError
from gatehouse.domain.models import Role, User
from gatehouse.persistence.db import SessionFactory, get_session_factory
from gatehouse.persistence.repos import roles as roles_repo
from gatehouse.persistence.repos import users as users_repo
from gatehouse.persistence.repos.tenants import normalize_name
from gatehouse.persistence.transactions import expect_rowcount, run_in_transaction
from gatehouse.services.tenancy import ApplicationScopeResolver
from gatehouse.services.validation import check_array_parameter, check_parameter


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _check_role_name(value: str) -> str:
    return check_parameter(value, name="role_name", reject_commas=True, max_length=MAX_NAME_LENGTH)


def _check_user_name(value: str) -> str:
    return check_parameter(value, name="user_name", reject_commas=True, max_length=MAX_NAME_LENGTH)


class RoleStore:
    """Roles and user-to-role membership for one application.

    Each call is one transaction; wrap calls with ``retry_transient`` to re-run
    them after a ``TransientStoreError``.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        policy: RolePolicy,
        *,
        resolver: ApplicationScopeResolver | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._policy = policy
        self._resolver = resolver or ApplicationScopeResolver(session_factory)

    async def _run(
        self,
        name: str,
        operation: Callable[[AsyncSession, str], Awaitable[T]],
    ) -> T:
        tenant_id = await self._resolver.resolve(self._policy.application_name)
        return await run_in_transaction(
            self._session_factory,
            lambda session: operation(session, tenant_id),
            name=name,
        )

    async def _require_role(self, session: AsyncSession, tenant_id: str, role_name: str) -> Role:
        role = await roles_repo.get_role_by_name(session, tenant_id=tenant_id, role_name=role_name)
        if role is None:
            raise NotFoundError(f"Role {role_name} was not found")
        return role

    async def _require_user(self, session: AsyncSession, tenant_id: str, user_name: str) -> User:
        user = await users_repo.get_user_by_name(session, tenant_id=tenant_id, user_name=user_name)
        if user is None:
            raise NotFoundError(f"User {user_name} was not found")
        return user

    async def create_role(self, role_name: str, description: str | None = None) -> None:
        role_name = _check_role_name(role_name)

        async def operation(session: AsyncSession, tenant_id: str) -> None:
            if await roles_repo.get_role_by_name(session, tenant_id=tenant_id, role_name=role_name) is not None:
                raise AlreadyExistsError(f"Role {role_name} already exists")
            role = await roles_repo.insert_role(
                session, tenant_id=tenant_id, role_name=role_name, description=description
            )
            logger.info("role_created tenant_id=%s role_id=%s", tenant_id, role.id)

        await self._run("create_role", operation)

    async def delete_role(self, role_name: str, throw_on_populated_role: bool = True) -> bool:
        """Delete a role and its memberships.

        With ``throw_on_populated_role`` a role that still has members raises
        ``RoleNotEmptyError`` and nothing is removed.
        """
        role_name = _check_role_name(role_name)

        async def operation(session: AsyncSession, tenant_id: str) -> bool:
            role = await self._require_role(session, tenant_id, role_name)
            if throw_on_populated_role and await roles_repo.count_role_members(session, role_id=role.id) > 0:
                raise RoleNotEmptyError(f"Role {role_name} still has members")
            await roles_repo.delete_memberships_for_role(session, role_id=role.id)
            result = await roles_repo.delete_role_row(session, tenant_id=tenant_id, role_id=role.id)
            expect_rowcount(result, 1, action="delete role")
            logger.info("role_deleted tenant_id=%s role_id=%s", tenant_id, role.id)
            return True

        return await self._run("delete_role", operation)

    async def role_exists(self, role_name: str) -> bool:
        role_name = _check_role_name(role_name)

        async def operation(session: AsyncSession, tenant_id: str) -> bool:
            return await roles_repo.get_role_by_name(session, tenant_id=tenant_id, role_name=role_name) is not None

        return await self._run("role_exists", operation)

    async def _resolve_batch(
        self,
        session: AsyncSession,
        tenant_id: str,
        user_names: list[str],
        role_names: list[str],
    ) -> tuple[list[User], list[Role]]:
        # Every referenced role and user must exist before membership state is inspected.
        roles = await roles_repo.get_roles_by_names(session, tenant_id=tenant_id, role_names=role_names)
        found_roles = {role.normalized_role_name for role in roles}
        for role_name in role_names:
            if normalize_name(role_name) not in found_roles:
                raise NotFoundError(f"Role {role_name} was not found")
        users = await users_repo.get_users_by_names(session, tenant_id=tenant_id, user_names=user_names)
        found_users = {user.normalized_user_name for user in users}
        for user_name in user_names:
            if normalize_name(user_name) not in found_users:
                raise NotFoundError(f"User {user_name} was not found")
        return users, roles

    async def add_users_to_roles(self, user_names: Sequence[str], role_names: Sequence[str]) -> None:
        user_names = check_array_parameter(user_names, name="user_names", max_length=MAX_NAME_LENGTH)
        role_names = check_array_parameter(role_names, name="role_names", max_length=MAX_NAME_LENGTH)

        async def operation(session: AsyncSession, tenant_id: str) -> None:
            users, roles = await self._resolve_batch(session, tenant_id, user_names, role_names)
            existing = await roles_repo.list_memberships(
                session,
                user_ids=[user.id for user in users],
                role_ids=[role.id for role in roles],
            )
            # The whole batch is checked before the first insert.
            for user in users:
                for role in roles:
                    if (user.id, role.id) in existing:
                        raise AlreadyExistsError(f"User {user.user_name} is already in role {role.role_name}")
            pairs = [(user.id, role.id) for user in users for role in roles]
            inserted = await roles_repo.insert_memberships(session, pairs)
            logger.info("role_members_added tenant_id=%s memberships=%s", tenant_id, inserted)

        await self._run("add_users_to_roles", operation)

    async def remove_users_from_roles(self, user_names: Sequence[str], role_names: Sequence[str]) -> None:
        user_names = check_array_parameter(user_names, name="user_names", max_length=MAX_NAME_LENGTH)
        role_names = check_array_parameter(role_names, name="role_names", max_length=MAX_NAME_LENGTH)

        async def operation(session: AsyncSession, tenant_id: str) -> None:
            users, roles = await self._resolve_batch(session, tenant_id, user_names, role_names)
            existing = await roles_repo.list_memberships(
                session,
                user_ids=[user.id for user in users],
                role_ids=[role.id for role in roles],
            )
            for user in users:
                for role in roles:
                    if (user.id, role.id) not in existing:
                        raise NotFoundError(f"User {user.user_name} is not in role {role.role_name}")
            for user in users:
                for role in roles:
                    result = await roles_repo.delete_membership(session, user_id=user.id, role_id=role.id)
                    expect_rowcount(result, 1, action="remove user from role")
            logger.info("role_members_removed tenant_id=%s memberships=%s", tenant_id, len(users) * len(roles))

        await self._run("remove_users_from_roles", operation)

    async def get_roles_for_user(self, user_name: str) -> list[str]:
        user_name = _check_user_name(user_name)

        async def operation(session: AsyncSession, tenant_id: str) -> list[str]:
            user = await self._require_user(session, tenant_id, user_name)
            return await roles_repo.list_role_names_for_user(session, tenant_id=tenant_id, user_id=user.id)

        return await self._run("get_roles_for_user", operation)

    async def get_users_in_role(self, role_name: str) -> list[str]:
        role_name = _check_role_name(role_name)

        async def operation(session: AsyncSession, tenant_id: str) -> list[str]:
            role = await self._require_role(session, tenant_id, role_name)
            return await roles_repo.list_user_names_in_role(session, tenant_id=tenant_id, role_id=role.id)

        return await self._run("get_users_in_role", operation)

    async def is_user_in_role(self, user_name: str, role_name: str) -> bool:
        role_name = _check_role_name(role_name)
        user_name = check_parameter(
            user_name, name="user_name", reject_empty=False, reject_commas=True, max_length=MAX_NAME_LENGTH
        )
        # An empty user name is the anonymous user, who belongs to no role.
        if not user_name:
            return False

        async def operation(session: AsyncSession, tenant_id: str) -> bool:
            await self._require_user(session, tenant_id, user_name)
            await self._require_role(session, tenant_id, role_name)
            return await roles_repo.is_member(session, tenant_id=tenant_id, user_name=user_name, role_name=role_name)

        return await self._run("is_user_in_role", operation)

    async def find_users_in_role(self, role_name: str, user_name_to_match: str) -> list[str]:
        role_name = _check_role_name(role_name)
        user_name_to_match = check_parameter(
            user_name_to_match, name="user_name_to_match", max_length=MAX_NAME_LENGTH
        )

        async def operation(session: AsyncSession, tenant_id: str) -> list[str]:
            role = await self._require_role(session, tenant_id, role_name)
            return await roles_repo.list_user_names_in_role(
                session, tenant_id=tenant_id, role_id=role.id, name_contains=user_name_to_match
            )

        return await self._run("find_users_in_role", operation)

    async def get_all_roles(self) -> list[str]:
        return await self._run(
            "get_all_roles",
            lambda session, tenant_id: roles_repo.list_role_names(session, tenant_id=tenant_id),
        )


def build_role_store(
    session_factory: SessionFactory | None = None,
    settings: Settings | None = None,
    *,
    resolver: ApplicationScopeResolver | None = None,
) -> RoleStore:
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    return RoleStore(session_factory, role_policy_from_settings(settings), resolver=resolver)
