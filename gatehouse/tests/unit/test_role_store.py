from __future__ import annotations

import pytest
from sqlalchemy import func, select

from gatehouse.core.config import RolePolicy
from gatehouse.core.errors import AlreadyExistsError, InvalidArgumentError, NotFoundError, RoleNotEmptyError
from gatehouse.domain.models import Role, UserRole
from gatehouse.services.roles import RoleStore


async def _seed_users(credential_store, *names: str) -> None:
    for name in names:
        result = await credential_store.create_user(name, "c0rrect!horse", f"{name}@example.com")
        assert result.succeeded


async def _membership_count(session_factory) -> int:
    async with session_factory() as session:
        return int((await session.execute(select(func.count()).select_from(UserRole))).scalar_one())


@pytest.mark.asyncio
async def test_create_role_rejects_case_insensitive_duplicate(role_store) -> None:
    await role_store.create_role("Admins", description="Site administrators")
    assert await role_store.role_exists("admins") is True
    with pytest.raises(AlreadyExistsError):
        await role_store.create_role("ADMINS")
    assert await role_store.get_all_roles() == ["Admins"]


@pytest.mark.asyncio
async def test_role_names_reject_commas_and_blank(role_store) -> None:
    with pytest.raises(InvalidArgumentError):
        await role_store.create_role("a,b")
    with pytest.raises(InvalidArgumentError):
        await role_store.create_role("   ")
    assert await role_store.role_exists("missing") is False


@pytest.mark.asyncio
async def test_add_users_to_roles_is_all_or_nothing(role_store, credential_store, session_factory) -> None:
    await _seed_users(credential_store, "alice", "bob")
    await role_store.create_role("editors")
    await role_store.create_role("viewers")
    await role_store.add_users_to_roles(["alice"], ["editors"])

    # bob is new to both roles, but alice is already an editor, so nothing is written.
    with pytest.raises(AlreadyExistsError):
        await role_store.add_users_to_roles(["alice", "bob"], ["viewers", "editors"])
    assert await _membership_count(session_factory) == 1

    with pytest.raises(NotFoundError):
        await role_store.add_users_to_roles(["bob", "carol"], ["viewers"])
    with pytest.raises(NotFoundError):
        await role_store.add_users_to_roles(["bob"], ["ghosts"])
    assert await _membership_count(session_factory) == 1

    await role_store.add_users_to_roles(["bob", "alice"], ["viewers"])
    assert await role_store.get_users_in_role("viewers") == ["alice", "bob"]
    assert await role_store.get_roles_for_user("alice") == ["editors", "viewers"]


@pytest.mark.asyncio
async def test_batch_arguments_are_validated(role_store) -> None:
    with pytest.raises(InvalidArgumentError):
        await role_store.add_users_to_roles([], ["editors"])
    with pytest.raises(InvalidArgumentError, match="duplicate"):
        await role_store.add_users_to_roles(["alice", "ALICE"], ["editors"])
    with pytest.raises(InvalidArgumentError):
        await role_store.remove_users_from_roles(["alice"], ["a,b"])


@pytest.mark.asyncio
async def test_remove_requires_every_membership(role_store, credential_store, session_factory) -> None:
    await _seed_users(credential_store, "alice", "bob")
    await role_store.create_role("editors")
    await role_store.add_users_to_roles(["alice"], ["editors"])

    with pytest.raises(NotFoundError):
        await role_store.remove_users_from_roles(["alice", "bob"], ["editors"])
    assert await _membership_count(session_factory) == 1

    await role_store.remove_users_from_roles(["alice"], ["editors"])
    assert await role_store.get_users_in_role("editors") == []


@pytest.mark.asyncio
async def test_delete_populated_role_leaves_role_and_members(role_store, credential_store, session_factory) -> None:
    await _seed_users(credential_store, "alice")
    await role_store.create_role("editors")
    await role_store.add_users_to_roles(["alice"], ["editors"])

    with pytest.raises(RoleNotEmptyError):
        await role_store.delete_role("editors")
    assert await role_store.role_exists("editors") is True
    assert await role_store.get_users_in_role("editors") == ["alice"]

    assert await role_store.delete_role("editors", throw_on_populated_role=False) is True
    assert await role_store.role_exists("editors") is False
    assert await _membership_count(session_factory) == 0
    with pytest.raises(NotFoundError):
        await role_store.delete_role("editors")


@pytest.mark.asyncio
async def test_is_user_in_role(role_store, credential_store) -> None:
    await _seed_users(credential_store, "alice", "bob")
    await role_store.create_role("editors")
    await role_store.add_users_to_roles(["alice"], ["editors"])

    assert await role_store.is_user_in_role("Alice", "EDITORS") is True
    assert await role_store.is_user_in_role("bob", "editors") is False
    assert await role_store.is_user_in_role("", "editors") is False
    with pytest.raises(NotFoundError):
        await role_store.is_user_in_role("carol", "editors")
    with pytest.raises(NotFoundError):
        await role_store.is_user_in_role("alice", "ghosts")


@pytest.mark.asyncio
async def test_find_users_in_role_matches_substring(role_store, credential_store) -> None:
    await _seed_users(credential_store, "alice", "malik", "bob", "al_x")
    await role_store.create_role("editors")
    await role_store.add_users_to_roles(["alice", "malik", "bob", "al_x"], ["editors"])

    assert await role_store.find_users_in_role("editors", "Li") == ["alice", "malik"]
    # Wildcard characters match literally.
    assert await role_store.find_users_in_role("editors", "_") == ["al_x"]
    with pytest.raises(NotFoundError):
        await role_store.find_users_in_role("ghosts", "a")


@pytest.mark.asyncio
async def test_get_roles_for_missing_user_raises(role_store) -> None:
    with pytest.raises(NotFoundError):
        await role_store.get_roles_for_user("nobody")
    with pytest.raises(NotFoundError):
        await role_store.get_users_in_role("ghosts")


@pytest.mark.asyncio
async def test_get_all_roles_sorted_and_scoped(role_store, session_factory, resolver) -> None:
    await role_store.create_role("viewers")
    await role_store.create_role("Admins")
    other = RoleStore(session_factory, RolePolicy(application_name="/backoffice"), resolver=resolver)
    await other.create_role("auditors")

    assert await role_store.get_all_roles() == ["Admins", "viewers"]
    assert await other.get_all_roles() == ["auditors"]
    async with session_factory() as session:
        tenants = (await session.execute(select(func.count(func.distinct(Role.tenant_id))))).scalar_one()
    assert tenants == 2
