from __future__ import annotations

import dataclasses
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from gatehouse.core.config import MembershipPolicy, PasswordFormat
from gatehouse.core.errors import (
    AlreadyExistsError,
    InvalidArgumentError,
    LockedOutError,
    NotFoundError,
    PasswordAnswerRejectedError,
    PolicyViolationError,
    UnsupportedOperationError,
)
from gatehouse.domain.models import User
from gatehouse.domain.views import CreateUserStatus
from gatehouse.services.passwords.policy import PasswordValidationEvent


PASSWORD = "c0rrect!horse"


async def _users(session_factory) -> list[User]:
    async with session_factory() as session:
        result = await session.execute(select(User).order_by(User.normalized_user_name))
        return list(result.scalars().all())


def _qa_policy(base: MembershipPolicy, **overrides) -> MembershipPolicy:
    values = {
        "requires_question_and_answer": True,
        "password_format": PasswordFormat.ENCRYPTED,
        "enable_password_retrieval": True,
    }
    values.update(overrides)
    return base.model_copy(update=values)


@pytest.mark.asyncio
async def test_create_user_returns_snapshot(credential_store, session_factory) -> None:
    result = await credential_store.create_user("  Alice ", PASSWORD, "Alice@Example.com", is_approved=True)
    assert result.status == CreateUserStatus.SUCCESS
    assert result.user.user_name == "Alice"
    assert result.user.email == "Alice@Example.com"
    assert result.user.is_locked_out is False

    (row,) = await _users(session_factory)
    assert row.normalized_user_name == "alice"
    assert row.normalized_email == "alice@example.com"
    assert row.password_format == int(PasswordFormat.HASHED)
    assert row.password_hash != PASSWORD


@pytest.mark.asyncio
async def test_duplicate_user_name_is_reported_without_mutation(credential_store, session_factory) -> None:
    await credential_store.create_user("alice", PASSWORD, "alice@example.com")
    before = await _users(session_factory)

    result = await credential_store.create_user("ALICE", "an0ther!pass", "other@example.com")

    assert result.status == CreateUserStatus.DUPLICATE_USER_NAME
    assert result.user is None
    after = await _users(session_factory)
    assert len(after) == 1
    assert after[0].password_hash == before[0].password_hash
    assert after[0].email == "alice@example.com"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("kwargs", "status"),
    [
        ({"user_name": "bob", "password": "short!"}, CreateUserStatus.INVALID_PASSWORD),
        ({"user_name": "bob", "password": "noSymbols1"}, CreateUserStatus.INVALID_PASSWORD),
        ({"user_name": "bob", "password": None}, CreateUserStatus.INVALID_PASSWORD),
        ({"user_name": "bo,b", "password": PASSWORD}, CreateUserStatus.INVALID_USER_NAME),
        ({"user_name": "   ", "password": PASSWORD}, CreateUserStatus.INVALID_USER_NAME),
        ({"user_name": "bob", "password": PASSWORD, "email": None}, CreateUserStatus.INVALID_EMAIL),
        ({"user_name": "bob", "password": PASSWORD, "provider_user_key": "nope"}, CreateUserStatus.INVALID_PROVIDER_USER_KEY),
    ],
)
async def test_create_user_validation_statuses(credential_store, session_factory, kwargs, status) -> None:
    kwargs.setdefault("email", "bob@example.com")
    result = await credential_store.create_user(**kwargs)
    assert result.status == status
    assert await _users(session_factory) == []


@pytest.mark.asyncio
async def test_duplicate_email_and_provider_key(credential_store) -> None:
    key = uuid4()
    await credential_store.create_user("alice", PASSWORD, "alice@example.com", provider_user_key=key)

    result = await credential_store.create_user("bob", PASSWORD, "ALICE@example.com")
    assert result.status == CreateUserStatus.DUPLICATE_EMAIL

    result = await credential_store.create_user("bob", PASSWORD, "bob@example.com", provider_user_key=str(key))
    assert result.status == CreateUserStatus.DUPLICATE_PROVIDER_USER_KEY


@pytest.mark.asyncio
async def test_answer_required_by_policy(make_credential_store, membership_policy) -> None:
    store = make_credential_store(_qa_policy(membership_policy))
    result = await store.create_user("bob", PASSWORD, "bob@example.com", "Pet?", None)
    assert result.status == CreateUserStatus.INVALID_ANSWER
    result = await store.create_user("bob", PASSWORD, "bob@example.com", None, "Rex")
    assert result.status == CreateUserStatus.INVALID_QUESTION


@pytest.mark.asyncio
async def test_validation_hook_veto_rejects_password(make_credential_store, membership_policy) -> None:
    def forbid(event: PasswordValidationEvent) -> None:
        event.cancel = event.password == "F0rb!dden"

    store = make_credential_store(membership_policy, validation_hooks=[forbid])
    result = await store.create_user("bob", "F0rb!dden", "bob@example.com")
    assert result.status == CreateUserStatus.INVALID_PASSWORD
    assert (await store.create_user("bob", PASSWORD, "bob@example.com")).succeeded


@pytest.mark.asyncio
async def test_validate_user_fails_closed(credential_store) -> None:
    await credential_store.create_user("alice", PASSWORD, "alice@example.com")
    await credential_store.create_user("pending", PASSWORD, "pending@example.com", is_approved=False)

    assert await credential_store.validate_user("alice", PASSWORD) is True
    assert await credential_store.validate_user("ALICE", PASSWORD) is True
    assert await credential_store.validate_user("nobody", PASSWORD) is False
    assert await credential_store.validate_user("pending", PASSWORD) is False
    with pytest.raises(InvalidArgumentError):
        await credential_store.validate_user("", PASSWORD)


@pytest.mark.asyncio
async def test_change_password(credential_store, session_factory) -> None:
    await credential_store.create_user("alice", PASSWORD, "alice@example.com")
    (before,) = await _users(session_factory)

    assert await credential_store.change_password("alice", "wrong!pass", "n3w!password") is False
    with pytest.raises(PolicyViolationError):
        await credential_store.change_password("alice", PASSWORD, "weak")
    assert await credential_store.change_password("alice", PASSWORD, "n3w!password") is True

    (after,) = await _users(session_factory)
    assert after.password_salt == before.password_salt
    assert after.password_hash != before.password_hash
    assert after.failed_password_count == 1
    assert await credential_store.validate_user("alice", "n3w!password") is True
    assert await credential_store.validate_user("alice", PASSWORD) is False


@pytest.mark.asyncio
async def test_change_password_hook_failure_propagates(make_credential_store, membership_policy) -> None:
    def forbid(event: PasswordValidationEvent) -> None:
        if not event.is_new_user:
            event.cancel = True
            event.failure = PolicyViolationError("password reuse is not allowed")

    store = make_credential_store(membership_policy, validation_hooks=[forbid])
    await store.create_user("alice", PASSWORD, "alice@example.com")
    with pytest.raises(PolicyViolationError, match="reuse"):
        await store.change_password("alice", PASSWORD, "n3w!password")
    assert await store.validate_user("alice", PASSWORD) is True


@pytest.mark.asyncio
async def test_question_and_answer_flow(make_credential_store, membership_policy, session_factory) -> None:
    store = make_credential_store(_qa_policy(membership_policy))
    await store.create_user("alice", PASSWORD, "alice@example.com", "Pet?", " Rex ")

    assert await store.get_password("alice", "rex") == PASSWORD
    assert await store.change_password_question_and_answer("alice", "wrong!pass", "Town?", "Paris") is False
    assert await store.change_password_question_and_answer("alice", PASSWORD, "Town?", "Paris") is True
    assert await store.get_password("alice", "PARIS") == PASSWORD

    with pytest.raises(PasswordAnswerRejectedError):
        await store.get_password("alice", "Rex")
    # The answer failure is committed even though the call raised.
    (row,) = await _users(session_factory)
    assert row.failed_answer_count == 1
    assert row.password_question == "Town?"


@pytest.mark.asyncio
async def test_wrong_answers_lock_the_account(make_credential_store, membership_policy) -> None:
    store = make_credential_store(_qa_policy(membership_policy))
    await store.create_user("alice", PASSWORD, "alice@example.com", "Pet?", "Rex")
    for _ in range(5):
        with pytest.raises(PasswordAnswerRejectedError):
            await store.reset_password("alice", "Fido")
    with pytest.raises(LockedOutError):
        await store.reset_password("alice", "Rex")
    with pytest.raises(LockedOutError):
        await store.get_password("alice", "Rex")


@pytest.mark.asyncio
async def test_reset_password_requires_answer(make_credential_store, membership_policy, session_factory) -> None:
    store = make_credential_store(_qa_policy(membership_policy))
    await store.create_user("alice", PASSWORD, "alice@example.com", "Pet?", "Rex")

    with pytest.raises(PasswordAnswerRejectedError, match="required"):
        await store.reset_password("alice", None)
    (row,) = await _users(session_factory)
    assert row.failed_answer_count == 1

    new_password = await store.reset_password("alice", "rex")
    assert new_password != PASSWORD
    assert len(new_password) == membership_policy.new_password_length
    assert await store.validate_user("alice", new_password) is True


@pytest.mark.asyncio
async def test_reset_and_retrieval_respect_policy(credential_store, make_credential_store, membership_policy) -> None:
    await credential_store.create_user("alice", PASSWORD, "alice@example.com")

    with pytest.raises(UnsupportedOperationError):
        await credential_store.get_password("alice")
    with pytest.raises(NotFoundError):
        await credential_store.reset_password("nobody")

    disabled = make_credential_store(membership_policy.model_copy(update={"enable_password_reset": False}))
    with pytest.raises(UnsupportedOperationError):
        await disabled.reset_password("alice")

    # Retrieval enabled, but this user's password was stored hashed.
    retrieving = make_credential_store(_qa_policy(membership_policy, requires_question_and_answer=False))
    with pytest.raises(UnsupportedOperationError):
        await retrieving.get_password("alice")

    new_password = await credential_store.reset_password("alice")
    assert await credential_store.validate_user("alice", new_password) is True


@pytest.mark.asyncio
async def test_get_user_by_name_and_id(credential_store, clock) -> None:
    created = (await credential_store.create_user("alice", PASSWORD, "alice@example.com")).user
    clock.advance(minutes=3)

    fetched = await credential_store.get_user("ALICE")
    assert fetched.user_id == created.user_id
    assert fetched.last_activity_at == created.last_activity_at

    touched = await credential_store.get_user_by_id(created.user_id, touch_activity=True)
    assert touched.last_activity_at == clock()

    assert await credential_store.get_user("nobody") is None
    assert await credential_store.get_user_by_id(uuid4()) is None
    with pytest.raises(InvalidArgumentError):
        await credential_store.get_user_by_id("not-a-uuid")


@pytest.mark.asyncio
async def test_find_users_by_name_pages_alphabetically(credential_store) -> None:
    names = [f"bob{index:02d}" for index in range(13)]
    for name in reversed(names):
        assert (await credential_store.create_user(name, PASSWORD, f"{name}@example.com")).succeeded
    await credential_store.create_user("carol", PASSWORD, "carol@example.com")

    page = await credential_store.find_users_by_name("bob", page_index=1, page_size=5)

    assert page.total_records == 13
    assert [user.user_name for user in page.users] == names[5:10]

    last = await credential_store.find_users_by_name("BOB", page_index=2, page_size=5)
    assert [user.user_name for user in last.users] == names[10:]
    beyond = await credential_store.find_users_by_name("bob", page_index=9, page_size=5)
    assert beyond.users == []
    assert beyond.total_records == 13


@pytest.mark.asyncio
async def test_find_by_email_and_get_all_users(credential_store) -> None:
    await credential_store.create_user("alice", PASSWORD, "alice@corp.example")
    await credential_store.create_user("bob", PASSWORD, "bob@home.example")
    await credential_store.create_user("carol", PASSWORD, "carol@CORP.example")

    corp = await credential_store.find_users_by_email("corp", 0, 10)
    assert [user.user_name for user in corp.users] == ["alice", "carol"]

    everyone = await credential_store.get_all_users(0, 2)
    assert everyone.total_records == 3
    assert [user.user_name for user in everyone.users] == ["alice", "bob"]

    assert await credential_store.get_user_name_by_email("BOB@home.example") == "bob"
    assert await credential_store.get_user_name_by_email("nobody@example.com") is None


@pytest.mark.asyncio
async def test_like_wildcards_match_literally(credential_store) -> None:
    await credential_store.create_user("a_b", PASSWORD, "ab1@example.com")
    await credential_store.create_user("axb", PASSWORD, "ab2@example.com")
    page = await credential_store.find_users_by_name("_", 0, 10)
    assert [user.user_name for user in page.users] == ["a_b"]


@pytest.mark.asyncio
@pytest.mark.parametrize(("page_index", "page_size"), [(-1, 5), (0, 0), (2**30, 4)])
async def test_paging_arguments_are_checked(credential_store, page_index, page_size) -> None:
    with pytest.raises(InvalidArgumentError):
        await credential_store.get_all_users(page_index, page_size)


@pytest.mark.asyncio
async def test_users_online_counts_recent_activity(credential_store, clock) -> None:
    await credential_store.create_user("alice", PASSWORD, "alice@example.com")
    clock.advance(minutes=20)
    await credential_store.create_user("bob", PASSWORD, "bob@example.com")
    assert await credential_store.get_number_of_users_online() == 1

    await credential_store.get_user("alice", touch_activity=True)
    assert await credential_store.get_number_of_users_online() == 2


@pytest.mark.asyncio
async def test_update_user_persists_mutable_fields(credential_store) -> None:
    alice = (await credential_store.create_user("alice", PASSWORD, "alice@example.com")).user
    await credential_store.create_user("bob", PASSWORD, "bob@example.com")

    await credential_store.update_user(
        dataclasses.replace(alice, email="alice@new.example", comment="vip", is_approved=False)
    )
    updated = await credential_store.get_user("alice")
    assert updated.email == "alice@new.example"
    assert updated.comment == "vip"
    assert updated.is_approved is False

    with pytest.raises(AlreadyExistsError):
        await credential_store.update_user(dataclasses.replace(alice, email="BOB@example.com"))
    with pytest.raises(NotFoundError):
        await credential_store.update_user(dataclasses.replace(alice, user_name="ghost"))


@pytest.mark.asyncio
async def test_delete_user(credential_store, role_store, session_factory) -> None:
    await credential_store.create_user("alice", PASSWORD, "alice@example.com")
    await role_store.create_role("admins")
    await role_store.add_users_to_roles(["alice"], ["admins"])

    with pytest.raises(PolicyViolationError):
        await credential_store.delete_user("alice", cascade=False)
    assert await role_store.get_users_in_role("admins") == ["alice"]

    assert await credential_store.delete_user("alice", cascade=True) is True
    assert await role_store.get_users_in_role("admins") == []
    assert await _users(session_factory) == []

    with pytest.raises(NotFoundError):
        await credential_store.delete_user("alice")


@pytest.mark.asyncio
async def test_unlock_unknown_user_raises(credential_store) -> None:
    with pytest.raises(NotFoundError):
        await credential_store.unlock_user("ghost")


@pytest.mark.asyncio
async def test_users_are_scoped_to_their_application(make_credential_store, membership_policy, session_factory) -> None:
    first = make_credential_store(membership_policy)
    second = make_credential_store(membership_policy.model_copy(update={"application_name": "/backoffice"}))

    assert (await first.create_user("alice", PASSWORD, "alice@example.com")).succeeded
    assert (await second.create_user("alice", PASSWORD, "alice@example.com")).succeeded
    assert await second.validate_user("alice", PASSWORD) is True
    assert (await first.get_all_users(0, 10)).total_records == 1

    async with session_factory() as session:
        total = (await session.execute(select(func.count()).select_from(User))).scalar_one()
    assert total == 2
