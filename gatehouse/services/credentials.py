from __future__ import annotations

import dataclasses
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Sequence, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from gatehouse.core.config import (
    MAX_ENCODED_PASSWORD_LENGTH,
    MAX_NAME_LENGTH,
    MAX_PASSWORD_ANSWER_LENGTH,
    MAX_PASSWORD_QUESTION_LENGTH,
    MembershipPolicy,
    PasswordFormat,
    Settings,
    get_settings,
    membership_policy_from_settings,
)
from gatehouse.core.errors import (
    AlreadyExistsError,
    ConsistencyFaultError,
    InvalidArgumentError,
    LockedOutError,
    NotFoundError,
    PasswordAnswerRejectedError,
    PolicyViolationError,
    UnsupportedOperationError,
)
from gatehouse.domain.models import User
from gatehouse.domain.views import (
    CreateUserResult,
    CreateUserStatus,
    FailureReason,
    MembershipUser,
    PagedUsers,
    StoredCredential,
)
from gatehouse.persistence.db import SessionFactory, get_session_factory
from gatehouse.persistence.repos import users as users_repo
from gatehouse.persistence.repos.tenants import normalize_name
from gatehouse.persistence.transactions import expect_rowcount, run_in_transaction
from gatehouse.services.lockout import LockoutTracker
from gatehouse.services.passwords.codec import PasswordCodec, build_password_codec
from gatehouse.services.passwords.policy import (
    PasswordValidationEvent,
    PasswordValidationHook,
    check_password_strength,
    generate_password,
    password_strength_problem,
    raise_if_cancelled,
    run_validation_hooks,
)
from gatehouse.services.tenancy import ApplicationScopeResolver
from gatehouse.services.validation import check_parameter, is_parameter_valid, trim


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Paged reads report totals as 32-bit counts.
_MAX_PAGE_UPPER_BOUND = 2**31 - 1


def check_paging(page_index: int, page_size: int) -> int:
    """Validate a zero-based page request and return its row offset."""
    if page_index < 0:
        raise InvalidArgumentError("page_index must be zero or greater", param="page_index")
    if page_size < 1:
        raise InvalidArgumentError("page_size must be at least 1", param="page_size")
    if page_index * page_size + page_size - 1 > _MAX_PAGE_UPPER_BOUND:
        raise InvalidArgumentError(
            "page_index and page_size combine past the largest countable row",
            param="page_index",
        )
    return page_index * page_size


def _parse_user_key(value: UUID | str) -> str:
    if isinstance(value, UUID):
        return value.hex
    try:
        return UUID(str(value)).hex
    except ValueError as exc:
        raise InvalidArgumentError("provider_user_key must be a UUID", param="provider_user_key") from exc


class CredentialStore:
    """User lifecycle, password handling, and paged user search for one application.

    Every public method resolves the application's tenant and then runs as one
    transaction. Validation failures during ``create_user`` are reported as
    statuses; every other failure raises an ``IdentityError`` after rollback.
    Calls are not retried here; hosts wrap them with ``retry_transient`` to
    re-run an operation after a ``TransientStoreError``.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        policy: MembershipPolicy,
        *,
        codec: PasswordCodec,
        resolver: ApplicationScopeResolver | None = None,
        lockout: LockoutTracker | None = None,
        validation_hooks: Sequence[PasswordValidationHook] = (),
    ) -> None:
        self._session_factory = session_factory
        self._policy = policy
        self._codec = codec
        self._resolver = resolver or ApplicationScopeResolver(session_factory)
        self._lockout = lockout or LockoutTracker.from_policy(policy)
        self._hooks = list(validation_hooks)

    @property
    def policy(self) -> MembershipPolicy:
        return self._policy

    def add_validation_hook(self, hook: PasswordValidationHook) -> None:
        self._hooks.append(hook)

    async def _run(
        self,
        name: str,
        operation: Callable[[AsyncSession, str], Awaitable[T]],
    ) -> T:
        # Tenant resolution commits on its own before the operation's transaction opens.
        tenant_id = await self._resolver.resolve(self._policy.application_name)
        return await run_in_transaction(
            self._session_factory,
            lambda session: operation(session, tenant_id),
            name=name,
        )

    def _validation_event(self, user_name: str, password: str, *, is_new_user: bool) -> PasswordValidationEvent:
        return run_validation_hooks(
            self._hooks,
            PasswordValidationEvent(user_name=user_name, password=password, is_new_user=is_new_user),
        )

    def _encode_answer(self, answer: str, fmt: PasswordFormat, salt: str) -> str:
        # Answers compare case-insensitively, so the folded form is what gets encoded.
        return self._codec.encode(answer.strip().casefold(), fmt, salt)

    def _answer_matches(self, credential: StoredCredential, answer: str | None) -> bool:
        if answer is None or credential.password_answer_hash is None:
            return False
        return self._codec.verify(
            answer.strip().casefold(),
            credential.password_answer_hash,
            credential.password_format,
            credential.password_salt,
        )

    async def _check_password(
        self,
        session: AsyncSession,
        tenant_id: str,
        user_name: str,
        password: str,
        *,
        record_login: bool,
    ) -> tuple[User, StoredCredential] | None:
        # Locked, missing, and unapproved users all fail closed; only a wrong password counts.
        user = await users_repo.get_user_by_name(session, tenant_id=tenant_id, user_name=user_name)
        if user is None or user.is_locked_out:
            return None
        credential = StoredCredential.from_row(user)
        if not self._codec.verify(password, credential.password_hash, credential.password_format, credential.password_salt):
            await self._lockout.record_failure(session, tenant_id=tenant_id, user=user, reason=FailureReason.PASSWORD)
            return None
        if not credential.is_approved:
            return None
        await self._lockout.record_success(session, tenant_id=tenant_id, user=user, record_login=record_login)
        return user, credential

    async def create_user(
        self,
        user_name: str | None,
        password: str | None,
        email: str | None = None,
        password_question: str | None = None,
        password_answer: str | None = None,
        is_approved: bool = True,
        provider_user_key: UUID | str | None = None,
    ) -> CreateUserResult:
        policy = self._policy
        fmt = policy.password_format

        if not is_parameter_valid(password, max_length=MAX_ENCODED_PASSWORD_LENGTH):
            return CreateUserResult(CreateUserStatus.INVALID_PASSWORD)
        salt = self._codec.generate_salt()
        encoded_password = self._codec.encode(password, fmt, salt)
        if len(encoded_password) > MAX_ENCODED_PASSWORD_LENGTH:
            return CreateUserResult(CreateUserStatus.INVALID_PASSWORD)

        answer = trim(password_answer)
        encoded_answer: str | None = None
        if answer:
            if len(answer) > MAX_PASSWORD_ANSWER_LENGTH:
                return CreateUserResult(CreateUserStatus.INVALID_ANSWER)
            encoded_answer = self._encode_answer(answer, fmt, salt)
        if not is_parameter_valid(
            encoded_answer,
            required=policy.requires_question_and_answer,
            max_length=MAX_ENCODED_PASSWORD_LENGTH,
        ):
            return CreateUserResult(CreateUserStatus.INVALID_ANSWER)

        if not is_parameter_valid(user_name, reject_commas=True, max_length=MAX_NAME_LENGTH):
            return CreateUserResult(CreateUserStatus.INVALID_USER_NAME)
        user_name = user_name.strip()

        if not is_parameter_valid(
            email,
            required=policy.requires_unique_email,
            reject_empty=policy.requires_unique_email,
            max_length=MAX_NAME_LENGTH,
        ):
            return CreateUserResult(CreateUserStatus.INVALID_EMAIL)
        email = trim(email) or None

        if not is_parameter_valid(
            password_question,
            required=policy.requires_question_and_answer,
            reject_empty=policy.requires_question_and_answer,
            max_length=MAX_PASSWORD_QUESTION_LENGTH,
        ):
            return CreateUserResult(CreateUserStatus.INVALID_QUESTION)
        question = trim(password_question) or None

        user_id: str | None = None
        if provider_user_key is not None:
            try:
                user_id = _parse_user_key(provider_user_key)
            except InvalidArgumentError:
                return CreateUserResult(CreateUserStatus.INVALID_PROVIDER_USER_KEY)

        if password_strength_problem(password, policy) is not None:
            return CreateUserResult(CreateUserStatus.INVALID_PASSWORD)
        if self._validation_event(user_name, password, is_new_user=True).cancel:
            return CreateUserResult(CreateUserStatus.INVALID_PASSWORD)

        async def operation(session: AsyncSession, tenant_id: str) -> CreateUserResult:
            if policy.requires_unique_email and email is not None:
                if await users_repo.email_in_use(session, tenant_id=tenant_id, email=email):
                    return CreateUserResult(CreateUserStatus.DUPLICATE_EMAIL)
            existing = await users_repo.get_user_by_name(session, tenant_id=tenant_id, user_name=user_name)
            if existing is not None:
                return CreateUserResult(CreateUserStatus.DUPLICATE_USER_NAME)
            if user_id is not None and await users_repo.user_id_taken(session, user_id=user_id):
                return CreateUserResult(CreateUserStatus.DUPLICATE_PROVIDER_USER_KEY)

            now = self._lockout.now()
            user = User(
                id=user_id or uuid4().hex,
                tenant_id=tenant_id,
                user_name=user_name,
                normalized_user_name=normalize_name(user_name),
                email=email,
                normalized_email=normalize_name(email) if email is not None else None,
                password_hash=encoded_password,
                password_format=int(fmt),
                password_salt=salt,
                password_question=question,
                password_answer_hash=encoded_answer,
                comment=None,
                is_approved=is_approved,
                is_locked_out=False,
                created_at=now,
                last_login_at=now,
                last_activity_at=now,
                last_password_changed_at=now,
                last_lockout_at=now,
                failed_password_count=0,
                failed_password_window_start=now,
                failed_answer_count=0,
                failed_answer_window_start=now,
            )
            await users_repo.insert_user(session, user)
            logger.info("user_created tenant_id=%s user_id=%s", tenant_id, user.id)
            return CreateUserResult(CreateUserStatus.SUCCESS, MembershipUser.from_row(user))

        try:
            return await self._run("create_user", operation)
        except AlreadyExistsError:
            # A concurrent insert claimed the name or key between the checks and the insert.
            logger.warning("user_create_rejected user_name=%s", user_name)
            return CreateUserResult(CreateUserStatus.USER_REJECTED)

    async def validate_user(self, user_name: str, password: str) -> bool:
        user_name = check_parameter(user_name, name="user_name", reject_commas=True, max_length=MAX_NAME_LENGTH)
        check_parameter(password, name="password", max_length=MAX_ENCODED_PASSWORD_LENGTH)

        async def operation(session: AsyncSession, tenant_id: str) -> bool:
            checked = await self._check_password(session, tenant_id, user_name, password, record_login=True)
            return checked is not None

        return await self._run("validate_user", operation)

    async def change_password(self, user_name: str, old_password: str, new_password: str) -> bool:
        """Replace a user's password after checking the old one.

        A wrong old password is counted as a failed attempt and reported as
        ``False``; a new password that breaks policy raises.
        """
        user_name = check_parameter(user_name, name="user_name", reject_commas=True, max_length=MAX_NAME_LENGTH)
        check_parameter(old_password, name="old_password", max_length=MAX_ENCODED_PASSWORD_LENGTH)
        check_parameter(new_password, name="new_password", max_length=MAX_ENCODED_PASSWORD_LENGTH)

        async def operation(session: AsyncSession, tenant_id: str) -> bool:
            checked = await self._check_password(session, tenant_id, user_name, old_password, record_login=False)
            if checked is None:
                return False
            user, credential = checked
            check_password_strength(new_password, self._policy, param="new_password")
            # Re-encode under the record's own format and salt.
            encoded = self._codec.ensure_storable(
                self._codec.encode(new_password, credential.password_format, credential.password_salt),
                param="new_password",
            )
            raise_if_cancelled(
                self._validation_event(user.user_name, new_password, is_new_user=False),
                param="new_password",
            )
            result = await users_repo.update_user_fields(
                session,
                tenant_id=tenant_id,
                user_id=user.id,
                values={"password_hash": encoded, "last_password_changed_at": self._lockout.now()},
            )
            expect_rowcount(result, 1, action="change password")
            logger.info("password_changed tenant_id=%s user_id=%s", tenant_id, user.id)
            return True

        return await self._run("change_password", operation)

    async def change_password_question_and_answer(
        self,
        user_name: str,
        password: str,
        new_password_question: str | None,
        new_password_answer: str | None,
    ) -> bool:
        user_name = check_parameter(user_name, name="user_name", reject_commas=True, max_length=MAX_NAME_LENGTH)
        check_parameter(password, name="password", max_length=MAX_ENCODED_PASSWORD_LENGTH)
        required = self._policy.requires_question_and_answer

        async def operation(session: AsyncSession, tenant_id: str) -> bool:
            checked = await self._check_password(session, tenant_id, user_name, password, record_login=False)
            if checked is None:
                return False
            user, credential = checked
            question = check_parameter(
                new_password_question,
                name="new_password_question",
                required=required,
                reject_empty=required,
                max_length=MAX_PASSWORD_QUESTION_LENGTH,
            )
            answer = check_parameter(
                new_password_answer,
                name="new_password_answer",
                required=required,
                reject_empty=required,
                max_length=MAX_PASSWORD_ANSWER_LENGTH,
            )
            encoded_answer = None
            if answer:
                encoded_answer = self._codec.ensure_storable(
                    self._encode_answer(answer, credential.password_format, credential.password_salt),
                    param="new_password_answer",
                )
            result = await users_repo.update_user_fields(
                session,
                tenant_id=tenant_id,
                user_id=user.id,
                values={"password_question": question or None, "password_answer_hash": encoded_answer},
            )
            expect_rowcount(result, 1, action="change password question and answer")
            return True

        return await self._run("change_password_question_and_answer", operation)

    async def get_password(self, user_name: str, answer: str | None = None) -> str:
        if not self._policy.enable_password_retrieval:
            raise UnsupportedOperationError("Password retrieval is not enabled")
        user_name = check_parameter(user_name, name="user_name", reject_commas=True, max_length=MAX_NAME_LENGTH)

        async def operation(session: AsyncSession, tenant_id: str) -> str:
            user = await users_repo.get_user_by_name(session, tenant_id=tenant_id, user_name=user_name)
            if user is None:
                raise NotFoundError(f"User {user_name} was not found")
            if user.is_locked_out:
                raise LockedOutError(f"User {user_name} is locked out")
            credential = StoredCredential.from_row(user)
            # Checked before the answer so an unrecoverable password never costs an attempt.
            if credential.password_format == PasswordFormat.HASHED:
                raise UnsupportedOperationError("Cannot retrieve a hashed password")
            if self._policy.requires_question_and_answer and not self._answer_matches(credential, answer):
                await self._lockout.record_failure(
                    session, tenant_id=tenant_id, user=user, reason=FailureReason.PASSWORD_ANSWER
                )
                raise PasswordAnswerRejectedError("The password answer supplied is wrong")
            return self._codec.decode(credential.password_hash, credential.password_format)

        return await self._run("get_password", operation)

    async def reset_password(self, user_name: str, answer: str | None = None) -> str:
        """Replace a user's password with a generated one and return it."""
        if not self._policy.enable_password_reset:
            raise UnsupportedOperationError("Password reset is not enabled")
        user_name = check_parameter(user_name, name="user_name", reject_commas=True, max_length=MAX_NAME_LENGTH)
        required = self._policy.requires_question_and_answer

        async def operation(session: AsyncSession, tenant_id: str) -> str:
            user = await users_repo.get_user_by_name(session, tenant_id=tenant_id, user_name=user_name)
            if user is None:
                raise NotFoundError(f"User {user_name} was not found")
            if user.is_locked_out:
                raise LockedOutError(f"User {user_name} is locked out")
            credential = StoredCredential.from_row(user)
            if required and not self._answer_matches(credential, answer):
                await self._lockout.record_failure(
                    session, tenant_id=tenant_id, user=user, reason=FailureReason.PASSWORD_ANSWER
                )
                if answer is None:
                    raise PasswordAnswerRejectedError("A password answer is required for password reset")
                raise PasswordAnswerRejectedError("The password answer supplied is wrong")

            new_password = generate_password(self._policy)
            raise_if_cancelled(self._validation_event(user.user_name, new_password, is_new_user=False))
            encoded = self._codec.ensure_storable(
                self._codec.encode(new_password, credential.password_format, credential.password_salt)
            )
            result = await users_repo.update_user_fields(
                session,
                tenant_id=tenant_id,
                user_id=user.id,
                values={"password_hash": encoded, "last_password_changed_at": self._lockout.now()},
                require_unlocked=True,
            )
            expect_rowcount(result, 1, action="reset password")
            logger.info("password_reset tenant_id=%s user_id=%s", tenant_id, user.id)
            return new_password

        return await self._run("reset_password", operation)

    async def _snapshot(
        self,
        session: AsyncSession,
        tenant_id: str,
        user: User | None,
        *,
        touch_activity: bool,
    ) -> MembershipUser | None:
        if user is None:
            return None
        snapshot = MembershipUser.from_row(user)
        if touch_activity:
            now = self._lockout.now()
            result = await users_repo.update_user_fields(
                session, tenant_id=tenant_id, user_id=user.id, values={"last_activity_at": now}
            )
            expect_rowcount(result, 1, action="touch last activity")
            snapshot = dataclasses.replace(snapshot, last_activity_at=now)
        return snapshot

    async def get_user(self, user_name: str, *, touch_activity: bool = False) -> MembershipUser | None:
        user_name = check_parameter(user_name, name="user_name", max_length=MAX_NAME_LENGTH)

        async def operation(session: AsyncSession, tenant_id: str) -> MembershipUser | None:
            user = await users_repo.get_user_by_name(session, tenant_id=tenant_id, user_name=user_name)
            return await self._snapshot(session, tenant_id, user, touch_activity=touch_activity)

        return await self._run("get_user", operation)

    async def get_user_by_id(
        self,
        provider_user_key: UUID | str,
        *,
        touch_activity: bool = False,
    ) -> MembershipUser | None:
        if provider_user_key is None:
            raise InvalidArgumentError("provider_user_key is required", param="provider_user_key")
        user_id = _parse_user_key(provider_user_key)

        async def operation(session: AsyncSession, tenant_id: str) -> MembershipUser | None:
            user = await users_repo.get_user_by_id(session, tenant_id=tenant_id, user_id=user_id)
            return await self._snapshot(session, tenant_id, user, touch_activity=touch_activity)

        return await self._run("get_user_by_id", operation)

    async def get_user_name_by_email(self, email: str) -> str | None:
        email = check_parameter(email, name="email", max_length=MAX_NAME_LENGTH)
        return await self._run(
            "get_user_name_by_email",
            lambda session, tenant_id: users_repo.get_user_name_by_email(session, tenant_id=tenant_id, email=email),
        )

    async def _page(
        self,
        name: str,
        page_index: int,
        page_size: int,
        *,
        name_contains: str | None = None,
        email_contains: str | None = None,
    ) -> PagedUsers:
        offset = check_paging(page_index, page_size)

        async def operation(session: AsyncSession, tenant_id: str) -> PagedUsers:
            total = await users_repo.count_users(
                session, tenant_id=tenant_id, name_contains=name_contains, email_contains=email_contains
            )
            if offset >= total:
                return PagedUsers(users=[], total_records=total)
            rows = await users_repo.search_users(
                session,
                tenant_id=tenant_id,
                offset=offset,
                limit=page_size,
                name_contains=name_contains,
                email_contains=email_contains,
            )
            return PagedUsers(users=[MembershipUser.from_row(row) for row in rows], total_records=total)

        return await self._run(name, operation)

    async def find_users_by_name(self, user_name_to_match: str, page_index: int, page_size: int) -> PagedUsers:
        user_name_to_match = check_parameter(
            user_name_to_match, name="user_name_to_match", max_length=MAX_NAME_LENGTH
        )
        return await self._page("find_users_by_name", page_index, page_size, name_contains=user_name_to_match)

    async def find_users_by_email(self, email_to_match: str, page_index: int, page_size: int) -> PagedUsers:
        email_to_match = check_parameter(email_to_match, name="email_to_match", max_length=MAX_NAME_LENGTH)
        return await self._page("find_users_by_email", page_index, page_size, email_contains=email_to_match)

    async def get_all_users(self, page_index: int, page_size: int) -> PagedUsers:
        return await self._page("get_all_users", page_index, page_size)

    async def get_number_of_users_online(self) -> int:
        since = self._lockout.now() - timedelta(minutes=self._policy.user_is_online_window_minutes)
        return await self._run(
            "get_number_of_users_online",
            lambda session, tenant_id: users_repo.count_users_active_since(session, tenant_id=tenant_id, since=since),
        )

    async def delete_user(self, user_name: str, cascade: bool = True) -> bool:
        """Delete a user, and its role memberships when ``cascade`` is set.

        Without ``cascade`` a user that still belongs to a role is refused.
        """
        user_name = check_parameter(user_name, name="user_name", reject_commas=True, max_length=MAX_NAME_LENGTH)

        async def operation(session: AsyncSession, tenant_id: str) -> bool:
            user = await users_repo.get_user_by_name(session, tenant_id=tenant_id, user_name=user_name)
            if user is None:
                raise NotFoundError(f"User {user_name} was not found")
            if cascade:
                await users_repo.delete_memberships_for_user(session, user_id=user.id)
            elif await users_repo.count_memberships_for_user(session, user_id=user.id) > 0:
                raise PolicyViolationError(f"User {user_name} still belongs to roles")
            result = await users_repo.delete_user_row(session, tenant_id=tenant_id, user_id=user.id)
            if result.rowcount > 1:
                raise ConsistencyFaultError(f"delete user affected {result.rowcount} rows, expected 1")
            deleted = result.rowcount == 1
            if deleted:
                logger.info("user_deleted tenant_id=%s user_id=%s cascade=%s", tenant_id, user.id, cascade)
            return deleted

        return await self._run("delete_user", operation)

    async def update_user(self, user: MembershipUser) -> None:
        if user is None:
            raise InvalidArgumentError("user is required", param="user")
        user_name = check_parameter(user.user_name, name="user_name", reject_commas=True, max_length=MAX_NAME_LENGTH)
        email = check_parameter(
            user.email,
            name="email",
            required=self._policy.requires_unique_email,
            reject_empty=self._policy.requires_unique_email,
            max_length=MAX_NAME_LENGTH,
        ) or None

        async def operation(session: AsyncSession, tenant_id: str) -> None:
            row = await users_repo.get_user_by_name(session, tenant_id=tenant_id, user_name=user_name)
            if row is None or row.id != user.user_id:
                raise NotFoundError(f"User {user_name} was not found")
            if self._policy.requires_unique_email and email is not None:
                if await users_repo.email_in_use(session, tenant_id=tenant_id, email=email, exclude_user_id=row.id):
                    raise AlreadyExistsError(f"Email {email} is already used by another user")
            result = await users_repo.update_user_fields(
                session,
                tenant_id=tenant_id,
                user_id=row.id,
                values={
                    "email": email,
                    "normalized_email": normalize_name(email) if email is not None else None,
                    "comment": user.comment,
                    "is_approved": bool(user.is_approved),
                    "last_login_at": user.last_login_at,
                    "last_activity_at": user.last_activity_at,
                },
            )
            expect_rowcount(result, 1, action="update user")

        await self._run("update_user", operation)

    async def unlock_user(self, user_name: str) -> bool:
        user_name = check_parameter(user_name, name="user_name", reject_commas=True, max_length=MAX_NAME_LENGTH)

        async def operation(session: AsyncSession, tenant_id: str) -> bool:
            user = await users_repo.get_user_by_name(session, tenant_id=tenant_id, user_name=user_name)
            if user is None:
                raise NotFoundError(f"User {user_name} was not found")
            await self._lockout.unlock(session, tenant_id=tenant_id, user_id=user.id)
            return True

        return await self._run("unlock_user", operation)


def build_credential_store(
    session_factory: SessionFactory | None = None,
    settings: Settings | None = None,
    *,
    resolver: ApplicationScopeResolver | None = None,
) -> CredentialStore:
    # Wire a store from environment settings; scripts and hosts share this path.
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    return CredentialStore(
        session_factory,
        membership_policy_from_settings(settings),
        codec=build_password_codec(settings),
        resolver=resolver,
    )
