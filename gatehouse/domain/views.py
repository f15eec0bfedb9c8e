from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from gatehouse.core.clock import ensure_utc
from gatehouse.core.config import PasswordFormat
from gatehouse.core.errors import IdentityStoreError
from gatehouse.domain.models import User


class CreateUserStatus(str, Enum):
    SUCCESS = "success"
    INVALID_USER_NAME = "invalid_user_name"
    INVALID_PASSWORD = "invalid_password"
    INVALID_QUESTION = "invalid_question"
    INVALID_ANSWER = "invalid_answer"
    INVALID_EMAIL = "invalid_email"
    DUPLICATE_USER_NAME = "duplicate_user_name"
    DUPLICATE_EMAIL = "duplicate_email"
    USER_REJECTED = "user_rejected"
    INVALID_PROVIDER_USER_KEY = "invalid_provider_user_key"
    DUPLICATE_PROVIDER_USER_KEY = "duplicate_provider_user_key"


class FailureReason(str, Enum):
    PASSWORD = "password"
    PASSWORD_ANSWER = "password_answer"


@dataclass
class MembershipUser:
    # Detached snapshot handed to callers; never carries credential material.
    user_id: str
    user_name: str
    email: str | None
    password_question: str | None
    comment: str | None
    is_approved: bool
    is_locked_out: bool
    created_at: datetime
    last_login_at: datetime
    last_activity_at: datetime
    last_password_changed_at: datetime
    last_lockout_at: datetime

    @classmethod
    def from_row(cls, row: User) -> MembershipUser:
        return cls(
            user_id=row.id,
            user_name=row.user_name,
            email=row.email,
            password_question=row.password_question,
            comment=row.comment,
            is_approved=bool(row.is_approved),
            is_locked_out=bool(row.is_locked_out),
            created_at=ensure_utc(row.created_at),
            last_login_at=ensure_utc(row.last_login_at),
            last_activity_at=ensure_utc(row.last_activity_at),
            last_password_changed_at=ensure_utc(row.last_password_changed_at),
            last_lockout_at=ensure_utc(row.last_lockout_at),
        )


@dataclass(frozen=True)
class CreateUserResult:
    status: CreateUserStatus
    user: MembershipUser | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == CreateUserStatus.SUCCESS


@dataclass(frozen=True)
class PagedUsers:
    users: list[MembershipUser] = field(default_factory=list)
    total_records: int = 0


@dataclass(frozen=True)
class StoredCredential:
    # Credential columns read for verification inside one transaction.
    user_id: str
    password_hash: str
    password_format: PasswordFormat
    password_salt: str
    password_answer_hash: str | None
    is_approved: bool
    is_locked_out: bool

    @classmethod
    def from_row(cls, row: User) -> StoredCredential:
        try:
            password_format = PasswordFormat(row.password_format)
        except ValueError as exc:
            raise IdentityStoreError(
                f"Password for user {row.id} is stored in an unrecognised format"
            ) from exc
        return cls(
            user_id=row.id,
            password_hash=row.password_hash,
            password_format=password_format,
            password_salt=row.password_salt,
            password_answer_hash=row.password_answer_hash,
            is_approved=bool(row.is_approved),
            is_locked_out=bool(row.is_locked_out),
        )
