from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from gatehouse.core.config import MAX_ENCODED_PASSWORD_LENGTH, MAX_NAME_LENGTH


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    # One row per application name; created lazily and never deleted here.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String(MAX_NAME_LENGTH))
    normalized_name: Mapped[str] = mapped_column(String(MAX_NAME_LENGTH), unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("tenant_id", "normalized_user_name", name="uq_users_tenant_user_name"),
        Index("ix_users_tenant_email", "tenant_id", "normalized_email"),
        Index("ix_users_tenant_activity", "tenant_id", "last_activity_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), index=True)
    user_name: Mapped[str] = mapped_column(String(MAX_NAME_LENGTH))
    normalized_user_name: Mapped[str] = mapped_column(String(MAX_NAME_LENGTH))
    email: Mapped[str | None] = mapped_column(String(MAX_NAME_LENGTH), nullable=True)
    normalized_email: Mapped[str | None] = mapped_column(String(MAX_NAME_LENGTH), nullable=True)
    # Stored credential; clear, digest, or ciphertext depending on password_format.
    password_hash: Mapped[str] = mapped_column(String(MAX_ENCODED_PASSWORD_LENGTH))
    password_format: Mapped[int] = mapped_column(Integer)
    password_salt: Mapped[str] = mapped_column(String(MAX_ENCODED_PASSWORD_LENGTH))
    password_question: Mapped[str | None] = mapped_column(String(MAX_NAME_LENGTH), nullable=True)
    password_answer_hash: Mapped[str | None] = mapped_column(String(MAX_ENCODED_PASSWORD_LENGTH), nullable=True)
    comment: Mapped[str | None] = mapped_column(String, nullable=True)
    is_approved: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_locked_out: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_login_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_password_changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_lockout_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    # Rolling failure windows for password and password-answer attempts.
    failed_password_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_password_window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    failed_answer_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_answer_window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class Role(Base):
    __tablename__ = "roles"
    __table_args__ = (
        UniqueConstraint("tenant_id", "normalized_role_name", name="uq_roles_tenant_role_name"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), index=True)
    role_name: Mapped[str] = mapped_column(String(MAX_NAME_LENGTH))
    normalized_role_name: Mapped[str] = mapped_column(String(MAX_NAME_LENGTH))
    description: Mapped[str | None] = mapped_column(String, nullable=True)


class UserRole(Base):
    __tablename__ = "user_roles"

    # Membership edge; no identity beyond the pair.
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), primary_key=True)
    role_id: Mapped[str] = mapped_column(String, ForeignKey("roles.id"), primary_key=True, index=True)
