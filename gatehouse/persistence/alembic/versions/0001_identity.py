"""add identity tables

Revision ID: 0001_identity
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_identity"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Tenants are keyed by their case-folded application name.
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("normalized_name", sa.String(length=256), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tenants_normalized_name", "tenants", ["normalized_name"], unique=True)

    # Users carry credentials and both failure windows on one row.
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("user_name", sa.String(length=256), nullable=False),
        sa.Column("normalized_user_name", sa.String(length=256), nullable=False),
        sa.Column("email", sa.String(length=256), nullable=True),
        sa.Column("normalized_email", sa.String(length=256), nullable=True),
        sa.Column("password_hash", sa.String(length=128), nullable=False),
        sa.Column("password_format", sa.Integer(), nullable=False),
        sa.Column("password_salt", sa.String(length=128), nullable=False),
        sa.Column("password_question", sa.String(length=256), nullable=True),
        sa.Column("password_answer_hash", sa.String(length=128), nullable=True),
        sa.Column("comment", sa.String(), nullable=True),
        sa.Column("is_approved", sa.Boolean(), nullable=False),
        sa.Column("is_locked_out", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_password_changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_lockout_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("failed_password_count", sa.Integer(), nullable=False),
        sa.Column("failed_password_window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("failed_answer_count", sa.Integer(), nullable=False),
        sa.Column("failed_answer_window_start", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "normalized_user_name", name="uq_users_tenant_user_name"),
    )
    op.create_index("ix_users_tenant_id", "users", ["tenant_id"], unique=False)
    op.create_index("ix_users_tenant_email", "users", ["tenant_id", "normalized_email"], unique=False)
    op.create_index("ix_users_tenant_activity", "users", ["tenant_id", "last_activity_at"], unique=False)

    op.create_table(
        "roles",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("role_name", sa.String(length=256), nullable=False),
        sa.Column("normalized_role_name", sa.String(length=256), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "normalized_role_name", name="uq_roles_tenant_role_name"),
    )
    op.create_index("ix_roles_tenant_id", "roles", ["tenant_id"], unique=False)

    # Membership edges have no identity beyond the pair.
    op.create_table(
        "user_roles",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("role_id", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"]),
        sa.PrimaryKeyConstraint("user_id", "role_id"),
    )
    op.create_index("ix_user_roles_role_id", "user_roles", ["role_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_user_roles_role_id", table_name="user_roles")
    op.drop_table("user_roles")
    op.drop_index("ix_roles_tenant_id", table_name="roles")
    op.drop_table("roles")
    op.drop_index("ix_users_tenant_activity", table_name="users")
    op.drop_index("ix_users_tenant_email", table_name="users")
    op.drop_index("ix_users_tenant_id", table_name="users")
    op.drop_table("users")
    op.drop_index("ix_tenants_normalized_name", table_name="tenants")
    op.drop_table("tenants")
