"""Initial schema: registry, identity records and audit trail

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "roles",
        sa.Column("id", sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column("role_code", sa.String(length=20), nullable=False),
        sa.Column("role_name", sa.String(length=50), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("role_code"),
    )

    op.create_table(
        "actions",
        sa.Column("id", sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column("action_code", sa.String(length=50), nullable=False),
        sa.Column("action_name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("module", sa.String(length=50), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("action_code"),
    )
    op.create_index("ix_actions_module", "actions", ["module"])
    op.create_index("ix_actions_is_active", "actions", ["is_active"])

    op.create_table(
        "role_actions",
        sa.Column("id", sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column("role_id", sa.BigInteger(), nullable=False),
        sa.Column("action_id", sa.BigInteger(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["action_id"], ["actions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("role_id", "action_id", name="uq_role_action"),
    )
    op.create_index("ix_role_actions_role_id", "role_actions", ["role_id"])

    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column("email_encrypted", sa.String(length=500), nullable=False),
        sa.Column("email_search", sa.String(length=128), nullable=False),
        sa.Column("password_hash", sa.String(length=100), nullable=True),
        sa.Column("google_id", sa.String(length=100), nullable=True),
        sa.Column("email_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("role_id", sa.BigInteger(), nullable=False),
        sa.Column("full_name", sa.String(length=100), nullable=True),
        sa.Column("profile_picture_url", sa.String(length=500), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email_search"),
        sa.UniqueConstraint("google_id"),
    )
    op.create_index("ix_users_role_id", "users", ["role_id"])

    op.create_table(
        "audit_records",
        sa.Column("id", sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column("table_name", sa.String(length=50), nullable=False),
        sa.Column("record_id", sa.String(length=64), nullable=True),
        sa.Column("action", sa.String(length=20), nullable=False),
        sa.Column("changed_by", sa.String(length=100), nullable=False),
        sa.Column(
            "changed_date",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("user_agent", sa.String(length=255), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_audit_records_table_record", "audit_records", ["table_name", "record_id"]
    )
    op.create_index("ix_audit_records_changed_by", "audit_records", ["changed_by"])
    op.create_index("ix_audit_records_changed_date", "audit_records", ["changed_date"])

    op.create_table(
        "audit_record_details",
        sa.Column("id", sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column("audit_record_id", sa.BigInteger(), nullable=False),
        sa.Column("field_name", sa.String(length=50), nullable=False),
        sa.Column("old_value", sa.Text(), nullable=True),
        sa.Column("new_value", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(
            ["audit_record_id"], ["audit_records.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_audit_record_details_record", "audit_record_details", ["audit_record_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_audit_record_details_record", table_name="audit_record_details")
    op.drop_table("audit_record_details")

    op.drop_index("ix_audit_records_changed_date", table_name="audit_records")
    op.drop_index("ix_audit_records_changed_by", table_name="audit_records")
    op.drop_index("ix_audit_records_table_record", table_name="audit_records")
    op.drop_table("audit_records")

    op.drop_index("ix_users_role_id", table_name="users")
    op.drop_table("users")

    op.drop_index("ix_role_actions_role_id", table_name="role_actions")
    op.drop_table("role_actions")

    op.drop_index("ix_actions_is_active", table_name="actions")
    op.drop_index("ix_actions_module", table_name="actions")
    op.drop_table("actions")

    op.drop_table("roles")
