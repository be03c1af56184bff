"""initial task sharing schema

Revision ID: 3f2a9c1d7b4e
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
import sqlmodel
from alembic import op

# revision identifiers, used by Alembic.
revision = "3f2a9c1d7b4e"
down_revision = None
branch_labels = None
depends_on = None


def _has_table(table_name: str) -> bool:
    return sa.inspect(op.get_bind()).has_table(table_name)


def upgrade() -> None:
    if not _has_table("profiles"):
        op.create_table(
            "profiles",
            sa.Column("id", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=False),
            sa.Column("email", sqlmodel.sql.sqltypes.AutoString(length=320), nullable=False),
            sa.Column("full_name", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
            sa.Column("avatar_url", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(op.f("ix_profiles_email"), "profiles", ["email"], unique=True)

    if not _has_table("tasks"):
        op.create_table(
            "tasks",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("owner_id", sa.String(length=255), nullable=False),
            sa.Column("title", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
            sa.Column("description", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
            sa.Column("due_date", sa.Date(), nullable=True),
            sa.Column("priority", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
            sa.Column("status", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.CheckConstraint(
                "priority IN ('low', 'medium', 'high')",
                name="ck_tasks_priority",
            ),
            sa.CheckConstraint(
                "status IN ('pending', 'in-progress', 'completed')",
                name="ck_tasks_status",
            ),
            sa.ForeignKeyConstraint(["owner_id"], ["profiles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(op.f("ix_tasks_owner_id"), "tasks", ["owner_id"], unique=False)
        op.create_index(op.f("ix_tasks_priority"), "tasks", ["priority"], unique=False)
        op.create_index(op.f("ix_tasks_status"), "tasks", ["status"], unique=False)

    if not _has_table("task_shares"):
        op.create_table(
            "task_shares",
            sa.Column("id", sa.Uuid(), nullable=False),
            sa.Column("task_id", sa.Uuid(), nullable=False),
            sa.Column("grantor_id", sa.String(length=255), nullable=False),
            sa.Column("recipient_id", sa.String(length=255), nullable=False),
            sa.Column("permission", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.CheckConstraint(
                "permission IN ('view', 'edit')",
                name="ck_task_shares_permission",
            ),
            sa.ForeignKeyConstraint(["task_id"], ["tasks.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["grantor_id"], ["profiles.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["recipient_id"], ["profiles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "task_id",
                "recipient_id",
                name="uq_task_shares_task_recipient",
            ),
        )
        op.create_index(op.f("ix_task_shares_task_id"), "task_shares", ["task_id"], unique=False)
        op.create_index(
            op.f("ix_task_shares_grantor_id"),
            "task_shares",
            ["grantor_id"],
            unique=False,
        )
        op.create_index(
            op.f("ix_task_shares_recipient_id"),
            "task_shares",
            ["recipient_id"],
            unique=False,
        )


def downgrade() -> None:
    op.drop_index(op.f("ix_task_shares_recipient_id"), table_name="task_shares")
    op.drop_index(op.f("ix_task_shares_grantor_id"), table_name="task_shares")
    op.drop_index(op.f("ix_task_shares_task_id"), table_name="task_shares")
    op.drop_table("task_shares")
    op.drop_index(op.f("ix_tasks_status"), table_name="tasks")
    op.drop_index(op.f("ix_tasks_priority"), table_name="tasks")
    op.drop_index(op.f("ix_tasks_owner_id"), table_name="tasks")
    op.drop_table("tasks")
    op.drop_index(op.f("ix_profiles_email"), table_name="profiles")
    op.drop_table("profiles")
