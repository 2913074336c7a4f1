"""todo lists, todo items, sync conflicts

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _sync_columns() -> list[sa.Column]:
    return [
        sa.Column("external_id", sa.String(length=64), nullable=True),
        sa.Column("last_modified", sa.DateTime(), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(), nullable=True),
        sa.Column("is_sync_pending", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
    ]


def _sync_indexes(table: str) -> None:
    op.create_index(f"ix_{table}_external_id", table, ["external_id"], unique=True)
    op.create_index(f"ix_{table}_last_modified", table, ["last_modified"], unique=False)
    op.create_index(f"ix_{table}_last_synced_at", table, ["last_synced_at"], unique=False)
    op.create_index(f"ix_{table}_is_sync_pending", table, ["is_sync_pending"], unique=False)
    op.create_index(f"ix_{table}_is_deleted", table, ["is_deleted"], unique=False)


def upgrade() -> None:
    op.create_table(
        "todo_lists",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        *_sync_columns(),
    )
    _sync_indexes("todo_lists")

    op.create_table(
        "todo_items",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("todo_list_id", sa.Integer(), sa.ForeignKey("todo_lists.id"), nullable=False),
        sa.Column("description", sa.String(length=2000), nullable=False, server_default=sa.text("''")),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_sync_columns(),
    )
    op.create_index("ix_todo_items_todo_list_id", "todo_items", ["todo_list_id"], unique=False)
    _sync_indexes("todo_items")

    op.create_table(
        "sync_conflicts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("entity_kind", sa.String(length=20), nullable=False),
        sa.Column("local_id", sa.Integer(), nullable=False),
        sa.Column("remote_id", sa.String(length=64), nullable=False),
        sa.Column("modified_fields", sa.JSON(), nullable=True),
        sa.Column("local_last_modified", sa.DateTime(), nullable=False),
        sa.Column("remote_last_modified", sa.DateTime(), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("resolution", sa.String(length=20), nullable=True),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_sync_conflicts_entity_kind", "sync_conflicts", ["entity_kind"], unique=False)
    op.create_index("ix_sync_conflicts_local_id", "sync_conflicts", ["local_id"], unique=False)
    op.create_index("ix_sync_conflicts_resolved_at", "sync_conflicts", ["resolved_at"], unique=False)
    op.create_index("ix_sync_conflicts_created_at", "sync_conflicts", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_table("sync_conflicts")
    op.drop_index("ix_todo_items_todo_list_id", table_name="todo_items")
    op.drop_table("todo_items")
    op.drop_table("todo_lists")
