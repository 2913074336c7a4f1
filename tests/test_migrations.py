from __future__ import annotations

from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import inspect

from todo_sync.config import settings
from todo_sync.db import dispose_engine, get_engine, reset_engine_cache, session_scope
from todo_sync.models import SyncConflict, TodoItem, TodoList, utc_now


def _alembic_upgrade_head() -> None:
    cfg = Config("alembic.ini")
    command.upgrade(cfg, "head")


@pytest.mark.anyio
async def test_alembic_head_matches_models(tmp_path: Path) -> None:
    old_db = settings.database_url
    try:
        settings.database_url = f"sqlite:///{tmp_path / 'test-migrations.db'}"
        reset_engine_cache()
        _alembic_upgrade_head()

        async with get_engine().connect() as conn:
            tables = await conn.run_sync(lambda c: set(inspect(c).get_table_names()))
            list_cols = await conn.run_sync(
                lambda c: {col["name"] for col in inspect(c).get_columns("todo_lists")}
            )
        assert {"todo_lists", "todo_items", "sync_conflicts"} <= tables
        assert {
            "external_id",
            "last_modified",
            "last_synced_at",
            "is_sync_pending",
            "is_deleted",
            "deleted_at",
        } <= list_cols

        now = utc_now()
        async with session_scope() as session:
            row = TodoList(name="Migrated", external_id="r-1", last_synced_at=now)
            session.add(row)
            await session.flush()
            assert row.id is not None
            session.add(TodoItem(todo_list_id=row.id, description="item", external_id="ri-1"))
            session.add(
                SyncConflict(
                    entity_kind="todo_list",
                    local_id=row.id,
                    remote_id="r-1",
                    modified_fields=["name"],
                    local_last_modified=now,
                    remote_last_modified=now,
                    reason="manual resolution required",
                )
            )
            await session.commit()

        async with session_scope() as session:
            stored = await session.get(SyncConflict, 1)
            assert stored is not None
            assert stored.modified_fields == ["name"]
            assert stored.local_last_modified == now
    finally:
        await dispose_engine()
        settings.database_url = old_db
