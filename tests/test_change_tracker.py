from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from todo_sync.db import session_scope
from todo_sync.models import TodoItem, TodoList, utc_now
from todo_sync.services import change_tracker


async def _seed_synced_list() -> tuple[int, int, int]:
    synced = utc_now() - timedelta(minutes=5)
    async with session_scope() as session:
        row = TodoList(
            name="Chores",
            external_id="r-1",
            last_modified=synced,
            last_synced_at=synced,
            is_sync_pending=False,
        )
        session.add(row)
        await session.flush()
        assert row.id is not None
        items = [
            TodoItem(
                todo_list_id=row.id,
                external_id=f"ri-{n}",
                description=f"task {n}",
                last_modified=synced,
                last_synced_at=synced,
                is_sync_pending=False,
            )
            for n in (1, 2)
        ]
        session.add_all(items)
        await session.commit()
        assert items[0].id is not None and items[1].id is not None
        return int(row.id), int(items[0].id), int(items[1].id)


@pytest.mark.anyio
async def test_item_change_cascades_flag_to_parent_list(sqlite_db: Path) -> None:
    list_id, item_id, other_id = await _seed_synced_list()

    async with session_scope() as session:
        before = await session.get(TodoList, list_id)
        assert before is not None
        list_modified = before.last_modified

        marked = await change_tracker.mark_item_pending(session, item_id)
        assert marked is not None
        await session.commit()

    async with session_scope() as session:
        parent = await session.get(TodoList, list_id)
        item = await session.get(TodoItem, item_id)
        other = await session.get(TodoItem, other_id)
        assert parent is not None and item is not None and other is not None
        assert item.is_sync_pending is True
        assert parent.is_sync_pending is True
        # only the flag cascades; the list's own fields did not change
        assert parent.last_modified == list_modified
        assert other.is_sync_pending is False


@pytest.mark.anyio
async def test_list_change_does_not_cascade_to_items(sqlite_db: Path) -> None:
    list_id, item_id, other_id = await _seed_synced_list()

    async with session_scope() as session:
        await change_tracker.mark_list_pending(session, list_id)
        await session.commit()

    async with session_scope() as session:
        counts = await change_tracker.get_pending_changes_count(session)
        assert counts.lists == 1
        assert counts.items == 0
        assert counts.total == 1
        assert await change_tracker.has_pending_changes(session) is True


@pytest.mark.anyio
async def test_clearing_flags_stamps_last_synced_at(sqlite_db: Path) -> None:
    list_id, item_id, _ = await _seed_synced_list()
    now = utc_now()

    async with session_scope() as session:
        await change_tracker.mark_item_pending(session, item_id)
        await session.commit()

    async with session_scope() as session:
        await change_tracker.clear_item_pending_flag(session, item_id, now=now)
        await change_tracker.clear_list_pending_flag(session, list_id, now=now)
        await session.commit()

    async with session_scope() as session:
        parent = await session.get(TodoList, list_id)
        item = await session.get(TodoItem, item_id)
        assert parent is not None and item is not None
        assert parent.is_sync_pending is False
        assert item.is_sync_pending is False
        assert parent.last_synced_at == now
        assert item.last_synced_at == now
        assert await change_tracker.has_pending_changes(session) is False


@pytest.mark.anyio
async def test_missing_rows_are_reported_not_raised(sqlite_db: Path) -> None:
    async with session_scope() as session:
        assert await change_tracker.mark_list_pending(session, 999) is None
        assert await change_tracker.mark_item_pending(session, 999) is None
        assert await change_tracker.clear_list_pending_flag(session, 999) is None
        assert await change_tracker.clear_item_pending_flag(session, 999) is None
        counts = await change_tracker.get_pending_changes_count(session)
        assert counts.total == 0
