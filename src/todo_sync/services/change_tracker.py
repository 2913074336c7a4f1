"""Pending-flag bookkeeping.

Every local mutation flags the touched row as needing an outbound push; the sync
orchestrator clears the flag once the remote side confirmed the write. Functions here
only flush; committing is the caller's unit of work.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, cast

from sqlalchemy import func
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from todo_sync.models import TodoItem, TodoList, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingCounts:
    lists: int
    items: int

    @property
    def total(self) -> int:
        return self.lists + self.items


async def mark_list_pending(
    session: AsyncSession, list_id: int, *, now: datetime | None = None
) -> TodoList | None:
    row = await session.get(TodoList, list_id)
    if row is None:
        logger.warning("mark_list_pending: todo_list local_id=%s not found", list_id)
        return None
    row.is_sync_pending = True
    row.last_modified = now or utc_now()
    session.add(row)
    await session.flush()
    return row


async def mark_item_pending(
    session: AsyncSession, item_id: int, *, now: datetime | None = None
) -> TodoItem | None:
    """Flag the item and its parent list (the flag cascades upward only)."""
    row = await session.get(TodoItem, item_id)
    if row is None:
        logger.warning("mark_item_pending: todo_item local_id=%s not found", item_id)
        return None
    ts = now or utc_now()
    row.is_sync_pending = True
    row.last_modified = ts
    session.add(row)

    parent = await session.get(TodoList, row.todo_list_id)
    if parent is not None:
        # 父列表只打标记，不改 last_modified：列表本身的字段没有变化
        parent.is_sync_pending = True
        session.add(parent)
    await session.flush()
    return row


async def clear_list_pending_flag(
    session: AsyncSession, list_id: int, *, now: datetime | None = None
) -> TodoList | None:
    row = await session.get(TodoList, list_id)
    if row is None:
        logger.debug("clear_list_pending_flag: todo_list local_id=%s vanished", list_id)
        return None
    row.is_sync_pending = False
    row.last_synced_at = now or utc_now()
    session.add(row)
    await session.flush()
    return row


async def clear_item_pending_flag(
    session: AsyncSession, item_id: int, *, now: datetime | None = None
) -> TodoItem | None:
    row = await session.get(TodoItem, item_id)
    if row is None:
        logger.debug("clear_item_pending_flag: todo_item local_id=%s vanished", item_id)
        return None
    row.is_sync_pending = False
    row.last_synced_at = now or utc_now()
    session.add(row)
    await session.flush()
    return row


async def get_pending_changes_count(session: AsyncSession) -> PendingCounts:
    lists = (
        await session.exec(
            select(func.count())
            .select_from(TodoList)
            .where(cast(ColumnElement[Any], TodoList.is_sync_pending).is_(True))
        )
    ).one()
    items = (
        await session.exec(
            select(func.count())
            .select_from(TodoItem)
            .where(cast(ColumnElement[Any], TodoItem.is_sync_pending).is_(True))
        )
    ).one()
    return PendingCounts(lists=int(lists or 0), items=int(items or 0))


async def has_pending_changes(session: AsyncSession) -> bool:
    return (await get_pending_changes_count(session)).total > 0
