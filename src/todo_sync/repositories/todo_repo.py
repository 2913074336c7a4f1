from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any, cast

from sqlalchemy import or_
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from ..models import SyncConflict, TodoItem, TodoList


def _c(attr: object) -> ColumnElement[Any]:
    return cast(ColumnElement[Any], attr)


async def get_list(session: AsyncSession, list_id: int) -> TodoList | None:
    return await session.get(TodoList, list_id)


async def get_item(session: AsyncSession, item_id: int) -> TodoItem | None:
    return await session.get(TodoItem, item_id)


async def get_list_active(session: AsyncSession, list_id: int) -> TodoList | None:
    result = await session.exec(
        select(TodoList).where(TodoList.id == list_id).where(_c(TodoList.is_deleted).is_(False))
    )
    return result.first()


async def get_list_by_external_id(session: AsyncSession, external_id: str) -> TodoList | None:
    result = await session.exec(select(TodoList).where(TodoList.external_id == external_id))
    return result.first()


async def get_item_by_external_id(session: AsyncSession, external_id: str) -> TodoItem | None:
    result = await session.exec(select(TodoItem).where(TodoItem.external_id == external_id))
    return result.first()


async def list_lists(session: AsyncSession, *, include_deleted: bool = False) -> list[TodoList]:
    stmt = select(TodoList)
    if not include_deleted:
        stmt = stmt.where(_c(TodoList.is_deleted).is_(False))
    result = await session.exec(stmt.order_by(_c(TodoList.id).asc()))
    return list(result.all())


async def list_items(
    session: AsyncSession, list_id: int, *, include_deleted: bool = False
) -> list[TodoItem]:
    stmt = select(TodoItem).where(TodoItem.todo_list_id == list_id)
    if not include_deleted:
        stmt = stmt.where(_c(TodoItem.is_deleted).is_(False))
    result = await session.exec(stmt.order_by(_c(TodoItem.id).asc()))
    return list(result.all())


async def items_by_list(
    session: AsyncSession, list_ids: Iterable[int], *, include_deleted: bool = False
) -> dict[int, list[TodoItem]]:
    ids = list(list_ids)
    out: dict[int, list[TodoItem]] = {i: [] for i in ids}
    if not ids:
        return out
    stmt = select(TodoItem).where(_c(TodoItem.todo_list_id).in_(ids))
    if not include_deleted:
        stmt = stmt.where(_c(TodoItem.is_deleted).is_(False))
    result = await session.exec(stmt.order_by(_c(TodoItem.id).asc()))
    for item in result.all():
        out[item.todo_list_id].append(item)
    return out


async def pending_list_ids(session: AsyncSession) -> list[int]:
    """Lists with outbound work: flagged, never pushed, or owning a flagged item."""
    has_pending_item = (
        select(TodoItem.id)
        .where(TodoItem.todo_list_id == TodoList.id)
        .where(_c(TodoItem.is_sync_pending).is_(True))
        .exists()
    )
    result = await session.exec(
        select(TodoList.id)
        .where(
            or_(
                _c(TodoList.is_sync_pending).is_(True),
                _c(TodoList.external_id).is_(None) & _c(TodoList.is_deleted).is_(False),
                has_pending_item,
            )
        )
        .order_by(_c(TodoList.id).asc())
    )
    return [int(x) for x in result.all() if x is not None]


async def find_orphaned_lists(session: AsyncSession, remote_ids: Iterable[str]) -> list[TodoList]:
    """Live lists bound to a remote id that is not in ``remote_ids``.

    Lists without a remote id (null or empty) are never orphans.
    """
    ids = sorted(set(remote_ids))
    stmt = (
        select(TodoList)
        .where(_c(TodoList.external_id).is_not(None))
        .where(_c(TodoList.external_id) != "")
        .where(_c(TodoList.is_deleted).is_(False))
    )
    if ids:
        stmt = stmt.where(_c(TodoList.external_id).not_in(ids))
    result = await session.exec(stmt.order_by(_c(TodoList.id).asc()))
    return list(result.all())


async def live_bound_items(session: AsyncSession) -> list[tuple[TodoItem, str]]:
    """(item, parent list external id) for live items that carry a remote id."""
    result = await session.exec(
        select(TodoItem, TodoList.external_id)
        .join(TodoList, _c(TodoList.id) == _c(TodoItem.todo_list_id))
        .where(_c(TodoItem.external_id).is_not(None))
        .where(_c(TodoItem.external_id) != "")
        .where(_c(TodoItem.is_deleted).is_(False))
        .where(_c(TodoList.external_id).is_not(None))
        .order_by(_c(TodoItem.id).asc())
    )
    return [(item, str(list_ext)) for item, list_ext in result.all()]


async def soft_delete_list(
    session: AsyncSession, row: TodoList, *, now: datetime, mark_pending: bool = True
) -> int:
    """Soft-delete ``row`` and every live child item in the caller's transaction.

    Returns the number of items cascaded. The caller commits once so the cascade is
    all-or-nothing.
    """
    if row.id is None:
        raise ValueError("todo_list must be persisted before it can be deleted")
    row.is_deleted = True
    row.deleted_at = now
    row.last_modified = now
    row.is_sync_pending = mark_pending
    if not mark_pending:
        row.last_synced_at = now
    session.add(row)

    items = await list_items(session, int(row.id))
    for item in items:
        soft_delete_item(session, item, now=now, mark_pending=mark_pending)
    await session.flush()
    return len(items)


def soft_delete_item(
    session: AsyncSession, row: TodoItem, *, now: datetime, mark_pending: bool = True
) -> None:
    row.is_deleted = True
    row.deleted_at = now
    row.last_modified = now
    row.is_sync_pending = mark_pending
    if not mark_pending:
        row.last_synced_at = now
    session.add(row)


def restore_row(row: TodoList | TodoItem) -> None:
    row.is_deleted = False
    row.deleted_at = None


async def get_open_conflict(
    session: AsyncSession, *, entity_kind: str, local_id: int
) -> SyncConflict | None:
    result = await session.exec(
        select(SyncConflict)
        .where(SyncConflict.entity_kind == entity_kind)
        .where(SyncConflict.local_id == local_id)
        .where(_c(SyncConflict.resolved_at).is_(None))
        .order_by(_c(SyncConflict.id).desc())
    )
    return result.first()


async def list_open_conflicts(session: AsyncSession) -> list[SyncConflict]:
    result = await session.exec(
        select(SyncConflict)
        .where(_c(SyncConflict.resolved_at).is_(None))
        .order_by(_c(SyncConflict.id).asc())
    )
    return list(result.all())

