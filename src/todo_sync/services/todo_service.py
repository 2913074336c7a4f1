from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TypeVar

from fastapi import HTTPException, status
from sqlmodel.ext.asyncio.session import AsyncSession

from todo_sync.models import TodoItem, TodoList, utc_now
from todo_sync.repositories import todo_repo
from todo_sync.services import change_tracker

T = TypeVar("T")


async def _in_tx(session: AsyncSession, fn: Callable[[], Awaitable[T]]) -> T:
    try:
        if session.in_transaction():
            out = await fn()
            await session.commit()
            return out
        async with session.begin():
            return await fn()
    except Exception:
        try:
            await session.rollback()
        except Exception:
            pass
        raise


async def _require_list(session: AsyncSession, list_id: int) -> TodoList:
    row = await todo_repo.get_list_active(session, list_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="todo list not found")
    return row


async def _require_item(session: AsyncSession, list_id: int, item_id: int) -> TodoItem:
    row = await todo_repo.get_item(session, item_id)
    if row is None or row.is_deleted or row.todo_list_id != list_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="todo item not found")
    return row


async def list_lists(*, session: AsyncSession) -> list[tuple[TodoList, list[TodoItem]]]:
    lists = await todo_repo.list_lists(session)
    items = await todo_repo.items_by_list(session, [int(x.id) for x in lists if x.id is not None])
    return [(row, items.get(int(row.id or 0), [])) for row in lists]


async def get_list(*, session: AsyncSession, list_id: int) -> tuple[TodoList, list[TodoItem]]:
    row = await _require_list(session, list_id)
    return row, await todo_repo.list_items(session, list_id)


async def create_list(
    *, session: AsyncSession, name: str, items: list[tuple[str, bool]] | None = None
) -> tuple[TodoList, list[TodoItem]]:
    """New lists start pending with no remote id; the next outbound pass creates them."""

    async def _apply() -> tuple[TodoList, list[TodoItem]]:
        now = utc_now()
        row = TodoList(name=name.strip(), last_modified=now, is_sync_pending=True)
        session.add(row)
        await session.flush()
        if row.id is None:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="todo list id missing"
            )

        created: list[TodoItem] = []
        for description, completed in items or []:
            item = TodoItem(
                todo_list_id=int(row.id),
                description=description.strip(),
                is_completed=completed,
                last_modified=now,
                is_sync_pending=True,
            )
            session.add(item)
            created.append(item)
        await session.flush()
        return row, created

    return await _in_tx(session, _apply)


async def rename_list(*, session: AsyncSession, list_id: int, name: str) -> TodoList:
    async def _apply() -> TodoList:
        row = await _require_list(session, list_id)
        row.name = name.strip()
        session.add(row)
        await change_tracker.mark_list_pending(session, list_id)
        return row

    return await _in_tx(session, _apply)


async def delete_list(*, session: AsyncSession, list_id: int) -> None:
    async def _apply() -> None:
        row = await _require_list(session, list_id)
        await todo_repo.soft_delete_list(session, row, now=utc_now(), mark_pending=True)

    await _in_tx(session, _apply)


async def create_item(
    *, session: AsyncSession, list_id: int, description: str, completed: bool = False
) -> TodoItem:
    async def _apply() -> TodoItem:
        await _require_list(session, list_id)
        item = TodoItem(
            todo_list_id=list_id,
            description=description.strip(),
            is_completed=completed,
            is_sync_pending=True,
        )
        session.add(item)
        await session.flush()
        if item.id is None:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="todo item id missing"
            )
        await change_tracker.mark_item_pending(session, int(item.id))
        return item

    return await _in_tx(session, _apply)


async def update_item(
    *,
    session: AsyncSession,
    list_id: int,
    item_id: int,
    description: str | None,
    completed: bool | None,
) -> TodoItem:
    async def _apply() -> TodoItem:
        await _require_list(session, list_id)
        item = await _require_item(session, list_id, item_id)
        if description is not None:
            item.description = description.strip()
        if completed is not None:
            item.is_completed = completed
        session.add(item)
        await change_tracker.mark_item_pending(session, item_id)
        return item

    return await _in_tx(session, _apply)


async def delete_item(*, session: AsyncSession, list_id: int, item_id: int) -> None:
    async def _apply() -> None:
        await _require_list(session, list_id)
        item = await _require_item(session, list_id, item_id)
        now = utc_now()
        todo_repo.soft_delete_item(session, item, now=now, mark_pending=True)
        await change_tracker.mark_item_pending(session, item_id, now=now)

    await _in_tx(session, _apply)
