from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel.ext.asyncio.session import AsyncSession

from todo_sync.db import get_session
from todo_sync.models import TodoItem, TodoList
from todo_sync.schemas_common import OkResponse
from todo_sync.schemas_todo import (
    TodoItemCreateRequest,
    TodoItemOut,
    TodoItemPatchRequest,
    TodoListCreateRequest,
    TodoListListResponse,
    TodoListOut,
    TodoListPatchRequest,
)
from todo_sync.services import todo_service

router = APIRouter(prefix="/todolists", tags=["todo"])


def _item_out(row: TodoItem) -> TodoItemOut:
    if row.id is None:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="todo item id missing")
    return TodoItemOut(
        id=row.id,
        todo_list_id=row.todo_list_id,
        description=row.description,
        completed=row.is_completed,
        external_id=row.external_id,
        last_modified=row.last_modified,
        last_synced_at=row.last_synced_at,
        is_sync_pending=row.is_sync_pending,
    )


def _list_out(row: TodoList, items: list[TodoItem]) -> TodoListOut:
    if row.id is None:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="todo list id missing")
    return TodoListOut(
        id=row.id,
        name=row.name,
        external_id=row.external_id,
        last_modified=row.last_modified,
        last_synced_at=row.last_synced_at,
        is_sync_pending=row.is_sync_pending,
        items=[_item_out(i) for i in items if not i.is_deleted],
    )


@router.get("", response_model=TodoListListResponse)
async def list_todo_lists(session: AsyncSession = Depends(get_session)) -> TodoListListResponse:
    rows = await todo_service.list_lists(session=session)
    return TodoListListResponse(items=[_list_out(row, items) for row, items in rows])


@router.post("", response_model=TodoListOut, status_code=status.HTTP_201_CREATED)
async def create_todo_list(
    payload: TodoListCreateRequest, session: AsyncSession = Depends(get_session)
) -> TodoListOut:
    row, items = await todo_service.create_list(
        session=session,
        name=payload.name,
        items=[(i.description, i.completed) for i in payload.items],
    )
    return _list_out(row, items)


@router.get("/{list_id}", response_model=TodoListOut)
async def get_todo_list(list_id: int, session: AsyncSession = Depends(get_session)) -> TodoListOut:
    row, items = await todo_service.get_list(session=session, list_id=list_id)
    return _list_out(row, items)


@router.patch("/{list_id}", response_model=TodoListOut)
async def patch_todo_list(
    list_id: int, payload: TodoListPatchRequest, session: AsyncSession = Depends(get_session)
) -> TodoListOut:
    await todo_service.rename_list(session=session, list_id=list_id, name=payload.name)
    row, items = await todo_service.get_list(session=session, list_id=list_id)
    return _list_out(row, items)


@router.delete("/{list_id}", response_model=OkResponse)
async def delete_todo_list(list_id: int, session: AsyncSession = Depends(get_session)) -> OkResponse:
    await todo_service.delete_list(session=session, list_id=list_id)
    return OkResponse()


@router.post(
    "/{list_id}/todoitems", response_model=TodoItemOut, status_code=status.HTTP_201_CREATED
)
async def create_todo_item(
    list_id: int, payload: TodoItemCreateRequest, session: AsyncSession = Depends(get_session)
) -> TodoItemOut:
    item = await todo_service.create_item(
        session=session,
        list_id=list_id,
        description=payload.description,
        completed=payload.completed,
    )
    return _item_out(item)


@router.patch("/{list_id}/todoitems/{item_id}", response_model=TodoItemOut)
async def patch_todo_item(
    list_id: int,
    item_id: int,
    payload: TodoItemPatchRequest,
    session: AsyncSession = Depends(get_session),
) -> TodoItemOut:
    item = await todo_service.update_item(
        session=session,
        list_id=list_id,
        item_id=item_id,
        description=payload.description,
        completed=payload.completed,
    )
    return _item_out(item)


@router.delete("/{list_id}/todoitems/{item_id}", response_model=OkResponse)
async def delete_todo_item(
    list_id: int, item_id: int, session: AsyncSession = Depends(get_session)
) -> OkResponse:
    await todo_service.delete_item(session=session, list_id=list_id, item_id=item_id)
    return OkResponse()
