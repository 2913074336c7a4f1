from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class TodoItemCreateRequest(BaseModel):
    description: str = Field(min_length=1, max_length=2000)
    completed: bool = False


class TodoItemPatchRequest(BaseModel):
    description: Optional[str] = Field(default=None, min_length=1, max_length=2000)
    completed: Optional[bool] = None


class TodoListCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    items: list[TodoItemCreateRequest] = Field(default_factory=list)


class TodoListPatchRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)


class TodoItemOut(BaseModel):
    id: int
    todo_list_id: int
    description: str
    completed: bool
    external_id: Optional[str] = None
    last_modified: datetime
    last_synced_at: Optional[datetime] = None
    is_sync_pending: bool


class TodoListOut(BaseModel):
    id: int
    name: str
    external_id: Optional[str] = None
    last_modified: datetime
    last_synced_at: Optional[datetime] = None
    is_sync_pending: bool
    items: list[TodoItemOut] = Field(default_factory=list)


class TodoListListResponse(BaseModel):
    items: list[TodoListOut]
