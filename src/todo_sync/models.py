# basedpyright: reportAssignmentType=false
# basedpyright: reportIncompatibleVariableOverride=false

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Column, Text
from sqlalchemy.types import JSON as SAJSON
from sqlalchemy.types import DateTime, TypeDecorator
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Return an aware UTC datetime (naive values are taken as UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator[datetime]):
    """Stores naive UTC, always loads aware UTC.

    SQLite drops tzinfo on the way back, which would make comparisons against remote
    timestamps raise TypeError.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                value = value.astimezone(timezone.utc)
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if isinstance(value, datetime):
            return as_utc(value)
        return value


class SyncTrackedRow(SQLModel):
    # 同步元数据：external_id 一旦写入即稳定；软删除行永久保留（墓碑）
    external_id: Optional[str] = Field(default=None, index=True, unique=True, max_length=64)
    last_modified: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime, index=True)
    last_synced_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime, index=True)
    is_sync_pending: bool = Field(default=True, index=True)
    is_deleted: bool = Field(default=False, index=True)
    deleted_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class TodoList(SyncTrackedRow, table=True):
    __tablename__ = "todo_lists"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(min_length=1, max_length=200)


class TodoItem(SyncTrackedRow, table=True):
    __tablename__ = "todo_items"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    id: Optional[int] = Field(default=None, primary_key=True)
    todo_list_id: int = Field(index=True, foreign_key="todo_lists.id")
    description: str = Field(default="", max_length=2000)
    is_completed: bool = Field(default=False)


class SyncConflict(SQLModel, table=True):
    """A conflict that needs an operator decision (manual strategy)."""

    __tablename__ = "sync_conflicts"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    id: Optional[int] = Field(default=None, primary_key=True)

    entity_kind: str = Field(index=True, max_length=20)  # todo_list / todo_item
    local_id: int = Field(index=True)
    remote_id: str = Field(max_length=64)

    modified_fields: list[str] = Field(default_factory=list, sa_column=Column(SAJSON))
    local_last_modified: datetime = Field(sa_type=UTCDateTime)
    remote_last_modified: datetime = Field(sa_type=UTCDateTime)
    last_synced_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    reason: str = Field(default="", sa_column=Column(Text, nullable=False))

    # Operator decision: local_wins / remote_wins; applied on the next inbound pass.
    resolution: Optional[str] = Field(default=None, max_length=20)
    resolved_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime, index=True)

    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime, index=True)
    updated_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)
