from __future__ import annotations

import logging
from collections.abc import Collection
from datetime import datetime
from typing import Any, cast

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession as SAAsyncSession
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from todo_sync.models import TodoItem, TodoList, as_utc

logger = logging.getLogger(__name__)


def _c(attr: object) -> ColumnElement[Any]:
    return cast(ColumnElement[Any], attr)


def _latest(*values: datetime | None) -> datetime | None:
    present = [as_utc(v) for v in values if v is not None]
    return max(present) if present else None  # type: ignore[type-var]


def _earliest(*values: datetime | None) -> datetime | None:
    present = [as_utc(v) for v in values if v is not None]
    return min(present) if present else None  # type: ignore[type-var]


async def get_last_sync_timestamp(session: AsyncSession) -> datetime | None:
    """Watermark: newest last_synced_at across lists and items."""
    lists_max = (await session.exec(select(func.max(TodoList.last_synced_at)))).one()
    items_max = (await session.exec(select(func.max(TodoItem.last_synced_at)))).one()
    return _latest(lists_max, items_max)


async def is_delta_sync_available(session: AsyncSession) -> bool:
    return await get_last_sync_timestamp(session) is not None


async def update_last_sync_timestamp(
    session: AsyncSession,
    timestamp: datetime,
    *,
    skip_list_ids: Collection[int] = (),
    skip_item_ids: Collection[int] = (),
) -> int:
    """Stamp ``timestamp`` on every remotely-bound row without unpushed local edits.

    Pending rows keep their old stamp so the resolver still sees them as locally
    changed on the next pass; rows waiting on an operator decision are passed in
    ``skip_*_ids`` for the same reason. Returns the number of rows stamped.
    """
    sa_session = cast(SAAsyncSession, session)
    stamped = 0
    for model, skip in ((TodoList, skip_list_ids), (TodoItem, skip_item_ids)):
        stmt = (
            update(model)
            .where(_c(model.external_id).is_not(None))
            .where(_c(model.external_id) != "")
            .where(_c(model.is_sync_pending).is_(False))
        )
        if skip:
            stmt = stmt.where(_c(model.id).not_in(list(skip)))
        result = await sa_session.execute(
            stmt.values(last_synced_at=timestamp).execution_options(synchronize_session="fetch")
        )
        stamped += int(result.rowcount or 0)
    logger.debug("watermark advanced to %s (%d rows stamped)", timestamp.isoformat(), stamped)
    return stamped


async def get_earliest_last_modified(session: AsyncSession) -> datetime | None:
    """Lower bound for bootstrapping a delta sync when nothing has synced yet."""
    lists_min = (await session.exec(select(func.min(TodoList.last_modified)))).one()
    items_min = (await session.exec(select(func.min(TodoItem.last_modified)))).one()
    return _earliest(lists_min, items_min)
