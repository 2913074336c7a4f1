"""Outbound / inbound / bidirectional sync passes against the remote todo API.

Unit of work: every list (with its items) is loaded and committed in its own session,
so a pass that dies halfway leaves processed rows cleared and the rest still pending.
Remote calls happen before local mutations; a failed call therefore leaves nothing
to roll back and the entity simply stays pending for the next pass.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal

from sqlmodel.ext.asyncio.session import AsyncSession

from todo_sync.db import session_scope
from todo_sync.domain.conflict_resolver import (
    ConflictInfo,
    ConflictResolver,
    ResolutionStrategy,
    item_conflict_resolver,
    list_conflict_resolver,
    parse_strategy,
)
from todo_sync.errors import (
    CircuitOpenError,
    DeserializationError,
    EntityVanishedError,
    ExternalApiError,
    ManualResolutionRequired,
    RemoteNotFoundError,
    TransientNetworkError,
)
from todo_sync.integrations.external_todo_api import (
    ExternalTodoAPI,
    NewRemoteItem,
    RemoteItem,
    RemoteList,
)
from todo_sync.models import SyncConflict, TodoItem, TodoList, utc_now
from todo_sync.repositories import todo_repo
from todo_sync.services import change_tracker, sync_state_service

logger = logging.getLogger(__name__)

SyncMode = Literal["outbound", "inbound", "full"]
SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

# Failures that stay scoped to one entity; anything else aborts the pass.
ENTITY_ERRORS: tuple[type[Exception], ...] = (
    TransientNetworkError,
    CircuitOpenError,
    ExternalApiError,
    DeserializationError,
    EntityVanishedError,
)


@dataclass(frozen=True)
class EntityFailure:
    entity_kind: str
    local_id: int | None
    remote_id: str | None
    error: str
    message: str


@dataclass
class OutboundSummary:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    failures: list[EntityFailure] = field(default_factory=list)


@dataclass
class InboundSummary:
    delta: bool = False
    fetched: int = 0
    filtered: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    restored: int = 0
    conflicts: int = 0
    manual_conflicts: int = 0
    failures: list[EntityFailure] = field(default_factory=list)

    @property
    def changes(self) -> int:
        return self.created + self.updated + self.deleted + self.restored


@dataclass
class SyncRunResult:
    mode: SyncMode
    ok: bool
    started_at: datetime
    finished_at: datetime | None = None
    outbound: OutboundSummary | None = None
    inbound: InboundSummary | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class _ConflictIndex:
    """Open manual conflicts of the current pass, keyed by (entity kind, local id)."""

    open_rows: dict[tuple[str, int], SyncConflict] = field(default_factory=dict)

    def is_open(self, kind: str, local_id: int | None) -> bool:
        return local_id is not None and (kind, local_id) in self.open_rows

    def decision(self, kind: str, local_id: int) -> SyncConflict | None:
        row = self.open_rows.get((kind, local_id))
        if row is None or not row.resolution:
            return None
        return row

    def local_ids(self, kind: str) -> set[int]:
        return {local_id for (k, local_id) in self.open_rows if k == kind}

    def remote_ids(self) -> set[str]:
        return {row.remote_id for row in self.open_rows.values()}


def _local_id(row: TodoList | TodoItem) -> int:
    if row.id is None:
        kind = "todo_item" if isinstance(row, TodoItem) else "todo_list"
        raise EntityVanishedError(f"{kind} row has no local id")
    return int(row.id)


def _failure(
    kind: str, local_id: int | None, remote_id: str | None, exc: BaseException
) -> EntityFailure:
    return EntityFailure(
        entity_kind=kind,
        local_id=local_id,
        remote_id=remote_id,
        error=type(exc).__name__,
        message=str(exc),
    )


def _bind_created_items(
    local_items: list[TodoItem], remote_items: list[RemoteItem]
) -> list[tuple[TodoItem, RemoteItem]]:
    """Pair pushed items with the ids the remote assigned: by position, else by description."""
    if len(local_items) == len(remote_items) and all(
        li.description == ri.description for li, ri in zip(local_items, remote_items)
    ):
        return list(zip(local_items, remote_items))

    pool = list(remote_items)
    pairs: list[tuple[TodoItem, RemoteItem]] = []
    for li in local_items:
        match = next((ri for ri in pool if ri.description == li.description), None)
        if match is None:
            continue
        pool.remove(match)
        pairs.append((li, match))
    return pairs


class SyncOrchestrator:
    def __init__(
        self,
        *,
        api: ExternalTodoAPI,
        strategy: ResolutionStrategy | str = ResolutionStrategy.REMOTE_WINS,
        session_factory: SessionFactory = session_scope,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._api = api
        self._strategy = parse_strategy(strategy)
        self._session_factory = session_factory
        self._clock = clock

    async def run(self, mode: SyncMode) -> SyncRunResult:
        if mode == "outbound":
            return await self.run_outbound()
        if mode == "inbound":
            return await self.run_inbound()
        if mode == "full":
            return await self.run_full()
        raise ValueError(f"unknown sync mode: {mode}")

    async def run_outbound(self) -> SyncRunResult:
        result = SyncRunResult(mode="outbound", ok=True, started_at=self._clock())
        result.outbound = await self._outbound()
        result.finished_at = self._clock()
        return result

    async def run_inbound(self) -> SyncRunResult:
        result = SyncRunResult(mode="inbound", ok=True, started_at=self._clock())
        result.inbound = await self._inbound(await self._watermark())
        result.finished_at = self._clock()
        return result

    async def run_full(self) -> SyncRunResult:
        """Outbound to completion, then inbound.

        The delta cutoff is read before the outbound pass: pushes stamp last_synced_at
        and would otherwise hide remote edits made since the previous inbound pass.
        """
        result = SyncRunResult(mode="full", ok=True, started_at=self._clock())
        cutoff = await self._watermark()
        result.outbound = await self._outbound()
        result.inbound = await self._inbound(cutoff)
        result.finished_at = self._clock()
        return result

    async def _watermark(self) -> datetime | None:
        async with self._session_factory() as session:
            return await sync_state_service.get_last_sync_timestamp(session)

    async def _load_conflicts(self) -> _ConflictIndex:
        async with self._session_factory() as session:
            rows = await todo_repo.list_open_conflicts(session)
        index = _ConflictIndex()
        for row in rows:
            index.open_rows[(row.entity_kind, row.local_id)] = row
        return index

    # ---------------------------------------------------------------- outbound

    async def _outbound(self) -> OutboundSummary:
        summary = OutboundSummary()
        conflicts = await self._load_conflicts()
        async with self._session_factory() as session:
            list_ids = await todo_repo.pending_list_ids(session)
        logger.info("outbound sync: %d list(s) with pending changes", len(list_ids))

        for list_id in list_ids:
            await self._push_list(list_id, summary, conflicts)

        logger.info(
            "outbound sync finished: created=%d updated=%d deleted=%d skipped=%d failed=%d",
            summary.created,
            summary.updated,
            summary.deleted,
            summary.skipped,
            len(summary.failures),
        )
        return summary

    async def _push_list(
        self, list_id: int, summary: OutboundSummary, conflicts: _ConflictIndex
    ) -> None:
        async with self._session_factory() as session:
            try:
                row = await self._load_list(session, list_id)
            except EntityVanishedError as e:
                logger.debug("%s; skipping push", e)
                return
            remote_id = row.external_id
            try:
                if row.is_deleted:
                    if conflicts.is_open("todo_list", list_id):
                        summary.skipped += 1
                        return
                    await self._push_list_delete(session, row, summary)
                elif not remote_id:
                    await self._push_list_create(session, row, summary)
                else:
                    await self._push_list_changes(session, row, remote_id, summary, conflicts)
            except ENTITY_ERRORS as e:
                logger.error(
                    "outbound todo_list local_id=%s remote_id=%s failed: %s",
                    list_id,
                    remote_id,
                    e,
                )
                summary.failures.append(_failure("todo_list", list_id, remote_id, e))

    @staticmethod
    async def _load_list(session: AsyncSession, list_id: int) -> TodoList:
        row = await todo_repo.get_list(session, list_id)
        if row is None:
            raise EntityVanishedError(f"todo_list local_id={list_id} no longer exists")
        return row

    async def _push_list_delete(
        self, session: AsyncSession, row: TodoList, summary: OutboundSummary
    ) -> None:
        list_id = _local_id(row)
        now = self._clock()
        # A tombstone that is not pending came from the remote side: nothing to delete there.
        if row.external_id and row.is_sync_pending:
            try:
                await self._api.delete_todo_list(remote_id=row.external_id)
            except RemoteNotFoundError:
                logger.info(
                    "todo_list remote_id=%s already gone remotely; treating delete as done",
                    row.external_id,
                )
            summary.deleted += 1
            row.last_synced_at = now
        row.is_sync_pending = False
        session.add(row)

        # Remote items went with the list.
        for item in await todo_repo.list_items(session, list_id, include_deleted=True):
            if item.is_sync_pending:
                item.is_sync_pending = False
                if item.external_id:
                    item.last_synced_at = now
                session.add(item)
        await session.commit()

    async def _push_list_create(
        self, session: AsyncSession, row: TodoList, summary: OutboundSummary
    ) -> None:
        all_items = await todo_repo.list_items(session, _local_id(row), include_deleted=True)
        live = [i for i in all_items if not i.is_deleted]

        created = await self._api.create_todo_list(
            name=row.name,
            items=[NewRemoteItem(description=i.description, completed=i.is_completed) for i in live],
        )
        now = self._clock()
        row.external_id = created.remote_id
        row.is_sync_pending = False
        row.last_synced_at = now
        session.add(row)

        pairs = _bind_created_items(live, created.items)
        bound = {id(li) for li, _ in pairs}
        for li, ri in pairs:
            li.external_id = ri.remote_id
            li.is_sync_pending = False
            li.last_synced_at = now
            session.add(li)
        for item in all_items:
            if id(item) in bound:
                continue
            if not item.is_deleted:
                logger.warning(
                    "todo_item local_id=%s was not echoed by the remote create of todo_list remote_id=%s",
                    item.id,
                    created.remote_id,
                )
            # 远端没有对应条目，也就没有可推送的内容
            item.is_sync_pending = False
            session.add(item)

        await session.commit()
        summary.created += 1
        logger.info(
            "created todo_list local_id=%s remotely as remote_id=%s with %d item(s)",
            row.id,
            created.remote_id,
            len(pairs),
        )

    async def _push_list_changes(
        self,
        session: AsyncSession,
        row: TodoList,
        list_remote_id: str,
        summary: OutboundSummary,
        conflicts: _ConflictIndex,
    ) -> None:
        list_id = _local_id(row)

        for item in await todo_repo.list_items(session, list_id, include_deleted=True):
            if not item.is_sync_pending:
                continue
            if conflicts.is_open("todo_item", item.id):
                summary.skipped += 1
                continue
            item_id, item_remote_id = item.id, item.external_id
            try:
                await self._push_item(session, list_remote_id, item, summary)
            except ENTITY_ERRORS as e:
                logger.error(
                    "outbound todo_item local_id=%s remote_id=%s failed: %s",
                    item_id,
                    item_remote_id,
                    e,
                )
                summary.failures.append(_failure("todo_item", item_id, item_remote_id, e))
                continue
            await session.commit()

        if not row.is_sync_pending:
            return
        if conflicts.is_open("todo_list", list_id):
            summary.skipped += 1
            return

        # Item edits flag the parent too; only push the name when the list itself changed.
        if row.last_synced_at is None or row.last_modified > row.last_synced_at:
            updated = await self._api.update_todo_list(remote_id=list_remote_id, name=row.name)
            row.last_modified = updated.updated_at
            summary.updated += 1
        await change_tracker.clear_list_pending_flag(session, list_id, now=self._clock())
        await session.commit()

    async def _push_item(
        self, session: AsyncSession, list_remote_id: str, item: TodoItem, summary: OutboundSummary
    ) -> None:
        now = self._clock()
        if item.is_deleted:
            if item.external_id:
                try:
                    await self._api.delete_todo_item(
                        list_remote_id=list_remote_id, item_remote_id=item.external_id
                    )
                except RemoteNotFoundError:
                    logger.info(
                        "todo_item remote_id=%s already gone remotely; treating delete as done",
                        item.external_id,
                    )
                summary.deleted += 1
                item.last_synced_at = now
            item.is_sync_pending = False
        elif item.external_id:
            updated = await self._api.update_todo_item(
                list_remote_id=list_remote_id,
                item_remote_id=item.external_id,
                description=item.description,
                completed=item.is_completed,
            )
            item.last_modified = updated.updated_at
            await change_tracker.clear_item_pending_flag(session, _local_id(item), now=now)
            summary.updated += 1
        else:
            # The remote API can only create items together with a new list.
            logger.warning(
                "todo_item local_id=%s added to already-synced todo_list remote_id=%s stays local-only",
                item.id,
                list_remote_id,
            )
            item.is_sync_pending = False
        session.add(item)

    # ----------------------------------------------------------------- inbound

    async def _inbound(self, cutoff: datetime | None) -> InboundSummary:
        summary = InboundSummary(delta=cutoff is not None)
        # Stamps of this pass use the fetch time so later remote edits stay above the watermark.
        fetched_at = self._clock()
        remote_lists = await self._api.list_todo_lists()
        summary.fetched = len(remote_lists)

        conflicts = await self._load_conflicts()
        pinned = conflicts.remote_ids()
        list_resolver = list_conflict_resolver(clock=lambda: fetched_at)
        item_resolver = item_conflict_resolver(clock=lambda: fetched_at)

        logger.info(
            "inbound sync: %d remote list(s), delta=%s cutoff=%s",
            len(remote_lists),
            summary.delta,
            cutoff.isoformat() if cutoff else None,
        )

        for remote in remote_lists:
            touches_conflict = remote.remote_id in pinned or any(
                i.remote_id in pinned for i in remote.items
            )
            if cutoff is not None and remote.latest_update() <= cutoff and not touches_conflict:
                summary.filtered += 1
                continue
            await self._pull_list(remote, summary, conflicts, list_resolver, item_resolver, fetched_at)

        await self._reconcile_deleted(remote_lists, summary, fetched_at)

        if summary.changes > 0:
            async with self._session_factory() as session:
                await sync_state_service.update_last_sync_timestamp(
                    session,
                    fetched_at,
                    skip_list_ids=conflicts.local_ids("todo_list"),
                    skip_item_ids=conflicts.local_ids("todo_item"),
                )
                await session.commit()

        logger.info(
            "inbound sync finished: created=%d updated=%d deleted=%d restored=%d "
            "conflicts=%d manual=%d filtered=%d",
            summary.created,
            summary.updated,
            summary.deleted,
            summary.restored,
            summary.conflicts,
            summary.manual_conflicts,
            summary.filtered,
        )
        return summary

    async def _pull_list(
        self,
        remote: RemoteList,
        summary: InboundSummary,
        conflicts: _ConflictIndex,
        list_resolver: ConflictResolver[TodoList, RemoteList],
        item_resolver: ConflictResolver[TodoItem, RemoteItem],
        now: datetime,
    ) -> None:
        async with self._session_factory() as session:
            local = await todo_repo.get_list_by_external_id(session, remote.remote_id)
            if local is None:
                created = await self._create_mirror(session, remote, now)
                await session.commit()
                summary.created += created
                return

            if local.is_deleted:
                if local.is_sync_pending:
                    logger.debug(
                        "todo_list local_id=%s deleted locally, delete not pushed yet; skipping remote copy",
                        local.id,
                    )
                    return
                self._restore(local, name=remote.name, remote_updated_at=remote.updated_at, now=now)
                session.add(local)
                summary.restored += 1
                logger.info("restored todo_list local_id=%s from remote_id=%s", local.id, remote.remote_id)
            else:
                await self._resolve(session, list_resolver, local, remote, summary, conflicts, now)

            local_list_id = _local_id(local)
            local_items = await todo_repo.list_items(session, local_list_id, include_deleted=True)
            by_remote_id = {i.external_id: i for i in local_items if i.external_id}
            for remote_item in remote.items:
                item = by_remote_id.get(remote_item.remote_id)
                if item is None:
                    await self._create_item_mirror(session, local_list_id, remote_item, now)
                    summary.created += 1
                elif item.is_deleted:
                    if item.is_sync_pending:
                        continue
                    self._restore(item, remote_updated_at=remote_item.updated_at, now=now)
                    item.description = remote_item.description
                    item.is_completed = remote_item.completed
                    session.add(item)
                    summary.restored += 1
                else:
                    await self._resolve(session, item_resolver, item, remote_item, summary, conflicts, now)

            await session.commit()

    async def _resolve(
        self,
        session: AsyncSession,
        resolver: ConflictResolver[Any, Any],
        local: TodoList | TodoItem,
        remote: RemoteList | RemoteItem,
        summary: InboundSummary,
        conflicts: _ConflictIndex,
        now: datetime,
    ) -> None:
        kind = resolver.accessors.kind
        local_id = _local_id(local)

        decision = conflicts.decision(kind, local_id)
        strategy = self._strategy
        if decision is not None and decision.resolution:
            strategy = parse_strategy(decision.resolution)

        info = resolver.resolve(local, remote, strategy)
        if info.has_conflict:
            summary.conflicts += 1
        try:
            applied = resolver.apply(local, remote, info)
        except ManualResolutionRequired as e:
            summary.manual_conflicts += 1
            logger.error(
                "manual resolution required for %s local_id=%s remote_id=%s fields=%s",
                kind,
                local_id,
                info.remote_id,
                info.modified_fields,
            )
            queued = await self._queue_conflict(session, e.conflict, now)
            conflicts.open_rows.setdefault((kind, local_id), queued)
            summary.failures.append(_failure(kind, local_id, info.remote_id, e))
            return

        if applied:
            # Local now equals remote: nothing left to push.
            local.is_sync_pending = False
            summary.updated += 1
        elif info.has_conflict:
            # Local kept its values; push them so both sides converge.
            if isinstance(local, TodoItem):
                await change_tracker.mark_item_pending(session, local_id)
            else:
                await change_tracker.mark_list_pending(session, local_id)
        session.add(local)

        open_row = conflicts.open_rows.pop((kind, local_id), None)
        if open_row is not None and open_row.id is not None:
            await self._close_conflict(session, int(open_row.id), info, now)

    async def _queue_conflict(
        self, session: AsyncSession, info: ConflictInfo, now: datetime
    ) -> SyncConflict:
        row = await todo_repo.get_open_conflict(
            session, entity_kind=info.entity_kind, local_id=info.local_id
        )
        if row is None:
            row = SyncConflict(
                entity_kind=info.entity_kind,
                local_id=info.local_id,
                remote_id=info.remote_id,
                local_last_modified=info.local_last_modified,
                remote_last_modified=info.remote_last_modified,
                created_at=now,
            )
        elif (
            list(row.modified_fields or []) == list(info.modified_fields)
            and row.local_last_modified == info.local_last_modified
            and row.remote_last_modified == info.remote_last_modified
            and row.last_synced_at == info.last_synced_at
            and row.reason == info.resolution_reason
        ):
            # unchanged since the last pass
            return row
        row.modified_fields = list(info.modified_fields)
        row.local_last_modified = info.local_last_modified
        row.remote_last_modified = info.remote_last_modified
        row.last_synced_at = info.last_synced_at
        row.reason = info.resolution_reason
        row.updated_at = now
        session.add(row)
        return row

    async def _close_conflict(
        self, session: AsyncSession, conflict_id: int, info: ConflictInfo, now: datetime
    ) -> None:
        row = await session.get(SyncConflict, conflict_id)
        if row is None:
            return
        if not row.resolution:
            # 冲突已自行消失（例如一侧回滚了修改）
            row.resolution = "superseded"
        row.resolved_at = now
        row.updated_at = now
        session.add(row)
        logger.info(
            "conflict id=%s on %s local_id=%s closed with %s",
            conflict_id,
            info.entity_kind,
            info.local_id,
            row.resolution,
        )

    async def _create_mirror(self, session: AsyncSession, remote: RemoteList, now: datetime) -> int:
        row = TodoList(
            name=remote.name,
            external_id=remote.remote_id,
            last_modified=remote.updated_at,
            last_synced_at=now,
            is_sync_pending=False,
        )
        session.add(row)
        await session.flush()
        list_id = _local_id(row)
        for remote_item in remote.items:
            await self._create_item_mirror(session, list_id, remote_item, now)
        logger.info(
            "mirrored remote todo_list remote_id=%s as local_id=%s (%d item(s))",
            remote.remote_id,
            row.id,
            len(remote.items),
        )
        return 1 + len(remote.items)

    async def _create_item_mirror(
        self, session: AsyncSession, list_id: int, remote: RemoteItem, now: datetime
    ) -> None:
        existing = await todo_repo.get_item_by_external_id(session, remote.remote_id)
        if existing is not None:
            # Same remote id already bound under another local list.
            logger.warning(
                "todo_item remote_id=%s moved to local list %s (was %s)",
                remote.remote_id,
                list_id,
                existing.todo_list_id,
            )
            existing.todo_list_id = list_id
            self._restore(existing, remote_updated_at=remote.updated_at, now=now)
            existing.description = remote.description
            existing.is_completed = remote.completed
            existing.is_sync_pending = False
            session.add(existing)
            return
        session.add(
            TodoItem(
                todo_list_id=list_id,
                external_id=remote.remote_id,
                description=remote.description,
                is_completed=remote.completed,
                last_modified=remote.updated_at,
                last_synced_at=now,
                is_sync_pending=False,
            )
        )

    @staticmethod
    def _restore(
        row: TodoList | TodoItem,
        *,
        remote_updated_at: datetime,
        now: datetime,
        name: str | None = None,
    ) -> None:
        todo_repo.restore_row(row)
        if name is not None and isinstance(row, TodoList):
            row.name = name
        row.last_modified = remote_updated_at
        row.last_synced_at = now

    async def _reconcile_deleted(
        self, remote_lists: list[RemoteList], summary: InboundSummary, now: datetime
    ) -> None:
        """Soft-delete local rows whose remote counterpart is gone."""
        remote_ids = {r.remote_id for r in remote_lists}
        remote_items = {r.remote_id: {i.remote_id for i in r.items} for r in remote_lists}

        async with self._session_factory() as session:
            for row in await todo_repo.find_orphaned_lists(session, remote_ids):
                if row.is_sync_pending:
                    logger.warning(
                        "todo_list local_id=%s remote_id=%s was deleted remotely; discarding unpushed local changes",
                        row.id,
                        row.external_id,
                    )
                cascaded = await todo_repo.soft_delete_list(session, row, now=now, mark_pending=False)
                await session.commit()
                summary.deleted += 1 + cascaded
                logger.info(
                    "todo_list local_id=%s remote_id=%s deleted remotely; soft-deleted locally with %d item(s)",
                    row.id,
                    row.external_id,
                    cascaded,
                )

            for item, list_remote_id in await todo_repo.live_bound_items(session):
                ids = remote_items.get(list_remote_id)
                if ids is None or item.external_id in ids:
                    continue
                todo_repo.soft_delete_item(session, item, now=now, mark_pending=False)
                await session.commit()
                summary.deleted += 1
                logger.info(
                    "todo_item local_id=%s remote_id=%s deleted remotely; soft-deleted locally",
                    item.id,
                    item.external_id,
                )
