from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Generic, Literal, Protocol, TypeVar

from todo_sync.errors import ManualResolutionRequired
from todo_sync.integrations.external_todo_api import RemoteItem, RemoteList
from todo_sync.models import TodoItem, TodoList, as_utc, utc_now

logger = logging.getLogger(__name__)

EntityKind = Literal["todo_list", "todo_item"]

L = TypeVar("L")
R = TypeVar("R")


class ResolutionStrategy(str, Enum):
    REMOTE_WINS = "remote_wins"
    LOCAL_WINS = "local_wins"
    MANUAL = "manual"


def parse_strategy(value: str | ResolutionStrategy) -> ResolutionStrategy:
    if isinstance(value, ResolutionStrategy):
        return value
    return ResolutionStrategy((value or "").strip().lower())


@dataclass
class ConflictInfo:
    entity_kind: EntityKind
    local_id: int
    remote_id: str
    local_last_modified: datetime
    remote_last_modified: datetime
    last_synced_at: datetime | None
    strategy: ResolutionStrategy
    modified_fields: list[str] = field(default_factory=list)
    has_conflict: bool = False
    resolution_reason: str = ""

    @property
    def remote_is_newer(self) -> bool:
        return self.remote_last_modified > self.local_last_modified


class ResolutionPolicy(Protocol):
    def should_apply_remote(self, info: ConflictInfo) -> bool: ...

    def explain(self, info: ConflictInfo) -> str: ...


def _fields(info: ConflictInfo) -> str:
    return ", ".join(info.modified_fields)


class RemoteWinsPolicy:
    def should_apply_remote(self, info: ConflictInfo) -> bool:
        return True

    def explain(self, info: ConflictInfo) -> str:
        return f"remote wins: overwrote local changes to [{_fields(info)}]"


class LocalWinsPolicy:
    def should_apply_remote(self, info: ConflictInfo) -> bool:
        return False

    def explain(self, info: ConflictInfo) -> str:
        return f"local wins: kept local values for [{_fields(info)}]"


class ManualPolicy:
    def should_apply_remote(self, info: ConflictInfo) -> bool:
        raise ManualResolutionRequired(info)

    def explain(self, info: ConflictInfo) -> str:
        return (
            f"manual resolution required: both sides changed [{_fields(info)}] "
            f"since {info.last_synced_at.isoformat() if info.last_synced_at else 'never'}"
        )


STRATEGY_POLICIES: dict[ResolutionStrategy, ResolutionPolicy] = {
    ResolutionStrategy.REMOTE_WINS: RemoteWinsPolicy(),
    ResolutionStrategy.LOCAL_WINS: LocalWinsPolicy(),
    ResolutionStrategy.MANUAL: ManualPolicy(),
}


@dataclass(frozen=True)
class EntityAccessors(Generic[L, R]):
    """Entity-specific glue for the shared resolve/apply skeleton."""

    kind: EntityKind
    local_id: Callable[[L], int]
    remote_id: Callable[[R], str]
    local_modified: Callable[[L], datetime]
    remote_modified: Callable[[R], datetime]
    last_synced_at: Callable[[L], datetime | None]
    is_pending: Callable[[L], bool]
    diff_fields: Callable[[L, R], list[str]]
    # Copies payload fields and sets last_modified = remote.updated_at.
    apply_remote_values: Callable[[L, R], None]
    refresh_sync_timestamp: Callable[[L, datetime], None]


class ConflictResolver(Generic[L, R]):
    """Detects divergence between a local row and its remote copy and applies a winner.

    A conflict exists only when both sides changed after the last sync watermark and at
    least one payload field differs. Without a watermark there is nothing to compare
    against, so the newer side wins outright.
    """

    def __init__(
        self,
        accessors: EntityAccessors[L, R],
        *,
        clock: Callable[[], datetime] = utc_now,
        policies: dict[ResolutionStrategy, ResolutionPolicy] | None = None,
    ) -> None:
        self.accessors = accessors
        self._clock = clock
        self._policies = policies or STRATEGY_POLICIES

    def resolve(self, local: L, remote: R, strategy: ResolutionStrategy) -> ConflictInfo:
        a = self.accessors
        local_modified = as_utc(a.local_modified(local))
        remote_modified = as_utc(a.remote_modified(remote))
        synced = as_utc(a.last_synced_at(local))
        if local_modified is None or remote_modified is None:
            raise ValueError(f"{a.kind} local_id={a.local_id(local)} is missing last_modified")

        info = ConflictInfo(
            entity_kind=a.kind,
            local_id=a.local_id(local),
            remote_id=a.remote_id(remote),
            local_last_modified=local_modified,
            remote_last_modified=remote_modified,
            last_synced_at=synced,
            strategy=strategy,
            modified_fields=a.diff_fields(local, remote),
        )

        info.has_conflict = (
            synced is not None
            and local_modified > synced
            and remote_modified > synced
            and bool(info.modified_fields)
        )
        if info.has_conflict:
            info.resolution_reason = self._policies[strategy].explain(info)
        elif info.remote_is_newer:
            info.resolution_reason = "no conflict: remote is newer"
        else:
            info.resolution_reason = "no conflict: local is current"
        return info

    def apply(self, local: L, remote: R, info: ConflictInfo) -> bool:
        """Mutate ``local`` according to ``info``; return True if remote values were copied.

        Raises ManualResolutionRequired (before touching ``local``) for a conflict under
        the manual strategy.
        """
        a = self.accessors
        if info.has_conflict:
            apply_remote = self._policies[info.strategy].should_apply_remote(info)
            logger.warning(
                "conflict on %s local_id=%s remote_id=%s fields=%s: %s",
                info.entity_kind,
                info.local_id,
                info.remote_id,
                info.modified_fields,
                info.resolution_reason,
            )
        else:
            apply_remote = info.remote_is_newer

        if apply_remote:
            a.apply_remote_values(local, remote)
        # A pending row keeps its old stamp until the push succeeds.
        if apply_remote or not a.is_pending(local):
            a.refresh_sync_timestamp(local, self._clock())
        return apply_remote


def _diff_list(local: TodoList, remote: RemoteList) -> list[str]:
    return ["name"] if local.name != remote.name else []


def _apply_list(local: TodoList, remote: RemoteList) -> None:
    local.name = remote.name
    local.last_modified = remote.updated_at


def _diff_item(local: TodoItem, remote: RemoteItem) -> list[str]:
    fields: list[str] = []
    if local.description != remote.description:
        fields.append("description")
    if bool(local.is_completed) != remote.completed:
        fields.append("completed")
    return fields


def _apply_item(local: TodoItem, remote: RemoteItem) -> None:
    local.description = remote.description
    local.is_completed = remote.completed
    local.last_modified = remote.updated_at


def _refresh(row: TodoList | TodoItem, now: datetime) -> None:
    row.last_synced_at = now


def _row_id(row: TodoList | TodoItem) -> int:
    if row.id is None:
        raise ValueError("row must be flushed before conflict resolution")
    return int(row.id)


LIST_ACCESSORS: EntityAccessors[TodoList, RemoteList] = EntityAccessors(
    kind="todo_list",
    local_id=_row_id,
    remote_id=lambda r: r.remote_id,
    local_modified=lambda l: l.last_modified,
    remote_modified=lambda r: r.updated_at,
    last_synced_at=lambda l: l.last_synced_at,
    is_pending=lambda l: bool(l.is_sync_pending),
    diff_fields=_diff_list,
    apply_remote_values=_apply_list,
    refresh_sync_timestamp=_refresh,
)

ITEM_ACCESSORS: EntityAccessors[TodoItem, RemoteItem] = EntityAccessors(
    kind="todo_item",
    local_id=_row_id,
    remote_id=lambda r: r.remote_id,
    local_modified=lambda i: i.last_modified,
    remote_modified=lambda r: r.updated_at,
    last_synced_at=lambda i: i.last_synced_at,
    is_pending=lambda i: bool(i.is_sync_pending),
    diff_fields=_diff_item,
    apply_remote_values=_apply_item,
    refresh_sync_timestamp=_refresh,
)


def list_conflict_resolver(
    *, clock: Callable[[], datetime] = utc_now
) -> ConflictResolver[TodoList, RemoteList]:
    return ConflictResolver(LIST_ACCESSORS, clock=clock)


def item_conflict_resolver(
    *, clock: Callable[[], datetime] = utc_now
) -> ConflictResolver[TodoItem, RemoteItem]:
    return ConflictResolver(ITEM_ACCESSORS, clock=clock)
