from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import pytest

from todo_sync.domain.conflict_resolver import (
    ConflictResolver,
    LIST_ACCESSORS,
    ResolutionStrategy,
    item_conflict_resolver,
    list_conflict_resolver,
    parse_strategy,
)
from todo_sync.errors import ManualResolutionRequired
from todo_sync.integrations.external_todo_api import RemoteItem, RemoteList
from todo_sync.models import TodoItem, TodoList

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
NOW = datetime(2026, 1, 2, 0, 0, tzinfo=timezone.utc)


def _at(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


def _local_list(*, name: str, modified: datetime, synced: datetime | None) -> TodoList:
    return TodoList(
        id=1,
        name=name,
        external_id="r-1",
        last_modified=modified,
        last_synced_at=synced,
        is_sync_pending=True,
    )


def _remote_list(*, name: str, updated: datetime) -> RemoteList:
    return RemoteList(
        remote_id="r-1",
        source_id="remote",
        name=name,
        created_at=T0,
        updated_at=updated,
    )


def test_without_watermark_newer_remote_wins_without_conflict() -> None:
    resolver = list_conflict_resolver(clock=lambda: NOW)
    local = _local_list(name="Old", modified=_at(1), synced=None)
    remote = _remote_list(name="New", updated=_at(2))

    info = resolver.resolve(local, remote, ResolutionStrategy.LOCAL_WINS)
    assert info.has_conflict is False
    assert resolver.apply(local, remote, info) is True
    assert local.name == "New"
    assert local.last_modified == _at(2)
    assert local.last_synced_at == NOW


def test_without_watermark_newer_local_is_kept() -> None:
    resolver = list_conflict_resolver(clock=lambda: NOW)
    local = _local_list(name="Mine", modified=_at(5), synced=None)
    remote = _remote_list(name="Theirs", updated=_at(2))

    info = resolver.resolve(local, remote, ResolutionStrategy.REMOTE_WINS)
    assert info.has_conflict is False
    assert resolver.apply(local, remote, info) is False
    assert local.name == "Mine"
    # still pending: the stamp moves only once the push succeeds
    assert local.last_synced_at is None


def test_synced_local_that_is_current_gets_fresh_stamp() -> None:
    resolver = list_conflict_resolver(clock=lambda: NOW)
    local = _local_list(name="Same", modified=_at(1), synced=_at(1))
    local.is_sync_pending = False
    remote = _remote_list(name="Same", updated=_at(0))

    info = resolver.resolve(local, remote, ResolutionStrategy.REMOTE_WINS)
    assert resolver.apply(local, remote, info) is False
    assert local.last_synced_at == NOW


def test_only_remote_changed_since_sync_is_not_a_conflict() -> None:
    resolver = list_conflict_resolver(clock=lambda: NOW)
    local = _local_list(name="Old", modified=_at(0), synced=_at(1))
    remote = _remote_list(name="New", updated=_at(3))

    info = resolver.resolve(local, remote, ResolutionStrategy.MANUAL)
    assert info.has_conflict is False
    assert resolver.apply(local, remote, info) is True
    assert local.name == "New"


def test_both_changed_same_values_is_not_a_conflict() -> None:
    resolver = list_conflict_resolver(clock=lambda: NOW)
    local = _local_list(name="Same", modified=_at(2), synced=_at(1))
    remote = _remote_list(name="Same", updated=_at(3))

    info = resolver.resolve(local, remote, ResolutionStrategy.MANUAL)
    assert info.has_conflict is False
    assert info.modified_fields == []
    # no ManualResolutionRequired: the sides already agree
    resolver.apply(local, remote, info)


def test_remote_wins_overwrites_local_and_logs(caplog: pytest.LogCaptureFixture) -> None:
    resolver = list_conflict_resolver(clock=lambda: NOW)
    local = _local_list(name="Local", modified=_at(2), synced=_at(1))
    remote = _remote_list(name="Remote", updated=_at(3))

    info = resolver.resolve(local, remote, ResolutionStrategy.REMOTE_WINS)
    assert info.has_conflict is True
    assert info.modified_fields == ["name"]
    assert "remote wins" in info.resolution_reason

    with caplog.at_level(logging.WARNING, logger="todo_sync.domain.conflict_resolver"):
        assert resolver.apply(local, remote, info) is True
    assert local.name == "Remote"
    assert local.last_modified == _at(3)
    assert local.last_synced_at == NOW
    assert any("conflict on todo_list" in r.getMessage() for r in caplog.records)


def test_local_wins_keeps_local_values_and_pending_stamp() -> None:
    resolver = list_conflict_resolver(clock=lambda: NOW)
    local = _local_list(name="Local", modified=_at(4), synced=_at(1))
    remote = _remote_list(name="Remote", updated=_at(3))

    info = resolver.resolve(local, remote, ResolutionStrategy.LOCAL_WINS)
    assert info.has_conflict is True
    assert resolver.apply(local, remote, info) is False
    assert local.name == "Local"
    assert local.last_modified == _at(4)
    assert local.last_synced_at == _at(1)


def test_manual_raises_before_mutating_local() -> None:
    resolver = list_conflict_resolver(clock=lambda: NOW)
    local = _local_list(name="Local", modified=_at(2), synced=_at(1))
    remote = _remote_list(name="Remote", updated=_at(3))

    info = resolver.resolve(local, remote, ResolutionStrategy.MANUAL)
    with pytest.raises(ManualResolutionRequired) as exc_info:
        resolver.apply(local, remote, info)

    assert exc_info.value.conflict is info
    assert exc_info.value.conflict.modified_fields == ["name"]
    assert local.name == "Local"
    assert local.last_modified == _at(2)
    assert local.last_synced_at == _at(1)


def test_item_diff_reports_each_changed_field() -> None:
    resolver = item_conflict_resolver(clock=lambda: NOW)
    local = TodoItem(
        id=7,
        todo_list_id=1,
        external_id="ri-7",
        description="Milk",
        is_completed=False,
        last_modified=_at(2),
        last_synced_at=_at(1),
    )
    remote = RemoteItem(
        remote_id="ri-7",
        source_id="remote",
        description="Oat milk",
        completed=True,
        created_at=T0,
        updated_at=_at(3),
    )

    info = resolver.resolve(local, remote, ResolutionStrategy.REMOTE_WINS)
    assert info.entity_kind == "todo_item"
    assert info.local_id == 7
    assert info.modified_fields == ["description", "completed"]
    assert resolver.apply(local, remote, info) is True
    assert local.description == "Oat milk"
    assert local.is_completed is True


def test_naive_local_timestamps_are_treated_as_utc() -> None:
    resolver = list_conflict_resolver(clock=lambda: NOW)
    local = _local_list(
        name="Local", modified=_at(2).replace(tzinfo=None), synced=_at(1).replace(tzinfo=None)
    )
    remote = _remote_list(name="Remote", updated=_at(3))

    info = resolver.resolve(local, remote, ResolutionStrategy.REMOTE_WINS)
    assert info.has_conflict is True


def test_custom_policy_table_is_pluggable() -> None:
    class AlwaysRemote:
        def should_apply_remote(self, info: object) -> bool:
            return True

        def explain(self, info: object) -> str:
            return "custom"

    resolver = ConflictResolver(
        LIST_ACCESSORS,
        clock=lambda: NOW,
        policies={ResolutionStrategy.MANUAL: AlwaysRemote()},
    )
    local = _local_list(name="Local", modified=_at(2), synced=_at(1))
    remote = _remote_list(name="Remote", updated=_at(3))

    info = resolver.resolve(local, remote, ResolutionStrategy.MANUAL)
    assert info.resolution_reason == "custom"
    assert resolver.apply(local, remote, info) is True


def test_parse_strategy() -> None:
    assert parse_strategy("LOCAL_WINS") is ResolutionStrategy.LOCAL_WINS
    assert parse_strategy(" manual ") is ResolutionStrategy.MANUAL
    assert parse_strategy(ResolutionStrategy.REMOTE_WINS) is ResolutionStrategy.REMOTE_WINS
    with pytest.raises(ValueError):
        parse_strategy("newest_wins")


def test_unflushed_row_is_rejected() -> None:
    resolver = list_conflict_resolver(clock=lambda: NOW)
    local = _local_list(name="Local", modified=_at(2), synced=_at(1))
    local.id = None

    with pytest.raises(ValueError, match="flushed"):
        resolver.resolve(
            local, _remote_list(name="Remote", updated=_at(3)), ResolutionStrategy.REMOTE_WINS
        )
