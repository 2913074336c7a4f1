from __future__ import annotations

import dataclasses
import itertools
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from todo_sync.config import settings
from todo_sync.db import dispose_engine, dispose_engine_cache, init_db, reset_engine_cache
from todo_sync.errors import RemoteNotFoundError
from todo_sync.integrations.external_todo_api import NewRemoteItem, RemoteItem, RemoteList
from todo_sync.models import utc_now


@pytest.fixture
def anyio_backend() -> str:
    # The service is asyncio-only (asyncio tasks, SQLAlchemy asyncio engine).
    return "asyncio"


@pytest.fixture(autouse=True)
async def _dispose_engine_per_test(  # pyright: ignore[reportUnusedFunction]
    anyio_backend: object,  # noqa: ARG001
) -> AsyncGenerator[None, None]:
    # Dispose the cached AsyncEngine (aiosqlite worker thread) while the per-test
    # event loop is still alive.
    _ = anyio_backend
    yield
    await dispose_engine()


@pytest.fixture
async def sqlite_db(tmp_path: Path) -> AsyncGenerator[Path, None]:
    # Per-test sqlite DB keeps tests isolated and deterministic.
    old_url = settings.database_url
    db_path = tmp_path / "todo-sync.db"
    settings.database_url = f"sqlite:///{db_path}"
    reset_engine_cache()
    await init_db()
    try:
        yield db_path
    finally:
        await dispose_engine()
        settings.database_url = old_url


def pytest_sessionfinish(session: object, exitstatus: int) -> None:  # noqa: ARG001
    # Safety net: close cached engine so CI can exit cleanly.
    _ = session, exitstatus
    dispose_engine_cache()


@dataclass
class FakeTodoAPI:
    """In-memory stand-in for the remote todo API.

    ``failures`` maps "METHOD /path" (for creates also "POST /todolists <name>") to the
    exception that call should raise.
    """

    lists: dict[str, RemoteList] = field(default_factory=dict)
    calls: list[tuple[str, str]] = field(default_factory=list)
    payloads: list[dict[str, object]] = field(default_factory=list)
    failures: dict[str, Exception] = field(default_factory=dict)
    fetch_error: Exception | None = None
    source_id: str = "fake-remote"
    _ids: itertools.count[int] = field(default_factory=lambda: itertools.count(1))

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def _check(self, key: str) -> None:
        exc = self.failures.get(key)
        if exc is not None:
            raise exc

    # -- seeding helpers

    def seed_list(
        self,
        name: str,
        items: list[tuple[str, bool]] | None = None,
        *,
        updated_at: datetime | None = None,
        remote_id: str | None = None,
    ) -> RemoteList:
        ts = updated_at or (utc_now() - timedelta(hours=1))
        rid = remote_id or self._new_id("list")
        remote = RemoteList(
            remote_id=rid,
            source_id=self.source_id,
            name=name,
            created_at=ts,
            updated_at=ts,
            items=[
                RemoteItem(
                    remote_id=self._new_id("item"),
                    source_id=self.source_id,
                    description=description,
                    completed=completed,
                    created_at=ts,
                    updated_at=ts,
                )
                for description, completed in (items or [])
            ],
        )
        self.lists[rid] = remote
        return remote

    def rename_remotely(self, remote_id: str, name: str) -> RemoteList:
        updated = dataclasses.replace(self.lists[remote_id], name=name, updated_at=utc_now())
        self.lists[remote_id] = updated
        return updated

    def edit_item_remotely(self, list_id: str, item_id: str, *, description: str) -> RemoteItem:
        remote = self.lists[list_id]
        items = []
        edited: RemoteItem | None = None
        for item in remote.items:
            if item.remote_id == item_id:
                item = dataclasses.replace(item, description=description, updated_at=utc_now())
                edited = item
            items.append(item)
        assert edited is not None
        self.lists[list_id] = dataclasses.replace(remote, items=items)
        return edited

    def drop_item_remotely(self, list_id: str, item_id: str) -> None:
        remote = self.lists[list_id]
        self.lists[list_id] = dataclasses.replace(
            remote, items=[i for i in remote.items if i.remote_id != item_id]
        )

    def methods(self) -> list[str]:
        return [f"{method} {path}" for method, path in self.calls]

    # -- ExternalTodoAPI

    async def list_todo_lists(self) -> list[RemoteList]:
        self.calls.append(("GET", "/todolists"))
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.lists.values())

    async def create_todo_list(self, *, name: str, items: list[NewRemoteItem]) -> RemoteList:
        self.calls.append(("POST", "/todolists"))
        self.payloads.append({"name": name, "items": [(i.description, i.completed) for i in items]})
        self._check("POST /todolists")
        self._check(f"POST /todolists {name}")
        return self.seed_list(
            name, [(i.description, i.completed) for i in items], updated_at=utc_now()
        )

    async def update_todo_list(self, *, remote_id: str, name: str) -> RemoteList:
        self.calls.append(("PATCH", f"/todolists/{remote_id}"))
        self.payloads.append({"name": name})
        self._check(f"PATCH /todolists/{remote_id}")
        if remote_id not in self.lists:
            raise RemoteNotFoundError("not found", status_code=404)
        return self.rename_remotely(remote_id, name)

    async def delete_todo_list(self, *, remote_id: str) -> None:
        self.calls.append(("DELETE", f"/todolists/{remote_id}"))
        self._check(f"DELETE /todolists/{remote_id}")
        if self.lists.pop(remote_id, None) is None:
            raise RemoteNotFoundError("not found", status_code=404)

    async def update_todo_item(
        self, *, list_remote_id: str, item_remote_id: str, description: str, completed: bool
    ) -> RemoteItem:
        path = f"/todolists/{list_remote_id}/todoitems/{item_remote_id}"
        self.calls.append(("PATCH", path))
        self.payloads.append({"description": description, "completed": completed})
        self._check(f"PATCH {path}")
        remote = self.lists.get(list_remote_id)
        if remote is None or all(i.remote_id != item_remote_id for i in remote.items):
            raise RemoteNotFoundError("not found", status_code=404)
        items = []
        updated: RemoteItem | None = None
        for item in remote.items:
            if item.remote_id == item_remote_id:
                item = dataclasses.replace(
                    item, description=description, completed=completed, updated_at=utc_now()
                )
                updated = item
            items.append(item)
        assert updated is not None
        self.lists[list_remote_id] = dataclasses.replace(remote, items=items)
        return updated

    async def delete_todo_item(self, *, list_remote_id: str, item_remote_id: str) -> None:
        path = f"/todolists/{list_remote_id}/todoitems/{item_remote_id}"
        self.calls.append(("DELETE", path))
        self._check(f"DELETE {path}")
        remote = self.lists.get(list_remote_id)
        if remote is None or all(i.remote_id != item_remote_id for i in remote.items):
            raise RemoteNotFoundError("not found", status_code=404)
        self.drop_item_remotely(list_remote_id, item_remote_id)


@pytest.fixture
def fake_api() -> FakeTodoAPI:
    return FakeTodoAPI()
