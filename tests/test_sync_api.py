from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import httpx
import pytest

from todo_sync.deps import get_runner
from todo_sync.errors import TransientNetworkError
from todo_sync.main import app
from todo_sync.services.sync_orchestrator import SyncOrchestrator
from todo_sync.services.sync_runner import SyncRunner, reset_sync_runtime

if TYPE_CHECKING:
    from conftest import FakeTodoAPI


def _make_async_client() -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=app)
    return httpx.AsyncClient(transport=transport, base_url="http://test")


def _install_runner(fake_api: FakeTodoAPI, *, strategy: str = "remote_wins") -> SyncRunner:
    reset_sync_runtime()
    runner = SyncRunner(
        orchestrator_factory=lambda: SyncOrchestrator(api=fake_api, strategy=strategy),  # type: ignore[arg-type]
        max_duration_seconds=30,
    )
    app.dependency_overrides[get_runner] = lambda: runner
    return runner


@pytest.fixture(autouse=True)
def _clear_overrides():  # pyright: ignore[reportUnusedFunction]
    yield
    app.dependency_overrides.clear()
    reset_sync_runtime()


@pytest.mark.anyio
async def test_todo_crud_routes(sqlite_db: Path) -> None:
    async with _make_async_client() as client:
        r = await client.post(
            "/api/v1/todolists",
            json={"name": "Groceries", "items": [{"description": "Milk"}]},
        )
        assert r.status_code == 201
        created = r.json()
        list_id = created["id"]
        assert created["name"] == "Groceries"
        assert created["is_sync_pending"] is True
        assert created["external_id"] is None
        assert [i["description"] for i in created["items"]] == ["Milk"]

        r = await client.post(
            f"/api/v1/todolists/{list_id}/todoitems", json={"description": "Eggs", "completed": True}
        )
        assert r.status_code == 201
        item_id = r.json()["id"]

        r = await client.patch(f"/api/v1/todolists/{list_id}", json={"name": "Shopping"})
        assert r.status_code == 200
        assert r.json()["name"] == "Shopping"

        r = await client.patch(
            f"/api/v1/todolists/{list_id}/todoitems/{item_id}", json={"completed": False}
        )
        assert r.status_code == 200
        assert r.json()["completed"] is False

        r = await client.get(f"/api/v1/todolists/{list_id}")
        assert r.status_code == 200
        assert [i["description"] for i in r.json()["items"]] == ["Milk", "Eggs"]

        r = await client.delete(f"/api/v1/todolists/{list_id}/todoitems/{item_id}")
        assert r.status_code == 200
        r = await client.get("/api/v1/todolists")
        assert r.status_code == 200
        lists = r.json()["items"]
        assert len(lists) == 1
        assert [i["description"] for i in lists[0]["items"]] == ["Milk"]

        r = await client.delete(f"/api/v1/todolists/{list_id}")
        assert r.status_code == 200
        r = await client.get(f"/api/v1/todolists/{list_id}")
        assert r.status_code == 404
        body = r.json()
        assert body["error"] == "not_found"
        assert r.headers.get("x-request-id")


@pytest.mark.anyio
async def test_validation_errors_use_error_response(sqlite_db: Path) -> None:
    async with _make_async_client() as client:
        r = await client.post("/api/v1/todolists", json={"name": ""})
    assert r.status_code == 422
    assert r.json()["error"] == "validation_error"


@pytest.mark.anyio
async def test_manual_sync_endpoints_and_status(sqlite_db: Path, fake_api: FakeTodoAPI) -> None:
    _install_runner(fake_api)
    async with _make_async_client() as client:
        r = await client.post("/api/v1/todolists", json={"name": "Groceries"})
        assert r.status_code == 201

        r = await client.get("/api/v1/sync/status")
        assert r.status_code == 200
        status = r.json()
        assert status["pending_lists"] == 1
        assert status["running"] is False
        assert status["delta_sync_available"] is False
        assert status["circuit_state"] == "closed"
        assert status["last_result"] is None

        r = await client.post("/api/v1/sync/outbound")
        assert r.status_code == 200
        body = r.json()
        assert body["ok"] is True
        assert body["mode"] == "outbound"
        assert body["outbound"]["created"] == 1
        assert fake_api.methods() == ["POST /todolists"]

        r = await client.post("/api/v1/sync/full")
        assert r.status_code == 200
        assert r.json()["inbound"]["fetched"] == 1

        r = await client.get("/api/v1/sync/status")
        status = r.json()
        assert status["pending_lists"] == 0
        assert status["delta_sync_available"] is True
        assert status["last_result"]["mode"] == "full"


@pytest.mark.anyio
async def test_failed_pass_maps_to_502(sqlite_db: Path, fake_api: FakeTodoAPI) -> None:
    _install_runner(fake_api)
    fake_api.fetch_error = TransientNetworkError("remote down", status_code=503)

    async with _make_async_client() as client:
        r = await client.post("/api/v1/sync/inbound")

    assert r.status_code == 502
    body = r.json()
    assert body["error"] == "upstream_error"
    assert "remote down" in body["message"]
    assert body["details"]["ok"] is False


@pytest.mark.anyio
async def test_concurrent_trigger_maps_to_409(sqlite_db: Path, fake_api: FakeTodoAPI) -> None:
    runner = _install_runner(fake_api)
    await runner._lock.acquire()  # pyright: ignore[reportPrivateUsage]
    try:
        async with _make_async_client() as client:
            r = await client.post("/api/v1/sync/full")
    finally:
        runner._lock.release()  # pyright: ignore[reportPrivateUsage]

    assert r.status_code == 409
    assert r.json()["error"] == "sync_in_progress"


@pytest.mark.anyio
async def test_conflict_queue_endpoints(sqlite_db: Path, fake_api: FakeTodoAPI) -> None:
    _install_runner(fake_api, strategy="manual")
    remote = fake_api.seed_list("Shared")

    async with _make_async_client() as client:
        assert (await client.post("/api/v1/sync/inbound")).status_code == 200
        lists = (await client.get("/api/v1/todolists")).json()["items"]
        list_id = lists[0]["id"]
        r = await client.patch(f"/api/v1/todolists/{list_id}", json={"name": "Local name"})
        assert r.status_code == 200
        fake_api.rename_remotely(remote.remote_id, "Remote name")

        r = await client.post("/api/v1/sync/inbound")
        assert r.status_code == 200
        assert r.json()["inbound"]["manual_conflicts"] == 1

        r = await client.get("/api/v1/sync/conflicts")
        assert r.status_code == 200
        conflicts = r.json()["items"]
        assert len(conflicts) == 1
        conflict = conflicts[0]
        assert conflict["local_id"] == list_id
        assert conflict["modified_fields"] == ["name"]
        assert conflict["resolution"] is None

        r = await client.post(
            f"/api/v1/sync/conflicts/{conflict['id']}/resolve", json={"resolution": "local_wins"}
        )
        assert r.status_code == 200
        assert r.json()["resolution"] == "local_wins"

        r = await client.post("/api/v1/sync/full")
        assert r.status_code == 200

        r = await client.get("/api/v1/sync/conflicts")
        assert r.json()["items"] == []
        r = await client.post(
            f"/api/v1/sync/conflicts/{conflict['id']}/resolve", json={"resolution": "remote_wins"}
        )
        assert r.status_code == 404

        r = await client.post("/api/v1/sync/conflicts/999/resolve", json={"resolution": "nope"})
        assert r.status_code == 422

    # local_wins re-flags the list; the full pass already ran inbound after outbound,
    # so the local name reaches the remote on the next outbound
    async with _make_async_client() as client:
        r = await client.post("/api/v1/sync/outbound")
        assert r.status_code == 200
    assert fake_api.lists[remote.remote_id].name == "Local name"
