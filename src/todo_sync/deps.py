from __future__ import annotations

from todo_sync.services.sync_runner import SyncRunner, get_sync_runner


def get_runner() -> SyncRunner:
    # FastAPI dependency; tests override it with a runner wired to a fake remote API.
    return get_sync_runner()
