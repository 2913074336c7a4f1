from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any

from todo_sync.config import settings
from todo_sync.errors import SyncError
from todo_sync.services.sync_runner import build_external_api, get_circuit_breaker


def _print_json(title: str, obj: Any) -> None:
    print(f"\n== {title} ==")
    print(json.dumps(obj, ensure_ascii=False, indent=2, default=str))


async def _probe(show_items: bool) -> int:
    api = build_external_api()
    try:
        lists = await api.list_todo_lists()
    except SyncError as e:
        print(f"probe failed: {type(e).__name__}: {e}")
        print("circuit state:", get_circuit_breaker().state.value)
        return 1

    summary: list[dict[str, Any]] = []
    for remote in lists:
        row: dict[str, Any] = {
            "id": remote.remote_id,
            "source_id": remote.source_id,
            "name": remote.name,
            "updated_at": remote.updated_at,
            "items": len(remote.items),
        }
        if show_items:
            row["items"] = [
                {
                    "id": i.remote_id,
                    "description": i.description,
                    "completed": i.completed,
                    "updated_at": i.updated_at,
                }
                for i in remote.items
            ]
        summary.append(row)
    _print_json(f"GET /todolists ({len(lists)} lists)", summary)
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="只读探测远端 todo API（GET /todolists）")
    parser.add_argument("--items", action="store_true", help="同时打印每个列表的条目")
    args = parser.parse_args()

    print("== Settings ==")
    print("EXTERNAL_API_BASE_URL:", settings.external_api_base_url)
    print("EXTERNAL_API_SOURCE_ID:", settings.external_api_source_id)
    print("RETRY_MAX_ATTEMPTS:", settings.retry_max_attempts)
    return asyncio.run(_probe(args.items))


if __name__ == "__main__":
    raise SystemExit(main())
