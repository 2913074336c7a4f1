from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from todo_sync.config import Settings
from todo_sync.errors import (
    DeserializationError,
    ExternalApiError,
    RemoteNotFoundError,
    TransientNetworkError,
)
from todo_sync.resilience import RetryPolicy

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RemoteItem:
    remote_id: str
    source_id: str
    description: str
    completed: bool
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class RemoteList:
    remote_id: str
    source_id: str
    name: str
    created_at: datetime
    updated_at: datetime
    items: list[RemoteItem] = field(default_factory=list)

    def latest_update(self) -> datetime:
        """Newest updated_at across the list and its items."""
        stamps = [self.updated_at, *(i.updated_at for i in self.items)]
        return max(stamps)


@dataclass(frozen=True)
class NewRemoteItem:
    description: str
    completed: bool = False


class ExternalTodoAPI(Protocol):
    async def list_todo_lists(self) -> list[RemoteList]: ...

    async def create_todo_list(self, *, name: str, items: list[NewRemoteItem]) -> RemoteList: ...

    async def update_todo_list(self, *, remote_id: str, name: str) -> RemoteList: ...

    async def delete_todo_list(self, *, remote_id: str) -> None: ...

    async def update_todo_item(
        self, *, list_remote_id: str, item_remote_id: str, description: str, completed: bool
    ) -> RemoteItem: ...

    async def delete_todo_item(self, *, list_remote_id: str, item_remote_id: str) -> None: ...


_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


def _parse_datetime(value: object, *, key: str) -> datetime:
    if not isinstance(value, str) or not value.strip():
        raise DeserializationError(f"missing or invalid {key}: {value!r}")
    v = value.strip().replace("Z", "+00:00")
    # .NET style timestamps carry 7 fractional digits; fromisoformat accepts at most 6.
    v = _FRACTION_RE.sub(r".\1", v)
    try:
        dt = datetime.fromisoformat(v)
    except ValueError as e:
        raise DeserializationError(f"invalid {key}: {value!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _require_str(obj: dict[str, Any], key: str) -> str:
    v = obj.get(key)
    if isinstance(v, str) and v:
        return v
    if isinstance(v, int):
        return str(v)
    raise DeserializationError(f"missing or invalid {key}: {v!r}")


def _parse_item(obj: object) -> RemoteItem:
    if not isinstance(obj, dict):
        raise DeserializationError(f"todo item must be an object, got {type(obj).__name__}")
    completed = obj.get("completed", False)
    if not isinstance(completed, bool):
        raise DeserializationError(f"invalid completed: {completed!r}")
    description = obj.get("description")
    return RemoteItem(
        remote_id=_require_str(obj, "id"),
        source_id=str(obj.get("source_id") or ""),
        description=description if isinstance(description, str) else str(description or ""),
        completed=completed,
        created_at=_parse_datetime(obj.get("created_at"), key="created_at"),
        updated_at=_parse_datetime(obj.get("updated_at"), key="updated_at"),
    )


def _parse_list(obj: object) -> RemoteList:
    if not isinstance(obj, dict):
        raise DeserializationError(f"todo list must be an object, got {type(obj).__name__}")
    raw_items = obj.get("items") or []
    if not isinstance(raw_items, list):
        raise DeserializationError(f"items must be a list, got {type(raw_items).__name__}")
    name = obj.get("name")
    return RemoteList(
        remote_id=_require_str(obj, "id"),
        source_id=str(obj.get("source_id") or ""),
        name=name if isinstance(name, str) else str(name or ""),
        created_at=_parse_datetime(obj.get("created_at"), key="created_at"),
        updated_at=_parse_datetime(obj.get("updated_at"), key="updated_at"),
        items=[_parse_item(x) for x in raw_items],
    )


def _json_body(resp: httpx.Response) -> object:
    try:
        return resp.json()
    except ValueError as e:
        snippet = resp.text[:200]
        raise DeserializationError(
            f"{resp.request.method} {resp.request.url.path} returned non-JSON body: {snippet!r}"
        ) from e


class HttpxExternalTodoAPI:
    """JSON-over-HTTP client for the remote todo collection.

    Every call runs through ``retry_policy``; transport errors, timeouts and the
    retryable statuses surface as ``TransientNetworkError`` so the policy can retry
    them, everything else is final.
    """

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float,
        source_id: str,
        retry_policy: RetryPolicy,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._source_id = source_id
        self._retry = retry_policy
        self._client = client

    @property
    def source_id(self) -> str:
        return self._source_id

    async def _send(self, method: str, url: str, *, json: dict[str, Any] | None) -> httpx.Response:
        try:
            if self._client is not None:
                resp = await self._client.request(method, url, json=json)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.request(method, url, json=json)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{method} {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{method} {url} transport error: {e}") from e

        if 200 <= resp.status_code < 300:
            return resp
        body = resp.text[:500]
        if resp.status_code in RETRYABLE_STATUS_CODES:
            raise TransientNetworkError(
                f"{method} {url} failed: {resp.status_code}", status_code=resp.status_code
            )
        if resp.status_code == 404:
            raise RemoteNotFoundError(
                f"{method} {url} not found", status_code=404, body=body
            )
        raise ExternalApiError(
            f"{method} {url} failed: {resp.status_code} {body}",
            status_code=resp.status_code,
            body=body,
        )

    async def _request(
        self, method: str, path: str, *, json: dict[str, Any] | None = None
    ) -> httpx.Response:
        url = f"{self._base_url}{path}"
        return await self._retry.execute(
            lambda: self._send(method, url, json=json), description=f"{method} {path}"
        )

    async def list_todo_lists(self) -> list[RemoteList]:
        resp = await self._request("GET", "/todolists")
        data = _json_body(resp)
        if not isinstance(data, list):
            raise DeserializationError(f"GET /todolists expected a JSON array, got {type(data).__name__}")
        lists = [_parse_list(x) for x in data]
        logger.debug("fetched %d remote todo lists", len(lists))
        return lists

    async def create_todo_list(self, *, name: str, items: list[NewRemoteItem]) -> RemoteList:
        payload = {
            "source_id": self._source_id,
            "name": name,
            "items": [
                {"source_id": self._source_id, "description": i.description, "completed": i.completed}
                for i in items
            ],
        }
        resp = await self._request("POST", "/todolists", json=payload)
        return _parse_list(_json_body(resp))

    async def update_todo_list(self, *, remote_id: str, name: str) -> RemoteList:
        resp = await self._request("PATCH", f"/todolists/{remote_id}", json={"name": name})
        return _parse_list(_json_body(resp))

    async def delete_todo_list(self, *, remote_id: str) -> None:
        await self._request("DELETE", f"/todolists/{remote_id}")

    async def update_todo_item(
        self, *, list_remote_id: str, item_remote_id: str, description: str, completed: bool
    ) -> RemoteItem:
        resp = await self._request(
            "PATCH",
            f"/todolists/{list_remote_id}/todoitems/{item_remote_id}",
            json={"description": description, "completed": completed},
        )
        return _parse_item(_json_body(resp))

    async def delete_todo_item(self, *, list_remote_id: str, item_remote_id: str) -> None:
        await self._request("DELETE", f"/todolists/{list_remote_id}/todoitems/{item_remote_id}")

    @classmethod
    def from_settings(
        cls,
        s: Settings,
        *,
        retry_policy: RetryPolicy,
        client: httpx.AsyncClient | None = None,
    ) -> "HttpxExternalTodoAPI":
        return cls(
            base_url=s.external_api_base_url,
            timeout_seconds=s.external_api_timeout_seconds,
            source_id=s.external_api_source_id,
            retry_policy=retry_policy,
            client=client,
        )
