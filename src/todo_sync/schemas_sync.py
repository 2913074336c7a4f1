from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


class EntityFailureOut(BaseModel):
    entity_kind: str
    local_id: Optional[int] = None
    remote_id: Optional[str] = None
    error: str
    message: str


class OutboundSummaryOut(BaseModel):
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    failures: list[EntityFailureOut] = Field(default_factory=list)


class InboundSummaryOut(BaseModel):
    delta: bool = False
    fetched: int = 0
    filtered: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    restored: int = 0
    conflicts: int = 0
    manual_conflicts: int = 0
    failures: list[EntityFailureOut] = Field(default_factory=list)


class SyncRunResponse(BaseModel):
    mode: Literal["outbound", "inbound", "full"]
    ok: bool
    started_at: datetime
    finished_at: Optional[datetime] = None
    outbound: Optional[OutboundSummaryOut] = None
    inbound: Optional[InboundSummaryOut] = None
    error: Optional[str] = None


class SyncStatusResponse(BaseModel):
    running: bool
    pending_lists: int
    pending_items: int
    last_sync_at: Optional[datetime] = None
    delta_sync_available: bool
    circuit_state: str
    open_conflicts: int
    last_result: Optional[SyncRunResponse] = None


class SyncConflictOut(BaseModel):
    id: int
    entity_kind: str
    local_id: int
    remote_id: str
    modified_fields: list[str]
    local_last_modified: datetime
    remote_last_modified: datetime
    last_synced_at: Optional[datetime] = None
    reason: str
    resolution: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class SyncConflictListResponse(BaseModel):
    items: list[SyncConflictOut]


class SyncConflictResolveRequest(BaseModel):
    resolution: Literal["local_wins", "remote_wins"]
