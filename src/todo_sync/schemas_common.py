from __future__ import annotations

from pydantic import BaseModel


class HealthResponse(BaseModel):
    ok: bool = True


class OkResponse(BaseModel):
    ok: bool = True


class ErrorResponse(BaseModel):
    """统一错误响应格式：{error, message, request_id, details}。"""

    error: str
    message: str
    request_id: str | None = None
    details: object | None = None
