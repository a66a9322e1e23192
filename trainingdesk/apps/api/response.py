from __future__ import annotations

from typing import Any, Generic, Sequence, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class Page(BaseModel, Generic[T]):
    items: list[T]
    # Offset of the next page, or None on the last one.
    next_offset: int | None


def paginate(rows: Sequence[T], *, offset: int, limit: int) -> tuple[list[T], int | None]:
    """Cut a ``limit + 1`` fetch down to one page.

    Repositories are asked for one row more than the page size so the last
    page is known without a count query.
    """
    if len(rows) > limit:
        return list(rows[:limit]), offset + limit
    return list(rows), None


def get_request_id(request: Request) -> str:
    # The middleware assigns one per request; audit rows and envelopes share it.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    return request_id


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    elif isinstance(data, list):
        data = [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in data]
    meta = ResponseMeta(request_id=get_request_id(request))
    return {"data": data, "meta": meta.model_dump()}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    meta = ResponseMeta(request_id=get_request_id(request))
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": meta.model_dump()}
