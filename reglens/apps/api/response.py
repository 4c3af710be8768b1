from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"

DataT = TypeVar("DataT")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION

    @classmethod
    def for_request(cls, request: Request) -> "ResponseMeta":
        # The HTTP middleware assigns request ids; handlers reached without it mint one once.
        request_id = getattr(request.state, "request_id", None)
        if not request_id:
            request_id = request.headers.get("X-Request-Id") or str(uuid4())
            request.state.request_id = request_id
        return cls(request_id=request_id)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[DataT]):
    data: DataT
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def is_versioned_request(request: Request) -> bool:
    # Unversioned paths (docs, openapi.json) keep FastAPI's default error shape.
    return request.url.path.startswith(f"/{API_VERSION}/")


def response_meta(request: Request) -> dict[str, Any]:
    return ResponseMeta.for_request(request).model_dump()


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    return {"data": data, "meta": response_meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    detail = ErrorDetail(code=code, message=message, details=details).model_dump(exclude_none=True)
    return {"error": detail, "meta": response_meta(request)}
