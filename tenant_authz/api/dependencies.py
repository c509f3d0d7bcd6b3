# 请求上下文与鉴权依赖：Authorization: Bearer <token>，X-Request-ID
from __future__ import annotations

from contextvars import ContextVar
from typing import Optional, TypeVar, Union

from fastapi import Header, Request

from ..errors import AuthorizationFailed, Rejection
from ..models import ClaimSet
from ..service import TenantService

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")

T = TypeVar("T")


def get_request_id() -> str:
    return request_id_ctx.get()


def get_service(request: Request) -> TenantService:
    return request.app.state.service


def get_source_address(request: Request) -> str:
    return request.client.host if request.client else ""


def require_claims(request: Request, authorization: Optional[str] = Header(None)) -> ClaimSet:
    """鉴权依赖：凭证无效时抛出 AuthorizationFailed，由统一异常处理器输出 401/403。"""
    result = request.app.state.pipeline.authenticate(authorization)
    if isinstance(result, Rejection):
        raise AuthorizationFailed(result)
    return result


def unwrap(result: Union[T, Rejection]) -> T:
    if isinstance(result, Rejection):
        raise AuthorizationFailed(result)
    return result
