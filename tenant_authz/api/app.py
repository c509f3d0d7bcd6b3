"""
多租户授权核心 FastAPI 应用：用户、项目、任务接口。
所有拒绝统一为 {code, message, details, requestId}，HTTP 状态由原因码决定。
"""
from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..config import Settings
from ..errors import AuthorizationFailed, ReasonCode, reject
from ..pipeline import build_pipeline
from ..service import TenantService
from ..store import MemoryStore
from .dependencies import get_request_id, request_id_ctx
from .routes import router
from .schemas import ErrorBody

logger = logging.getLogger("tenant_authz.api")


def create_app(settings: Optional[Settings] = None, store: Optional[MemoryStore] = None,
               ledger=None, audit_sink=None) -> FastAPI:
    """装配应用；ledger 缺省使用 store 自带的配额台账。"""
    settings = settings or Settings()
    store = store or MemoryStore()
    if ledger is None:
        ledger = store
    elif hasattr(ledger, "sync_from"):
        # 独立台账按存储中已有的行校准使用量
        ledger.sync_from(store)
    pipeline = build_pipeline(settings, ledger, audit_sink=audit_sink)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        pipeline.close()

    app = FastAPI(
        title="Tenant Authz API",
        description="多租户授权核心：凭证校验、租户隔离、角色策略、订阅配额与审计",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.pipeline = pipeline
    app.state.service = TenantService(store, pipeline)
    app.include_router(router)

    @app.middleware("http")
    async def add_request_id_and_timing(request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request_id_ctx.set(rid)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        response.headers["X-Request-ID"] = rid
        response.headers["X-Response-Time"] = str(elapsed_ms)
        return response

    @app.get("/health")
    def health():
        """健康检查。"""
        return {"status": "up", "service": "tenant-authz"}

    @app.exception_handler(AuthorizationFailed)
    def authorization_failed_handler(request: Request, exc: AuthorizationFailed):
        rejection = exc.rejection
        body = ErrorBody(**rejection.to_body(get_request_id()))
        if rejection.http_status >= 500:
            logger.warning("request failed path=%s code=%s", request.url.path, rejection.code.value)
        return JSONResponse(status_code=rejection.http_status, content=body.model_dump())

    @app.exception_handler(RequestValidationError)
    def validation_error_handler(request: Request, exc: RequestValidationError):
        details = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}" for err in exc.errors()
        )
        rejection = reject(ReasonCode.VALIDATION_FAILED, details)
        body = ErrorBody(**rejection.to_body(get_request_id()))
        return JSONResponse(status_code=rejection.http_status, content=body.model_dump())

    @app.exception_handler(HTTPException)
    def http_exception_handler(request: Request, exc: HTTPException):
        """统一错误响应格式：code, message, details, requestId。"""
        body = exc.detail if isinstance(exc.detail, dict) else {
            "code": "ERROR", "message": str(exc.detail), "details": "", "requestId": get_request_id(),
        }
        return JSONResponse(status_code=exc.status_code, content=body)

    return app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    uvicorn.run("tenant_authz.api.app:create_app", factory=True, host="0.0.0.0", port=Settings().port, reload=False)
