"""
授权核心错误分类与稳定原因码。
各阶段以 Rejection 值返回失败，不以异常驱动控制流；异常只出现在协作方边界
（存储瞬时故障、令牌编解码），以及传输层需要抛出时的 AuthorizationFailed 包装。
原因码（code）为机器可读的稳定契约，与面向用户的 message 分离，客户端按 code 分支。
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict


class ErrorCategory(str, Enum):
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    QUOTA = "quota"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    TRANSIENT_STORAGE = "transient_storage"


class ReasonCode(str, Enum):
    # 认证
    UNAUTHENTICATED = "UNAUTHENTICATED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    EXPIRED = "EXPIRED"
    MALFORMED = "MALFORMED"
    # 授权
    UNAUTHORIZED = "UNAUTHORIZED"
    TENANT_MISMATCH = "TENANT_MISMATCH"
    CROSS_TENANT_ACCESS_DENIED = "CROSS_TENANT_ACCESS_DENIED"
    SELF_DELETION_FORBIDDEN = "SELF_DELETION_FORBIDDEN"
    NO_TENANT_ASSIGNED = "NO_TENANT_ASSIGNED"
    TENANT_SUSPENDED = "TENANT_SUSPENDED"
    DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"
    # 配额
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    # 其他
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"


_CATEGORY: Dict[ReasonCode, ErrorCategory] = {
    ReasonCode.UNAUTHENTICATED: ErrorCategory.AUTHENTICATION,
    ReasonCode.INVALID_SIGNATURE: ErrorCategory.AUTHENTICATION,
    ReasonCode.EXPIRED: ErrorCategory.AUTHENTICATION,
    ReasonCode.MALFORMED: ErrorCategory.AUTHENTICATION,
    ReasonCode.UNAUTHORIZED: ErrorCategory.AUTHORIZATION,
    ReasonCode.TENANT_MISMATCH: ErrorCategory.AUTHORIZATION,
    ReasonCode.CROSS_TENANT_ACCESS_DENIED: ErrorCategory.AUTHORIZATION,
    ReasonCode.SELF_DELETION_FORBIDDEN: ErrorCategory.AUTHORIZATION,
    ReasonCode.NO_TENANT_ASSIGNED: ErrorCategory.AUTHORIZATION,
    ReasonCode.TENANT_SUSPENDED: ErrorCategory.AUTHORIZATION,
    ReasonCode.DEADLINE_EXCEEDED: ErrorCategory.AUTHORIZATION,
    ReasonCode.QUOTA_EXCEEDED: ErrorCategory.QUOTA,
    ReasonCode.NOT_FOUND: ErrorCategory.NOT_FOUND,
    ReasonCode.VALIDATION_FAILED: ErrorCategory.VALIDATION,
    ReasonCode.STORAGE_UNAVAILABLE: ErrorCategory.TRANSIENT_STORAGE,
}

# 传输层状态码映射
HTTP_STATUS: Dict[ReasonCode, int] = {
    ReasonCode.UNAUTHENTICATED: 401,
    ReasonCode.INVALID_SIGNATURE: 401,
    ReasonCode.EXPIRED: 401,
    ReasonCode.MALFORMED: 403,
    ReasonCode.UNAUTHORIZED: 403,
    ReasonCode.TENANT_MISMATCH: 403,
    ReasonCode.CROSS_TENANT_ACCESS_DENIED: 403,
    ReasonCode.SELF_DELETION_FORBIDDEN: 403,
    ReasonCode.NO_TENANT_ASSIGNED: 403,
    ReasonCode.TENANT_SUSPENDED: 403,
    ReasonCode.QUOTA_EXCEEDED: 403,
    ReasonCode.NOT_FOUND: 404,
    ReasonCode.VALIDATION_FAILED: 400,
    ReasonCode.STORAGE_UNAVAILABLE: 503,
    ReasonCode.DEADLINE_EXCEEDED: 503,
}

_DEFAULT_MESSAGES: Dict[ReasonCode, str] = {
    ReasonCode.UNAUTHENTICATED: "缺少或无效 Authorization",
    ReasonCode.INVALID_SIGNATURE: "token 签名无效",
    ReasonCode.EXPIRED: "token 已过期",
    ReasonCode.MALFORMED: "token 内容不合法",
    ReasonCode.UNAUTHORIZED: "无权执行该操作",
    ReasonCode.TENANT_MISMATCH: "资源不属于当前租户",
    ReasonCode.CROSS_TENANT_ACCESS_DENIED: "禁止跨租户访问",
    ReasonCode.SELF_DELETION_FORBIDDEN: "不能删除自己",
    ReasonCode.NO_TENANT_ASSIGNED: "用户未归属任何租户",
    ReasonCode.TENANT_SUSPENDED: "租户已停用",
    ReasonCode.DEADLINE_EXCEEDED: "授权判定超时",
    ReasonCode.QUOTA_EXCEEDED: "已达订阅套餐上限",
    ReasonCode.NOT_FOUND: "资源不存在",
    ReasonCode.VALIDATION_FAILED: "请求参数不合法",
    ReasonCode.STORAGE_UNAVAILABLE: "存储暂不可用，请稍后重试",
}


@dataclass(frozen=True)
class Rejection:
    """流水线任一阶段的拒绝结果。"""

    code: ReasonCode
    message: str = ""
    details: str = ""

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORY[self.code]

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.code]

    def to_body(self, request_id: str = "") -> Dict[str, str]:
        """统一错误响应格式：code, message, details, requestId。"""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "requestId": request_id,
        }


def reject(code: ReasonCode, details: str = "", message: str = "") -> Rejection:
    return Rejection(code, message or _DEFAULT_MESSAGES[code], details)


class TransientStorageError(Exception):
    """存储协作方的可重试故障（连接中断、锁冲突等）。仅在配额预留阶段重试。"""


class InvalidTokenSignature(Exception):
    pass


class MalformedToken(Exception):
    pass


class AuthorizationFailed(Exception):
    """把 Rejection 带出到传输层（FastAPI 异常处理器统一渲染）。"""

    def __init__(self, rejection: Rejection) -> None:
        super().__init__(f"{rejection.code.value}: {rejection.message}")
        self.rejection = rejection
