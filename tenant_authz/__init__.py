"""
多租户授权核心：凭证校验、租户作用域、角色策略、订阅配额与审计。
有效租户只来自已验签的身份声明；任一阶段拒绝即短路，不以异常驱动控制流。
"""
from .audit import AuditEmitter, JsonlAuditLog, MemoryAuditLog
from .config import Settings
from .errors import AuthorizationFailed, ReasonCode, Rejection
from .models import ClaimSet, Role, Target
from .pipeline import AccessGrant, AuthorizationPipeline, build_pipeline
from .policy import Action, PolicyEngine
from .quota import QuotaEnforcer, Reservation
from .scope import TenantScopeResolver
from .service import TenantService
from .store import MemoryStore
from .token import JwtTokenCodec, TokenValidator

__all__ = [
    "AccessGrant",
    "Action",
    "AuditEmitter",
    "AuthorizationFailed",
    "AuthorizationPipeline",
    "ClaimSet",
    "JsonlAuditLog",
    "JwtTokenCodec",
    "MemoryAuditLog",
    "MemoryStore",
    "PolicyEngine",
    "QuotaEnforcer",
    "ReasonCode",
    "Rejection",
    "Reservation",
    "Role",
    "Settings",
    "Target",
    "TenantScopeResolver",
    "TenantService",
    "TokenValidator",
    "build_pipeline",
]
