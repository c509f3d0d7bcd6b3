"""
租户作用域解析：有效作用域只来自已验签的 ClaimSet。
客户端传入的租户标识（如路径参数 tenantId）仅用于路由，必须与声明一致，绝不作为信任来源。
"""
from __future__ import annotations

from typing import Optional, Union

from .errors import ReasonCode, Rejection, reject
from .models import Bound, ClaimSet, EffectiveScope, Unrestricted

UNRESTRICTED = Unrestricted()


class TenantScopeResolver:
    def resolve_scope(self, claims: ClaimSet, requested_tenant_hint: Optional[str] = None) -> Union[EffectiveScope, Rejection]:
        if claims.is_platform_admin:
            return UNRESTRICTED
        if not claims.tenant_id:
            return reject(ReasonCode.NO_TENANT_ASSIGNED)
        if requested_tenant_hint is not None and requested_tenant_hint != claims.tenant_id:
            return reject(ReasonCode.CROSS_TENANT_ACCESS_DENIED, f"hint={requested_tenant_hint}")
        return Bound(claims.tenant_id)
