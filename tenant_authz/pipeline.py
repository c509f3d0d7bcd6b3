"""
授权流水线（组合根）：凭证校验 -> 租户作用域 -> 策略判定 -> 配额预留（仅创建）-> 审计。
任一阶段返回 Rejection 即短路；各阶段不抛异常驱动流程。
凭证校验与策略判定受截止时间约束，超时一律拒绝（fail closed）。
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar, Union

from .audit import AuditEmitter, DecisionContext, JsonlAuditLog, MemoryAuditLog
from .config import Settings
from .errors import ReasonCode, Rejection, reject
from .models import ClaimSet, EffectiveScope, ResourceKind, Target
from .policy import Action, PolicyEngine
from .quota import QuotaEnforcer
from .scope import TenantScopeResolver
from .token import JwtTokenCodec, TokenValidator

logger = logging.getLogger("tenant_authz.pipeline")

T = TypeVar("T")


@dataclass(frozen=True)
class AccessGrant:
    claims: ClaimSet
    scope: EffectiveScope
    action: Action
    target: Target


class AuthorizationPipeline:
    def __init__(self, validator: TokenValidator, resolver: TenantScopeResolver, policy: PolicyEngine,
                 quota: QuotaEnforcer, audit: AuditEmitter, deadline_sec: float = 2.0,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.validator = validator
        self.resolver = resolver
        self.policy = policy
        self.quota = quota
        self.audit = audit
        self._deadline_sec = deadline_sec
        self._clock = clock

    def authenticate(self, authorization: Optional[str]) -> Union[ClaimSet, Rejection]:
        started = self._clock()
        result = self.validator.validate_header(authorization)
        if isinstance(result, Rejection):
            logger.info("authentication rejected code=%s", result.code.value)
            return result
        if self._expired(started):
            return reject(ReasonCode.DEADLINE_EXCEEDED, "credential validation")
        return result

    def authorize(self, claims: ClaimSet, action: Action, target: Target,
                  tenant_hint: Optional[str] = None, source_address: str = "") -> Union[AccessGrant, Rejection]:
        started = self._clock()
        scope = self.resolver.resolve_scope(claims, tenant_hint)
        if isinstance(scope, Rejection):
            self._denied(claims, action, target, scope, source_address)
            return scope
        decision = self.policy.decide(claims, scope, action, target)
        if self._expired(started):
            return reject(ReasonCode.DEADLINE_EXCEEDED, "policy decision")
        if not decision.allowed:
            self._denied(claims, action, target, decision.rejection, source_address)
            return decision.rejection
        return AccessGrant(claims, scope, action, target)

    def evaluate(self, authorization: Optional[str], action: Action, target: Target,
                 tenant_hint: Optional[str] = None, source_address: str = "") -> Union[AccessGrant, Rejection]:
        """完整判定：未通过认证的请求不会进入后续阶段，也不产生审计。"""
        claims = self.authenticate(authorization)
        if isinstance(claims, Rejection):
            return claims
        return self.authorize(claims, action, target, tenant_hint, source_address)

    def create(self, grant: AccessGrant, kind: ResourceKind, create_fn: Callable[[], T],
               source_address: str = "") -> Union[T, Rejection]:
        """预留名额 -> 创建 -> 消费预留 -> 审计；创建抛异常时释放预留并继续抛出。"""
        reservation = self.quota.reserve(grant.target.tenant_id, kind)
        if isinstance(reservation, Rejection):
            self._denied(grant.claims, grant.action, grant.target, reservation, source_address)
            return reservation
        try:
            entity = create_fn()
            reservation.consume()
        finally:
            reservation.release()
        self.record(grant, getattr(entity, "id", None), source_address)
        return entity

    def record(self, grant: AccessGrant, entity_id: Optional[str] = None, source_address: str = "") -> None:
        self.audit.record(DecisionContext(
            claims=grant.claims, action=grant.action, target=grant.target, allowed=True,
            entity_id=entity_id, source_address=source_address,
        ))

    def deny(self, grant: AccessGrant, rejection: Rejection, source_address: str = "") -> Rejection:
        """策略放行后由业务前置条件（租户状态等）拒绝时，走与策略拒绝相同的日志与审计路径。"""
        self._denied(grant.claims, grant.action, grant.target, rejection, source_address)
        return rejection

    def close(self) -> None:
        self.quota.close()
        self.audit.close()

    def _denied(self, claims: ClaimSet, action: Action, target: Target, rejection: Rejection,
                source_address: str) -> None:
        logger.info("access denied actor=%s action=%s tenant=%s code=%s",
                    claims.actor_id, action.value, target.tenant_id, rejection.code.value)
        self.audit.record(DecisionContext(
            claims=claims, action=action, target=target, allowed=False, source_address=source_address,
        ))

    def _expired(self, started: float) -> bool:
        return self._clock() - started > self._deadline_sec


def build_pipeline(settings: Settings, ledger, audit_sink=None,
                   clock: Callable[[], float] = time.time) -> AuthorizationPipeline:
    """按配置装配流水线；ledger 为配额台账协作方（MemoryStore 或 SqlQuotaLedger）。"""
    codec = JwtTokenCodec(settings.token_secret, settings.token_algorithm, settings.token_ttl_sec, clock=clock)
    if audit_sink is None:
        audit_sink = JsonlAuditLog(settings.audit_log_path) if settings.audit_log_path else MemoryAuditLog()
    return AuthorizationPipeline(
        validator=TokenValidator(codec, settings.token_ttl_sec, clock=clock),
        resolver=TenantScopeResolver(),
        policy=PolicyEngine(settings.user_update_rule, settings.task_update_rule),
        quota=QuotaEnforcer(
            ledger,
            retry_count=settings.quota_retry_count,
            backoff_base=settings.quota_backoff_base,
            timeout_sec=settings.quota_timeout_sec,
        ),
        audit=AuditEmitter(audit_sink, audit_denials=settings.audit_denials),
        deadline_sec=settings.decision_deadline_sec,
    )
