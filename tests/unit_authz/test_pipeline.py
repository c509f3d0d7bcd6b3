"""
判定时限：认证或授权阶段超过截止时间即以 DEADLINE_EXCEEDED 失败关闭。
"""
from __future__ import annotations

import time

from conftest import ADMIN_T1, SECRET
from tenant_authz.audit import AuditEmitter, MemoryAuditLog
from tenant_authz.errors import ReasonCode, Rejection
from tenant_authz.models import ResourceKind, Target
from tenant_authz.pipeline import AuthorizationPipeline
from tenant_authz.policy import Action, PolicyEngine
from tenant_authz.quota import QuotaEnforcer
from tenant_authz.scope import TenantScopeResolver
from tenant_authz.store import MemoryStore
from tenant_authz.token import JwtTokenCodec, TokenValidator


class SteppingClock:
    """每次读取前进 step 秒。"""

    def __init__(self, step: float) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


def _pipeline(clock, deadline_sec=1.0):
    codec = JwtTokenCodec(SECRET)
    return AuthorizationPipeline(
        validator=TokenValidator(codec),
        resolver=TenantScopeResolver(),
        policy=PolicyEngine(),
        quota=QuotaEnforcer(MemoryStore()),
        audit=AuditEmitter(MemoryAuditLog()),
        deadline_sec=deadline_sec,
        clock=clock,
    ), codec


def test_slow_authentication_exceeds_deadline():
    pipeline, codec = _pipeline(SteppingClock(5.0))
    try:
        result = pipeline.authenticate("Bearer " + codec.issue(ADMIN_T1, issued_at=time.time()))
    finally:
        pipeline.close()
    assert isinstance(result, Rejection)
    assert result.code is ReasonCode.DEADLINE_EXCEEDED
    assert result.http_status == 503


def test_slow_policy_decision_exceeds_deadline():
    pipeline, _ = _pipeline(SteppingClock(5.0))
    try:
        result = pipeline.authorize(ADMIN_T1, Action.CREATE_PROJECT, Target(ResourceKind.PROJECT, "t1"))
    finally:
        pipeline.close()
    assert isinstance(result, Rejection)
    assert result.code is ReasonCode.DEADLINE_EXCEEDED
    assert result.http_status == 503


def test_fast_decision_within_deadline():
    pipeline, codec = _pipeline(SteppingClock(0.1))
    try:
        claims = pipeline.authenticate("Bearer " + codec.issue(ADMIN_T1, issued_at=time.time()))
        grant = pipeline.authorize(claims, Action.CREATE_PROJECT, Target(ResourceKind.PROJECT, "t1"))
    finally:
        pipeline.close()
    assert claims.actor_id == "admin-1"
    assert grant.target.tenant_id == "t1"
