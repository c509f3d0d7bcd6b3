"""
授权核心单元测试公共 fixture：配置、存储、流水线、令牌与测试客户端。
"""
from __future__ import annotations

import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from tenant_authz.audit import MemoryAuditLog
from tenant_authz.config import Settings
from tenant_authz.models import ClaimSet, Plan, Role, User
from tenant_authz.pipeline import build_pipeline
from tenant_authz.service import TenantService
from tenant_authz.store import MemoryStore
from tenant_authz.token import JwtTokenCodec

SECRET = "unit-test-secret-0123456789abcdef0123"

ROOT_ADMIN = ClaimSet("root-1", None, Role.PLATFORM_ADMIN)
ADMIN_T1 = ClaimSet("admin-1", "t1", Role.TENANT_ADMIN)
MEMBER_T1 = ClaimSet("member-1", "t1", Role.MEMBER)
ADMIN_T2 = ClaimSet("admin-2", "t2", Role.TENANT_ADMIN)
MEMBER_T2 = ClaimSet("member-2", "t2", Role.MEMBER)


def make_settings(**overrides) -> Settings:
    values = {"token_secret": SECRET, "quota_backoff_base": 0.0}
    values.update(overrides)
    return Settings(overrides=values, policy_path="")


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def store():
    """两个 FREE 租户（5 用户 / 3 项目），各自的管理员与成员已落库。"""
    s = MemoryStore()
    s.create_tenant("t1", "租户一", Plan.FREE)
    s.create_tenant("t2", "租户二", Plan.FREE)
    for claims in (ADMIN_T1, MEMBER_T1, ADMIN_T2, MEMBER_T2):
        s.insert_user(User(id=claims.actor_id, tenant_id=claims.tenant_id,
                           email=f"{claims.actor_id}@example.com", full_name=claims.actor_id, role=claims.role))
    return s


@pytest.fixture
def audit_log():
    return MemoryAuditLog()


@pytest.fixture
def pipeline(settings, store, audit_log):
    p = build_pipeline(settings, store, audit_sink=audit_log)
    yield p
    p.close()


@pytest.fixture
def service(store, pipeline):
    return TenantService(store, pipeline)


@pytest.fixture
def codec():
    return JwtTokenCodec(SECRET)


@pytest.fixture
def bearer(codec):
    def _bearer(claims: ClaimSet, issued_at=None) -> dict:
        return {"Authorization": "Bearer " + codec.issue(claims, issued_at=issued_at)}
    return _bearer


@pytest.fixture
def client(settings, store, audit_log):
    from fastapi.testclient import TestClient
    from tenant_authz.api import create_app

    app = create_app(settings, store, audit_sink=audit_log)
    with TestClient(app) as c:
        yield c
