"""
数据库配额台账：条件 UPDATE 自增、上限、瞬时故障转换。
"""
from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from tenant_authz.errors import ReasonCode, Rejection, TransientStorageError
from tenant_authz.models import Plan, Project, ResourceKind, User
from tenant_authz.quota import QuotaEnforcer, Reservation
from tenant_authz.sql_ledger import Base, SqlQuotaLedger
from tenant_authz.store import MemoryStore


@pytest.fixture
def engine():
    e = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    yield e
    e.dispose()


@pytest.fixture
def ledger(engine):
    sql_ledger = SqlQuotaLedger(engine)
    sql_ledger.set_ceiling("t1", ResourceKind.PROJECT, 2)
    return sql_ledger


def test_increment_until_ceiling(ledger):
    assert ledger.try_increment("t1", ResourceKind.PROJECT) is True
    assert ledger.try_increment("t1", ResourceKind.PROJECT) is True
    assert ledger.try_increment("t1", ResourceKind.PROJECT) is False
    assert ledger.used("t1", ResourceKind.PROJECT) == 2


def test_decrement_frees_slot_and_floors_at_zero(ledger):
    ledger.try_increment("t1", ResourceKind.PROJECT)
    ledger.decrement("t1", ResourceKind.PROJECT)
    ledger.decrement("t1", ResourceKind.PROJECT)
    assert ledger.used("t1", ResourceKind.PROJECT) == 0


def test_unknown_tenant_raises_lookup(ledger):
    with pytest.raises(LookupError):
        ledger.try_increment("t-missing", ResourceKind.PROJECT)
    assert ledger.used("t-missing", ResourceKind.PROJECT) is None


def test_raising_ceiling_keeps_usage(ledger):
    ledger.try_increment("t1", ResourceKind.PROJECT)
    ledger.try_increment("t1", ResourceKind.PROJECT)
    ledger.set_ceiling("t1", ResourceKind.PROJECT, 3)
    assert ledger.used("t1", ResourceKind.PROJECT) == 2
    assert ledger.try_increment("t1", ResourceKind.PROJECT) is True


def test_database_failure_becomes_transient(engine, ledger):
    Base.metadata.drop_all(engine)
    with pytest.raises(TransientStorageError):
        ledger.try_increment("t1", ResourceKind.PROJECT)


def test_enforcer_over_sql_ledger(ledger):
    enforcer = QuotaEnforcer(ledger, retry_count=0)
    first = enforcer.reserve("t1", ResourceKind.PROJECT)
    second = enforcer.reserve("t1", ResourceKind.PROJECT)
    third = enforcer.reserve("t1", ResourceKind.PROJECT)
    assert isinstance(first, Reservation) and isinstance(second, Reservation)
    assert isinstance(third, Rejection) and third.code is ReasonCode.QUOTA_EXCEEDED
    first.release()
    assert ledger.used("t1", ResourceKind.PROJECT) == 1
    enforcer.close()


def test_sync_from_store_counts_existing_rows(engine):
    store = MemoryStore()
    store.create_tenant("t1", "租户一", Plan.FREE)
    store.insert_user(User(id="u-1", tenant_id="t1", email="a@example.com", full_name="a"))
    store.insert_project(Project(id="p-1", tenant_id="t1", name="p", created_by="u-1"))
    sql_ledger = SqlQuotaLedger(engine)
    sql_ledger.set_ceiling("t1", ResourceKind.PROJECT, 3)
    sql_ledger.sync_from(store)
    assert sql_ledger.used("t1", ResourceKind.USER) == 1
    assert sql_ledger.used("t1", ResourceKind.PROJECT) == 1
    assert sql_ledger.try_increment("t1", ResourceKind.PROJECT) is True
    assert sql_ledger.try_increment("t1", ResourceKind.PROJECT) is True
    assert sql_ledger.try_increment("t1", ResourceKind.PROJECT) is False

    sql_ledger.release_deleted("t1", ResourceKind.PROJECT)
    assert sql_ledger.used("t1", ResourceKind.PROJECT) == 2
