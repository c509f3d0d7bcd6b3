"""
配额预留：并发下不超限、瞬时故障重试、超时补偿、创建失败释放。
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from tenant_authz.errors import AuthorizationFailed, ReasonCode, Rejection, TransientStorageError
from tenant_authz.models import Plan, Project, ResourceKind
from tenant_authz.quota import CONSUMED, HELD, RELEASED, QuotaEnforcer, Reservation
from tenant_authz.store import MemoryStore


class FlakyLedger:
    """前 failures 次抛瞬时故障，之后按上限判定；记录调用次数。"""

    def __init__(self, failures: int, ceiling: int = 10) -> None:
        self.failures = failures
        self.ceiling = ceiling
        self.used = 0
        self.attempts = 0
        self.decrements = 0
        self.reclaims = 0
        self.reclaim_error = None

    def try_increment(self, tenant_id, kind):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise TransientStorageError("connection reset")
        if self.used >= self.ceiling:
            return False
        self.used += 1
        return True

    def decrement(self, tenant_id, kind):
        self.decrements += 1
        self.used = max(0, self.used - 1)

    def release_deleted(self, tenant_id, kind):
        if self.reclaim_error is not None:
            raise self.reclaim_error
        self.reclaims += 1
        self.used = max(0, self.used - 1)


class SlowLedger(FlakyLedger):
    def __init__(self) -> None:
        super().__init__(failures=0)
        self.gate = threading.Event()

    def try_increment(self, tenant_id, kind):
        self.gate.wait(5)
        return super().try_increment(tenant_id, kind)


@pytest.fixture
def ledger():
    s = MemoryStore()
    s.create_tenant("t1", "租户一", Plan.FREE, max_projects=3)
    return s


def test_concurrent_reservations_never_exceed_ceiling(ledger):
    enforcer = QuotaEnforcer(ledger)
    barrier = threading.Barrier(20)

    def attempt(_):
        barrier.wait()
        result = enforcer.reserve("t1", ResourceKind.PROJECT)
        if isinstance(result, Reservation):
            result.consume()
            return True
        assert result.code is ReasonCode.QUOTA_EXCEEDED
        return False

    with ThreadPoolExecutor(max_workers=20) as pool:
        results = list(pool.map(attempt, range(20)))
    enforcer.close()
    assert sum(results) == 3
    assert ledger.used("t1", ResourceKind.PROJECT) == 3


def test_transient_failure_is_retried():
    flaky = FlakyLedger(failures=2)
    sleeps = []
    enforcer = QuotaEnforcer(flaky, retry_count=3, backoff_base=0.1, sleep=sleeps.append)
    result = enforcer.reserve("t1", ResourceKind.USER)
    enforcer.close()
    assert isinstance(result, Reservation)
    assert flaky.attempts == 3
    assert len(sleeps) == 2
    assert sleeps[1] > sleeps[0]


def test_retries_exhausted_fail_closed():
    flaky = FlakyLedger(failures=100)
    sleeps = []
    enforcer = QuotaEnforcer(flaky, retry_count=2, backoff_base=0.01, sleep=sleeps.append)
    result = enforcer.reserve("t1", ResourceKind.PROJECT)
    enforcer.close()
    assert isinstance(result, Rejection)
    assert result.code is ReasonCode.STORAGE_UNAVAILABLE
    assert result.http_status == 503
    assert flaky.attempts == 3
    assert flaky.used == 0


def test_timeout_rejects_and_compensates_late_increment():
    slow = SlowLedger()
    enforcer = QuotaEnforcer(slow, timeout_sec=0.05)
    result = enforcer.reserve("t1", ResourceKind.PROJECT)
    assert result.code is ReasonCode.DEADLINE_EXCEEDED
    slow.gate.set()
    enforcer.close()
    assert slow.attempts == 1
    assert slow.decrements == 1
    assert slow.used == 0


def test_unknown_tenant_is_not_found(ledger):
    enforcer = QuotaEnforcer(ledger)
    assert enforcer.reserve("t-missing", ResourceKind.USER).code is ReasonCode.NOT_FOUND
    enforcer.close()


def test_release_is_idempotent():
    counting = FlakyLedger(failures=0)
    enforcer = QuotaEnforcer(counting)
    reservation = enforcer.reserve("t1", ResourceKind.USER)
    assert reservation.state == HELD
    reservation.release()
    reservation.release()
    enforcer.close()
    assert reservation.state == RELEASED
    assert counting.decrements == 1
    assert counting.used == 0


def test_consumed_reservation_is_not_released():
    counting = FlakyLedger(failures=0)
    enforcer = QuotaEnforcer(counting)
    reservation = enforcer.reserve("t1", ResourceKind.USER)
    reservation.consume()
    reservation.release()
    enforcer.close()
    assert reservation.state == CONSUMED
    assert counting.used == 1
    with pytest.raises(RuntimeError):
        reservation.consume()


def test_reserving_releases_when_block_raises(ledger):
    enforcer = QuotaEnforcer(ledger)
    with pytest.raises(KeyError):
        with enforcer.reserving("t1", ResourceKind.PROJECT):
            raise KeyError("insert failed")
    assert ledger.used("t1", ResourceKind.PROJECT) == 0

    with enforcer.reserving("t1", ResourceKind.PROJECT) as r:
        r.consume()
    assert ledger.used("t1", ResourceKind.PROJECT) == 1
    enforcer.close()


def test_reserving_raises_on_quota_exceeded(ledger):
    enforcer = QuotaEnforcer(ledger)
    for _ in range(3):
        enforcer.reserve("t1", ResourceKind.PROJECT).consume()
    with pytest.raises(AuthorizationFailed) as exc:
        with enforcer.reserving("t1", ResourceKind.PROJECT):
            pass
    enforcer.close()
    assert exc.value.rejection.code is ReasonCode.QUOTA_EXCEEDED


def test_platform_level_and_ungated_kinds_bypass():
    counting = FlakyLedger(failures=0)
    enforcer = QuotaEnforcer(counting)
    assert enforcer.reserve(None, ResourceKind.PROJECT).bypassed
    assert enforcer.reserve("t1", ResourceKind.TASK).bypassed
    enforcer.close()
    assert counting.attempts == 0


def test_backoff_grows_exponentially():
    enforcer = QuotaEnforcer(FlakyLedger(failures=0), backoff_base=0.1)
    delays = [enforcer._retry_delay(i) for i in range(3)]
    enforcer.close()
    assert 0.1 <= delays[0] <= 0.15
    assert 0.2 <= delays[1] <= 0.25
    assert 0.4 <= delays[2] <= 0.45


def test_store_usage_includes_existing_rows(ledger):
    for i in range(2):
        ledger.insert_project(Project(id=f"p{i}", tenant_id="t1", name=f"p{i}", created_by="admin-1"))
    assert ledger.used("t1", ResourceKind.PROJECT) == 2
    assert ledger.try_increment("t1", ResourceKind.PROJECT) is True
    assert ledger.try_increment("t1", ResourceKind.PROJECT) is False

    ledger.insert_project(Project(id="p2", tenant_id="t1", name="p2", created_by="admin-1"), reserved=True)
    assert ledger.count("t1", ResourceKind.PROJECT) == 3
    assert ledger.used("t1", ResourceKind.PROJECT) == 3

    ledger.delete_project("p0")
    ledger.release_deleted("t1", ResourceKind.PROJECT)
    assert ledger.used("t1", ResourceKind.PROJECT) == 2
    assert ledger.try_increment("t1", ResourceKind.PROJECT) is True


def test_reclaim_goes_through_ledger(caplog):
    counting = FlakyLedger(failures=0)
    counting.used = 2
    enforcer = QuotaEnforcer(counting)
    enforcer.reclaim("t1", ResourceKind.PROJECT)
    enforcer.reclaim(None, ResourceKind.PROJECT)
    enforcer.reclaim("t1", ResourceKind.TASK)
    assert counting.reclaims == 1
    assert counting.used == 1

    counting.reclaim_error = TransientStorageError("connection reset")
    with caplog.at_level(logging.WARNING, logger="tenant_authz.quota"):
        enforcer.reclaim("t1", ResourceKind.PROJECT)
    enforcer.close()
    assert counting.reclaims == 1
    assert any("quota reclaim failed" in r.getMessage() for r in caplog.records)
