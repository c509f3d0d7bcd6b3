"""
租户订阅配额：创建用户 / 项目前原子预留名额。
- 预留依赖台账的「比较并自增」，并发请求下成功数不超过上限。
- 台账瞬时故障按指数退避有限重试；仍失败则拒绝（STORAGE_UNAVAILABLE），不放行不确定的创建。
- 单次预留超时视为失败；超时后才落地的自增会被补偿释放。
- 预留后资源创建失败须 release()，不允许名额泄漏。
"""
from __future__ import annotations

import logging
import random
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, Union

from .collaborators import QuotaLedger
from .errors import AuthorizationFailed, ReasonCode, Rejection, TransientStorageError, reject
from .models import ResourceKind

logger = logging.getLogger("tenant_authz.quota")

QUOTA_GATED_KINDS = frozenset({ResourceKind.USER, ResourceKind.PROJECT})

HELD = "held"
CONSUMED = "consumed"
RELEASED = "released"


class Reservation:
    """预留凭证：由资源创建步骤 consume()；创建失败则 release()。"""

    def __init__(self, ledger: Optional[QuotaLedger], tenant_id: Optional[str], kind: ResourceKind) -> None:
        self.id = uuid.uuid4().hex
        self.tenant_id = tenant_id
        self.kind = kind
        self._ledger = ledger
        self._state = HELD
        self._lock = threading.Lock()

    @property
    def bypassed(self) -> bool:
        return self._ledger is None

    @property
    def state(self) -> str:
        return self._state

    def consume(self) -> None:
        with self._lock:
            if self._state != HELD:
                raise RuntimeError(f"reservation {self.id} already {self._state}")
            self._state = CONSUMED

    def release(self) -> None:
        """补偿释放；重复调用无副作用。已消费的预留不可释放（由删除资源时扣减台账）。"""
        with self._lock:
            if self._state != HELD:
                return
            self._state = RELEASED
        if self._ledger is not None and self.tenant_id is not None:
            self._ledger.decrement(self.tenant_id, self.kind)
            logger.info("quota reservation released tenant=%s kind=%s id=%s", self.tenant_id, self.kind.value, self.id)


class QuotaEnforcer:
    def __init__(self, ledger: QuotaLedger, retry_count: int = 3, backoff_base: float = 0.05,
                 timeout_sec: float = 2.0, sleep: Callable[[float], None] = time.sleep,
                 max_workers: int = 8) -> None:
        self._ledger = ledger
        self._retry_count = max(0, retry_count)
        self._backoff_base = backoff_base
        self._timeout_sec = timeout_sec
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="quota")

    def reserve(self, tenant_id: Optional[str], kind: ResourceKind) -> Union[Reservation, Rejection]:
        """reserve(tenant, kind) -> Reservation | Rejection(QUOTA_EXCEEDED | ...)。"""
        if tenant_id is None or kind not in QUOTA_GATED_KINDS:
            return Reservation(None, tenant_id, kind)

        deadline = time.monotonic() + self._timeout_sec
        for attempt in range(self._retry_count + 1):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            future = self._executor.submit(self._ledger.try_increment, tenant_id, kind)
            try:
                granted = future.result(timeout=remaining)
            except FutureTimeout:
                self._compensate_late(future, tenant_id, kind)
                break
            except TransientStorageError as e:
                logger.warning("quota reserve attempt=%s tenant=%s kind=%s transient: %s",
                               attempt + 1, tenant_id, kind.value, e)
                if attempt < self._retry_count:
                    self._sleep(self._retry_delay(attempt))
                    continue
                return reject(ReasonCode.STORAGE_UNAVAILABLE, f"重试 {self._retry_count} 次后仍失败")
            except LookupError:
                return reject(ReasonCode.NOT_FOUND, f"tenant={tenant_id}")
            if granted:
                return Reservation(self._ledger, tenant_id, kind)
            logger.info("quota exceeded tenant=%s kind=%s", tenant_id, kind.value)
            return reject(ReasonCode.QUOTA_EXCEEDED, kind.value)

        logger.warning("quota reserve timed out tenant=%s kind=%s", tenant_id, kind.value)
        return reject(ReasonCode.DEADLINE_EXCEEDED, "quota reservation")

    def reclaim(self, tenant_id: Optional[str], kind: ResourceKind) -> None:
        """已提交的资源被删除后回收名额。删除已生效，台账故障只记 WARNING，不回滚删除。"""
        if tenant_id is None or kind not in QUOTA_GATED_KINDS:
            return
        try:
            self._ledger.release_deleted(tenant_id, kind)
        except TransientStorageError as e:
            logger.warning("quota reclaim failed tenant=%s kind=%s: %s", tenant_id, kind.value, e)

    @contextmanager
    def reserving(self, tenant_id: Optional[str], kind: ResourceKind) -> Iterator[Reservation]:
        """
        with enforcer.reserving(tenant, kind) as r:
            create(...)
            r.consume()
        块内抛异常或未 consume 时自动释放。
        """
        result = self.reserve(tenant_id, kind)
        if isinstance(result, Rejection):
            raise AuthorizationFailed(result)
        try:
            yield result
        finally:
            result.release()

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def _retry_delay(self, attempt: int) -> float:
        """指数退避 + 轻微抖动（秒）。"""
        return self._backoff_base * (2 ** attempt) + random.uniform(0, self._backoff_base / 2)

    def _compensate_late(self, future: Future, tenant_id: str, kind: ResourceKind) -> None:
        if future.cancel():
            return

        def _release_if_granted(f: Future) -> None:
            if f.cancelled() or f.exception() is not None:
                return
            if f.result():
                self._ledger.decrement(tenant_id, kind)
                logger.warning("late quota increment released tenant=%s kind=%s", tenant_id, kind.value)

        future.add_done_callback(_release_if_granted)
