"""
数据库配额台账：单条条件 UPDATE 完成「比较并自增」，
UPDATE quota_ledger SET used = used + 1 WHERE tenant_id = ? AND kind = ? AND used < ceiling
影响行数为 1 即预留成功。不存在先 COUNT 再 INSERT 的两步竞态。
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional, Union

from sqlalchemy import Column, Integer, String, create_engine, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import declarative_base

from .errors import TransientStorageError
from .models import ResourceKind

logger = logging.getLogger("tenant_authz.sql_ledger")

Base = declarative_base()


class QuotaLedgerRow(Base):
    __tablename__ = "quota_ledger"

    tenant_id = Column(String(64), primary_key=True)
    kind = Column(String(16), primary_key=True)  # user, project
    used = Column(Integer, nullable=False, default=0)
    ceiling = Column(Integer, nullable=False)


class SqlQuotaLedger:
    def __init__(self, engine: Union[Engine, str]) -> None:
        self._engine = create_engine(engine) if isinstance(engine, str) else engine
        Base.metadata.create_all(self._engine)

    def set_ceiling(self, tenant_id: str, kind: ResourceKind, ceiling: int, used: Optional[int] = None) -> None:
        """登记或调整上限（租户创建、套餐变更时调用）；used 给出时按实际行数校准使用量。"""
        table = QuotaLedgerRow.__table__
        values = {"ceiling": ceiling} if used is None else {"ceiling": ceiling, "used": used}
        with _transient_errors(), self._engine.begin() as conn:
            result = conn.execute(
                update(table)
                .where(table.c.tenant_id == tenant_id, table.c.kind == kind.value)
                .values(**values)
            )
            if result.rowcount == 0:
                conn.execute(table.insert().values(tenant_id=tenant_id, kind=kind.value, used=used or 0, ceiling=ceiling))

    def sync_from(self, store) -> None:
        """按存储中的租户上限与实际行数初始化台账（应用启动时调用）。"""
        tenants = store.list_tenants()
        for tenant in tenants:
            for kind in (ResourceKind.USER, ResourceKind.PROJECT):
                self.set_ceiling(tenant.id, kind, tenant.ceiling(kind), used=store.count(tenant.id, kind))
        logger.info("quota ledger synced tenants=%s", len(tenants))

    def try_increment(self, tenant_id: str, kind: ResourceKind) -> bool:
        table = QuotaLedgerRow.__table__
        with _transient_errors(), self._engine.begin() as conn:
            result = conn.execute(
                update(table)
                .where(
                    table.c.tenant_id == tenant_id,
                    table.c.kind == kind.value,
                    table.c.used < table.c.ceiling,
                )
                .values(used=table.c.used + 1)
            )
            if result.rowcount == 1:
                return True
            exists = conn.execute(
                select(table.c.tenant_id).where(table.c.tenant_id == tenant_id, table.c.kind == kind.value)
            ).first()
            if exists is None:
                raise LookupError(tenant_id)
            return False

    def decrement(self, tenant_id: str, kind: ResourceKind) -> None:
        table = QuotaLedgerRow.__table__
        with _transient_errors(), self._engine.begin() as conn:
            conn.execute(
                update(table)
                .where(table.c.tenant_id == tenant_id, table.c.kind == kind.value, table.c.used > 0)
                .values(used=table.c.used - 1)
            )

    def release_deleted(self, tenant_id: str, kind: ResourceKind) -> None:
        self.decrement(tenant_id, kind)

    def used(self, tenant_id: str, kind: ResourceKind) -> Optional[int]:
        table = QuotaLedgerRow.__table__
        with _transient_errors(), self._engine.connect() as conn:
            return conn.execute(
                select(table.c.used).where(table.c.tenant_id == tenant_id, table.c.kind == kind.value)
            ).scalar()


@contextmanager
def _transient_errors() -> Iterator[None]:
    """把连接中断、锁冲突等数据库故障转换为 TransientStorageError。"""
    try:
        yield
    except OperationalError as e:
        logger.warning("quota ledger transient failure: %s", e)
        raise TransientStorageError(str(e)) from e
    except DBAPIError as e:
        if not e.connection_invalidated:
            raise
        logger.warning("quota ledger connection lost: %s", e)
        raise TransientStorageError(str(e)) from e
