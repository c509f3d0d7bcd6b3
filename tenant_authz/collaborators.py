"""
外部协作方接口定义。核心只依赖这些接口；具体实现由组合根在构造时注入，生命周期不归核心管理。
"""
from __future__ import annotations

from typing import Any, Dict, Protocol

from .models import AuditEntry, ClaimSet, ResourceKind


class CredentialVerifier(Protocol):
    """密码校验（哈希存储不在本核心范围内）。"""

    def verify_credential(self, secret: str, stored_hash: str) -> bool: ...


class TokenCodec(Protocol):
    """parse 验签失败抛 InvalidTokenSignature，结构错误抛 MalformedToken。"""

    def issue(self, claims: ClaimSet) -> str: ...

    def parse(self, token: str) -> Dict[str, Any]: ...


class QuotaLedger(Protocol):
    """
    配额台账：try_increment 必须是原子的「比较并自增」：
    仅当 used < ceiling 时 used += 1 并返回 True，检查与自增不可被并发请求分割。
    decrement 释放未落库的预留；release_deleted 在已提交的行被删除后回收名额。
    瞬时故障抛 TransientStorageError；租户不存在抛 LookupError。
    """

    def try_increment(self, tenant_id: str, kind: ResourceKind) -> bool: ...

    def decrement(self, tenant_id: str, kind: ResourceKind) -> None: ...

    def release_deleted(self, tenant_id: str, kind: ResourceKind) -> None: ...


class AuditSink(Protocol):
    """审计日志追加；返回 False 或抛异常均视为写入失败。"""

    def append(self, entry: AuditEntry) -> bool: ...
