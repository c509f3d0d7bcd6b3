"""
审计发射：每个状态变更结果（创建/更新/删除）恰好一条记录；读操作不记；
拒绝事件仅在开启 audit_denials 时记录。
写入在后台线程执行，调用方不等待；写入失败不回滚主操作，但必须记 WARNING 日志并计数，不静默吞掉。

落盘实现 JsonlAuditLog：仅追加，每行带 lineHash（SHA256 前 16 字符）供事后校验完整性。
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from .collaborators import AuditSink
from .models import AuditEntry, ClaimSet, Target
from .policy import Action

logger = logging.getLogger("tenant_authz.audit")

OUTCOME_ALLOWED = "Allowed"
OUTCOME_DENIED = "Denied"


@dataclass(frozen=True)
class DecisionContext:
    claims: ClaimSet
    action: Action
    target: Target
    allowed: bool
    entity_id: Optional[str] = None
    source_address: str = ""


class AuditEmitter:
    def __init__(self, sink: AuditSink, audit_denials: bool = False,
                 clock: Callable[[], float] = time.time, max_workers: int = 2) -> None:
        self._sink = sink
        self.audit_denials = audit_denials
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="audit")
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()
        self.failures = 0

    def record(self, context: DecisionContext) -> None:
        entry = self.build_entry(context)
        if entry is None:
            return
        try:
            future = self._executor.submit(self._append, entry)
        except RuntimeError as e:
            # 执行器已关闭：记失败，不影响主操作
            self._record_failure(entry, repr(e))
            return
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._done)

    def build_entry(self, context: DecisionContext) -> Optional[AuditEntry]:
        if context.action.is_read:
            return None
        if not context.allowed and not self.audit_denials:
            return None
        target = context.target
        return AuditEntry(
            tenant_id=target.tenant_id if target.tenant_id is not None else context.claims.tenant_id,
            actor_id=context.claims.actor_id,
            action=context.action.value,
            entity_type=target.kind.value,
            entity_id=context.entity_id or target.resource_id,
            outcome=OUTCOME_ALLOWED if context.allowed else OUTCOME_DENIED,
            timestamp=self._clock(),
            source_address=context.source_address,
        )

    def flush(self, timeout: Optional[float] = None) -> bool:
        """等待已提交的审计写入完成（测试与停机使用）。返回是否全部完成。"""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def _append(self, entry: AuditEntry) -> None:
        try:
            ok = self._sink.append(entry)
        except Exception as e:
            self._record_failure(entry, repr(e))
            return
        if not ok:
            self._record_failure(entry, "sink returned failure")

    def _record_failure(self, entry: AuditEntry, detail: str) -> None:
        with self._lock:
            self.failures += 1
        logger.warning(
            "audit append failed action=%s entity=%s/%s actor=%s: %s",
            entry.action, entry.entity_type, entry.entity_id, entry.actor_id, detail,
        )

    def _done(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)


def _line_hash(record: Dict[str, Any]) -> str:
    """记录内容哈希（不含 lineHash 自身）。"""
    payload = json.dumps(record, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def _matches(record: Dict[str, Any], tenant_id: str, actor_id: str, action: str) -> bool:
    if tenant_id and record.get("tenantId") != tenant_id:
        return False
    if actor_id and record.get("actorId") != actor_id:
        return False
    if action and record.get("action") != action:
        return False
    return True


class MemoryAuditLog:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: List[Dict[str, Any]] = []

    def append(self, entry: AuditEntry) -> bool:
        with self._lock:
            self._records.append(entry.to_dict())
        return True

    def search(self, tenant_id: str = "", actor_id: str = "", action: str = "", limit: int = 100) -> List[Dict[str, Any]]:
        with self._lock:
            out = [dict(r) for r in self._records if _matches(r, tenant_id, actor_id, action)]
        return out[-limit:]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class JsonlAuditLog:
    """追加写 JSON Lines 文件；不提供修改与删除。"""

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)

    def append(self, entry: AuditEntry) -> bool:
        record = entry.to_dict()
        record["lineHash"] = _line_hash(record)
        line = json.dumps(record, ensure_ascii=False) + "\n"
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line)
        return True

    def search(self, tenant_id: str = "", actor_id: str = "", action: str = "", limit: int = 100) -> List[Dict[str, Any]]:
        out = [r for r in self._read() if _matches(r, tenant_id, actor_id, action)]
        return out[-limit:]

    def verify(self) -> List[int]:
        """返回 lineHash 校验失败的行号（从 1 开始）；空列表表示未被篡改。"""
        bad = []
        for lineno, record in enumerate(self._read(), start=1):
            expected = record.pop("lineHash", None)
            if expected != _line_hash(record):
                bad.append(lineno)
        return bad

    def _read(self) -> List[Dict[str, Any]]:
        if not os.path.isfile(self.path):
            return []
        records = []
        with self._lock:
            with open(self.path, "r", encoding="utf-8") as f:
                lines = f.readlines()
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                # 损坏行按篡改处理
                records.append({"lineHash": None, "corrupt": line})
        return records
