"""
审计发射：每次变更恰好一条、读与拒绝默认不记、写入失败计数并告警、JSONL 完整性校验。
"""
from __future__ import annotations

import json
import logging

from conftest import ADMIN_T1, MEMBER_T1, ROOT_ADMIN
from tenant_authz.audit import (
    OUTCOME_ALLOWED,
    OUTCOME_DENIED,
    AuditEmitter,
    DecisionContext,
    JsonlAuditLog,
    MemoryAuditLog,
)
from tenant_authz.models import AuditEntry, ResourceKind, Target
from tenant_authz.policy import Action


def _ctx(action=Action.CREATE_PROJECT, allowed=True, claims=ADMIN_T1, tenant="t1", entity_id="p-1"):
    return DecisionContext(
        claims=claims, action=action, target=Target(ResourceKind.PROJECT, tenant),
        allowed=allowed, entity_id=entity_id, source_address="10.0.0.1",
    )


def test_allowed_change_is_recorded_once():
    log = MemoryAuditLog()
    emitter = AuditEmitter(log, clock=lambda: 123.0)
    emitter.record(_ctx())
    assert emitter.flush(timeout=5)
    emitter.close()
    assert log.search() == [{
        "tenantId": "t1",
        "actorId": "admin-1",
        "action": "CREATE_PROJECT",
        "entityType": "project",
        "entityId": "p-1",
        "outcome": OUTCOME_ALLOWED,
        "timestamp": 123.0,
        "sourceAddress": "10.0.0.1",
    }]


def test_reads_are_not_recorded():
    log = MemoryAuditLog()
    emitter = AuditEmitter(log)
    for action in (Action.READ_PROJECT, Action.LIST_PROJECTS, Action.LIST_USERS, Action.LIST_TASKS):
        emitter.record(_ctx(action=action))
    emitter.flush(timeout=5)
    emitter.close()
    assert len(log) == 0


def test_denials_recorded_only_when_enabled():
    quiet_log, loud_log = MemoryAuditLog(), MemoryAuditLog()
    quiet = AuditEmitter(quiet_log)
    loud = AuditEmitter(loud_log, audit_denials=True)
    for emitter in (quiet, loud):
        emitter.record(_ctx(action=Action.DELETE_PROJECT, allowed=False, claims=MEMBER_T1, entity_id=None))
        emitter.flush(timeout=5)
        emitter.close()
    assert len(quiet_log) == 0
    records = loud_log.search()
    assert len(records) == 1
    assert records[0]["outcome"] == OUTCOME_DENIED
    assert records[0]["actorId"] == "member-1"


def test_platform_admin_entry_uses_target_tenant():
    emitter = AuditEmitter(MemoryAuditLog())
    entry = emitter.build_entry(_ctx(claims=ROOT_ADMIN, tenant="t2"))
    emitter.close()
    assert entry.tenant_id == "t2"
    assert entry.actor_id == "root-1"


class _BrokenSink:
    def append(self, entry):
        raise OSError("disk full")


class _RefusingSink:
    def append(self, entry):
        return False


def test_sink_failure_is_counted_and_logged(caplog):
    with caplog.at_level(logging.WARNING, logger="tenant_authz.audit"):
        for sink in (_BrokenSink(), _RefusingSink()):
            emitter = AuditEmitter(sink)
            emitter.record(_ctx())
            emitter.flush(timeout=5)
            emitter.close()
            assert emitter.failures == 1
    assert len([r for r in caplog.records if "audit append failed" in r.getMessage()]) == 2


def test_memory_log_search_filters():
    log = MemoryAuditLog()
    log.append(AuditEntry("t1", "admin-1", "CREATE_PROJECT", "project", "p-1", OUTCOME_ALLOWED, 1.0))
    log.append(AuditEntry("t2", "admin-2", "DELETE_PROJECT", "project", "p-2", OUTCOME_ALLOWED, 2.0))
    assert [r["entityId"] for r in log.search(tenant_id="t2")] == ["p-2"]
    assert [r["entityId"] for r in log.search(action="CREATE_PROJECT")] == ["p-1"]
    assert log.search(actor_id="nobody") == []


def test_jsonl_log_append_search_and_verify(tmp_path):
    path = tmp_path / "audit" / "authz.jsonl"
    log = JsonlAuditLog(str(path))
    log.append(AuditEntry("t1", "admin-1", "CREATE_USER", "user", "u-1", OUTCOME_ALLOWED, 1.0))
    log.append(AuditEntry("t1", "admin-1", "DELETE_USER", "user", "u-1", OUTCOME_ALLOWED, 2.0))
    assert [r["action"] for r in log.search(tenant_id="t1")] == ["CREATE_USER", "DELETE_USER"]
    assert log.verify() == []

    lines = path.read_text(encoding="utf-8").splitlines()
    record = json.loads(lines[0])
    record["actorId"] = "intruder"
    lines[0] = json.dumps(record, ensure_ascii=False)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    assert log.verify() == [1]


def test_jsonl_log_missing_file_is_empty(tmp_path):
    log = JsonlAuditLog(str(tmp_path / "none.jsonl"))
    assert log.search() == []
    assert log.verify() == []


def test_record_after_close_is_counted_not_raised(caplog):
    emitter = AuditEmitter(MemoryAuditLog())
    emitter.close()
    with caplog.at_level(logging.WARNING, logger="tenant_authz.audit"):
        emitter.record(_ctx())
    assert emitter.failures == 1
    assert any("audit append failed" in r.getMessage() for r in caplog.records)
