"""
授权核心配置：环境变量优先，其次策略文件（AUTHZ_POLICY_PATH，支持 .json / .yaml / .yml），最后默认值。
可配置项：token 有效期、是否审计拒绝事件、用户更新规则、任务全量更新规则、配额重试与超时。
"""
from __future__ import annotations

import json
import os
from enum import Enum
from typing import Any, Dict, Optional


class UserUpdateRule(str, Enum):
    # 租户管理员，或用户本人修改非特权字段（姓名）
    ADMIN_OR_SELF = "admin_or_self"
    ADMIN_ONLY = "admin_only"


class TaskUpdateRule(str, Enum):
    CREATOR_ASSIGNEE_OR_ADMIN = "creator_assignee_or_admin"
    CREATOR_OR_ADMIN = "creator_or_admin"
    ADMIN_ONLY = "admin_only"


# 环境变量名 -> 配置键
_ENV_KEYS = {
    "AUTHZ_TOKEN_SECRET": "token_secret",
    "AUTHZ_TOKEN_ALGORITHM": "token_algorithm",
    "AUTHZ_TOKEN_TTL_SEC": "token_ttl_sec",
    "AUTHZ_AUDIT_DENIALS": "audit_denials",
    "AUTHZ_AUDIT_LOG_PATH": "audit_log_path",
    "AUTHZ_USER_UPDATE_RULE": "user_update_rule",
    "AUTHZ_TASK_UPDATE_RULE": "task_update_rule",
    "AUTHZ_QUOTA_RETRY_COUNT": "quota_retry_count",
    "AUTHZ_QUOTA_BACKOFF_BASE": "quota_backoff_base",
    "AUTHZ_QUOTA_TIMEOUT_SEC": "quota_timeout_sec",
    "AUTHZ_DECISION_DEADLINE_SEC": "decision_deadline_sec",
    "PORT": "port",
}

DEFAULTS: Dict[str, Any] = {
    "token_secret": "",
    "token_algorithm": "HS256",
    "token_ttl_sec": 86400,
    "audit_denials": False,
    "audit_log_path": "",
    "user_update_rule": UserUpdateRule.ADMIN_OR_SELF.value,
    "task_update_rule": TaskUpdateRule.CREATOR_ASSIGNEE_OR_ADMIN.value,
    "quota_retry_count": 3,
    "quota_backoff_base": 0.05,
    "quota_timeout_sec": 2.0,
    "decision_deadline_sec": 2.0,
    "port": 8000,
}


def _load_policy_file(path: str) -> Dict[str, Any]:
    """从文件加载配置：.json 为对象；.yaml/.yml 顶层可直接写键，或放在 authz: 下。"""
    with open(path, "r", encoding="utf-8") as f:
        content = f.read()
    if not content.strip():
        return {}
    if path.lower().endswith((".yaml", ".yml")):
        import yaml
        data = yaml.safe_load(content) or {}
    else:
        data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError(f"策略文件格式错误: {path}")
    section = data.get("authz", data)
    return {k: v for k, v in section.items() if k in DEFAULTS}


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """统一配置入口。测试中可直接传入 overrides，跳过环境与文件。"""

    def __init__(self, overrides: Optional[Dict[str, Any]] = None, policy_path: Optional[str] = None) -> None:
        values = dict(DEFAULTS)
        path = policy_path if policy_path is not None else os.environ.get("AUTHZ_POLICY_PATH", "").strip()
        if path and os.path.isfile(path):
            values.update(_load_policy_file(path))
        for env_key, key in _ENV_KEYS.items():
            raw = os.environ.get(env_key)
            if raw is not None and raw.strip() != "":
                values[key] = raw.strip()
        values.update(overrides or {})

        self.token_secret: str = str(values["token_secret"])
        self.token_algorithm: str = str(values["token_algorithm"])
        self.token_ttl_sec: int = int(values["token_ttl_sec"])
        self.audit_denials: bool = _as_bool(values["audit_denials"])
        self.audit_log_path: str = str(values["audit_log_path"] or "")
        self.user_update_rule = UserUpdateRule(values["user_update_rule"])
        self.task_update_rule = TaskUpdateRule(values["task_update_rule"])
        self.quota_retry_count: int = max(0, int(values["quota_retry_count"]))
        self.quota_backoff_base: float = float(values["quota_backoff_base"])
        self.quota_timeout_sec: float = float(values["quota_timeout_sec"])
        self.decision_deadline_sec: float = float(values["decision_deadline_sec"])
        self.port: int = int(values["port"])

        if self.token_ttl_sec <= 0:
            raise ValueError("AUTHZ_TOKEN_TTL_SEC 必须为正数")

    def __repr__(self) -> str:
        # 不输出密钥
        return (
            f"Settings(token_algorithm={self.token_algorithm!r}, token_ttl_sec={self.token_ttl_sec}, "
            f"audit_denials={self.audit_denials}, user_update_rule={self.user_update_rule.value}, "
            f"task_update_rule={self.task_update_rule.value})"
        )
