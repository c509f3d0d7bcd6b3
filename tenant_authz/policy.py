"""
策略引擎：纯判定函数 (claims, scope, action, target) -> Decision。
不访问存储；target 为调用方预先取回的归属快照。

判定顺序（先命中先返回）：
0. 删除用户且目标为本人 -> SELF_DELETION_FORBIDDEN（与角色无关）
1. super_admin -> 允许
2. 作用域绑定租户 t 且 target.tenant_id != t -> TENANT_MISMATCH（先于一切角色判断）
3. 按操作的规则表
4. 无规则命中 -> UNAUTHORIZED
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional

from .config import TaskUpdateRule, UserUpdateRule
from .errors import ReasonCode, Rejection, reject
from .models import Bound, ClaimSet, EffectiveScope, Role, Target

logger = logging.getLogger("tenant_authz.policy")


class Action(str, Enum):
    CREATE_USER = "CREATE_USER"
    UPDATE_USER = "UPDATE_USER"
    DELETE_USER = "DELETE_USER"
    LIST_USERS = "LIST_USERS"
    CREATE_PROJECT = "CREATE_PROJECT"
    UPDATE_PROJECT = "UPDATE_PROJECT"
    DELETE_PROJECT = "DELETE_PROJECT"
    READ_PROJECT = "READ_PROJECT"
    LIST_PROJECTS = "LIST_PROJECTS"
    CREATE_TASK = "CREATE_TASK"
    UPDATE_TASK_STATUS = "UPDATE_TASK_STATUS"
    UPDATE_TASK = "UPDATE_TASK"
    DELETE_TASK = "DELETE_TASK"
    READ_TASK = "READ_TASK"
    LIST_TASKS = "LIST_TASKS"

    @property
    def is_read(self) -> bool:
        return self in _READ_ACTIONS

    @property
    def is_create(self) -> bool:
        return self in (Action.CREATE_USER, Action.CREATE_PROJECT, Action.CREATE_TASK)


_READ_ACTIONS = frozenset({
    Action.LIST_USERS, Action.READ_PROJECT, Action.LIST_PROJECTS, Action.READ_TASK, Action.LIST_TASKS,
})

# 用户本人可自行修改的字段；role / is_active 需租户管理员
SELF_SERVICE_USER_FIELDS: FrozenSet[str] = frozenset({"full_name"})


@dataclass(frozen=True)
class Decision:
    allowed: bool
    rejection: Optional[Rejection] = None

    @property
    def reason(self) -> Optional[ReasonCode]:
        return self.rejection.code if self.rejection else None


ALLOW = Decision(True)


def deny(code: ReasonCode, details: str = "") -> Decision:
    return Decision(False, reject(code, details))


class PolicyEngine:
    def __init__(self, user_update_rule: UserUpdateRule = UserUpdateRule.ADMIN_OR_SELF,
                 task_update_rule: TaskUpdateRule = TaskUpdateRule.CREATOR_ASSIGNEE_OR_ADMIN) -> None:
        self.user_update_rule = user_update_rule
        self.task_update_rule = task_update_rule
        self._rules: Dict[Action, Callable[[ClaimSet, Target], bool]] = {
            Action.CREATE_USER: _admin_only,
            Action.UPDATE_USER: self._can_update_user,
            Action.DELETE_USER: _admin_only,
            Action.LIST_USERS: _any_member,
            Action.CREATE_PROJECT: _admin_only,
            Action.UPDATE_PROJECT: _admin_or_owner,
            Action.DELETE_PROJECT: _admin_or_owner,
            Action.READ_PROJECT: _any_member,
            Action.LIST_PROJECTS: _any_member,
            Action.CREATE_TASK: _any_member,
            Action.UPDATE_TASK_STATUS: _any_member,
            Action.UPDATE_TASK: self._can_update_task,
            Action.DELETE_TASK: _admin_only,
            Action.READ_TASK: _any_member,
            Action.LIST_TASKS: _any_member,
        }

    def decide(self, claims: ClaimSet, scope: EffectiveScope, action: Action, target: Target) -> Decision:
        if action is Action.DELETE_USER and target.resource_id == claims.actor_id:
            return deny(ReasonCode.SELF_DELETION_FORBIDDEN)
        if claims.is_platform_admin:
            return ALLOW
        if not isinstance(scope, Bound):
            # 非平台管理员不可能拿到 Unrestricted；出现即拒绝
            return deny(ReasonCode.UNAUTHORIZED, "scope")
        if target.tenant_id != scope.tenant_id:
            return deny(ReasonCode.TENANT_MISMATCH)
        rule = self._rules.get(action)
        if rule is not None and rule(claims, target):
            return ALLOW
        logger.debug("policy deny actor=%s action=%s target=%s", claims.actor_id, action.value, target.resource_id)
        return deny(ReasonCode.UNAUTHORIZED, action.value)

    def _can_update_user(self, claims: ClaimSet, target: Target) -> bool:
        if claims.role is Role.TENANT_ADMIN:
            return True
        if self.user_update_rule is UserUpdateRule.ADMIN_ONLY:
            return False
        return target.resource_id == claims.actor_id and target.fields <= SELF_SERVICE_USER_FIELDS

    def _can_update_task(self, claims: ClaimSet, target: Target) -> bool:
        if claims.role is Role.TENANT_ADMIN:
            return True
        rule = self.task_update_rule
        if rule is TaskUpdateRule.ADMIN_ONLY:
            return False
        if target.owner_id == claims.actor_id:
            return True
        return rule is TaskUpdateRule.CREATOR_ASSIGNEE_OR_ADMIN and target.assignee_id == claims.actor_id


def _admin_only(claims: ClaimSet, target: Target) -> bool:
    return claims.role is Role.TENANT_ADMIN


def _admin_or_owner(claims: ClaimSet, target: Target) -> bool:
    return claims.role is Role.TENANT_ADMIN or (target.owner_id is not None and target.owner_id == claims.actor_id)


def _any_member(claims: ClaimSet, target: Target) -> bool:
    return claims.role in (Role.TENANT_ADMIN, Role.MEMBER)
