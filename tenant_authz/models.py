"""
授权核心数据模型：身份声明、角色、租户、资源归属快照、审计记录。
角色与状态均为封闭枚举，取值与原业务库字段一致（super_admin / tenant_admin / user 等），
禁止在业务代码中直接比较字符串。
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Union


class Role(str, Enum):
    PLATFORM_ADMIN = "super_admin"
    TENANT_ADMIN = "tenant_admin"
    MEMBER = "user"


class TenantStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class Plan(str, Enum):
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    COMPLETED = "completed"


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ResourceKind(str, Enum):
    TENANT = "tenant"
    USER = "user"
    PROJECT = "project"
    TASK = "task"


# 套餐默认上限：plan -> (max_users, max_projects)
PLAN_LIMITS: Dict[Plan, tuple[int, int]] = {
    Plan.FREE: (5, 3),
    Plan.PRO: (25, 15),
    Plan.ENTERPRISE: (100, 50),
}


@dataclass(frozen=True)
class ClaimSet:
    """已验签的身份声明；仅由 TokenValidator 产生，单次请求内不可变。"""

    actor_id: str
    tenant_id: Optional[str]
    role: Role

    @property
    def is_platform_admin(self) -> bool:
        return self.role is Role.PLATFORM_ADMIN


@dataclass(frozen=True)
class Unrestricted:
    """平台级作用域（仅 PlatformAdmin）。"""


@dataclass(frozen=True)
class Bound:
    tenant_id: str


EffectiveScope = Union[Unrestricted, Bound]


@dataclass
class Tenant:
    id: str
    name: str
    status: TenantStatus = TenantStatus.ACTIVE
    plan: Plan = Plan.FREE
    max_users: int = PLAN_LIMITS[Plan.FREE][0]
    max_projects: int = PLAN_LIMITS[Plan.FREE][1]

    def ceiling(self, kind: ResourceKind) -> Optional[int]:
        if kind is ResourceKind.USER:
            return self.max_users
        if kind is ResourceKind.PROJECT:
            return self.max_projects
        return None


@dataclass
class User:
    id: str
    tenant_id: Optional[str]
    email: str
    full_name: str
    role: Role = Role.MEMBER
    is_active: bool = True
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "email": self.email,
            "fullName": self.full_name,
            "role": self.role.value,
            "isActive": self.is_active,
            "createdAt": self.created_at,
        }


@dataclass
class Project:
    id: str
    tenant_id: str
    name: str
    created_by: str
    description: str = ""
    status: ProjectStatus = ProjectStatus.ACTIVE
    created_at: float = field(default_factory=time.time)
    updated_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "createdBy": self.created_by,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class Task:
    """任务的 tenant_id 在创建时取自所属项目，之后不再变化。"""

    id: str
    project_id: str
    tenant_id: str
    title: str
    created_by: str
    description: str = ""
    status: TaskStatus = TaskStatus.TODO
    assigned_to: Optional[str] = None
    priority: str = "medium"
    due_date: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "tenantId": self.tenant_id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "assignedTo": self.assigned_to,
            "priority": self.priority,
            "dueDate": self.due_date,
            "createdBy": self.created_by,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class Target:
    """
    策略判定所需的资源归属快照（只含归属字段，不含业务数据）。
    创建类操作的 target 为承载资源的容器：resource_id 为空，tenant_id 为将要写入的租户。
    """

    kind: ResourceKind
    tenant_id: Optional[str]
    resource_id: Optional[str] = None
    owner_id: Optional[str] = None
    assignee_id: Optional[str] = None
    fields: FrozenSet[str] = frozenset()

    @classmethod
    def of_user(cls, user: User, fields: FrozenSet[str] = frozenset()) -> "Target":
        return cls(ResourceKind.USER, user.tenant_id, user.id, owner_id=user.id, fields=fields)

    @classmethod
    def of_project(cls, project: Project, fields: FrozenSet[str] = frozenset()) -> "Target":
        return cls(ResourceKind.PROJECT, project.tenant_id, project.id, owner_id=project.created_by, fields=fields)

    @classmethod
    def of_task(cls, task: Task, fields: FrozenSet[str] = frozenset()) -> "Target":
        return cls(
            ResourceKind.TASK, task.tenant_id, task.id,
            owner_id=task.created_by, assignee_id=task.assigned_to, fields=fields,
        )


@dataclass(frozen=True)
class AuditEntry:
    """审计记录；序列化字段名为下游审计消费方的兼容契约。"""

    tenant_id: Optional[str]
    actor_id: str
    action: str
    entity_type: str
    entity_id: Optional[str]
    outcome: str
    timestamp: float
    source_address: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenantId": self.tenant_id,
            "actorId": self.actor_id,
            "action": self.action,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "outcome": self.outcome,
            "timestamp": self.timestamp,
            "sourceAddress": self.source_address,
        }
