"""
租户内业务操作：用户、项目、任务。
每个操作：取归属快照 -> 流水线授权 -> 租户状态 -> （创建时）配额预留 -> 写存储 -> 审计。
返回实体或 Rejection，由传输层映射为 HTTP 状态。
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import ReasonCode, Rejection, reject
from .models import (
    ClaimSet,
    Project,
    ProjectStatus,
    ResourceKind,
    Role,
    Task,
    TaskStatus,
    TenantStatus,
    Target,
    User,
)
from .pipeline import AccessGrant, AuthorizationPipeline
from .policy import Action
from .store import MemoryStore

logger = logging.getLogger("tenant_authz.service")

# 读操作对其他租户的资源返回 404，不暴露资源是否存在
_HIDE_ON_MISMATCH = frozenset({Action.READ_PROJECT, Action.READ_TASK, Action.LIST_TASKS})


def _new_id() -> str:
    return str(uuid.uuid4())


def _changed(**fields: Any) -> Dict[str, Any]:
    return {k: v for k, v in fields.items() if v is not None}


class TenantService:
    def __init__(self, store: MemoryStore, pipeline: AuthorizationPipeline) -> None:
        self.store = store
        self.pipeline = pipeline

    # ---------- 用户 ----------

    def create_user(self, claims: ClaimSet, tenant_id: str, email: str, full_name: str,
                    role: Role = Role.MEMBER, source_address: str = "") -> Union[User, Rejection]:
        if not email or not email.strip():
            return reject(ReasonCode.VALIDATION_FAILED, "email 必填")
        if role is Role.PLATFORM_ADMIN:
            return reject(ReasonCode.VALIDATION_FAILED, "租户内不可创建 super_admin")
        target = Target(ResourceKind.USER, tenant_id)
        grant = self._authorize(claims, Action.CREATE_USER, target, tenant_id, source_address)
        if isinstance(grant, Rejection):
            return grant
        user = User(id=_new_id(), tenant_id=tenant_id, email=email.strip(), full_name=(full_name or "").strip(), role=role)
        try:
            return self.pipeline.create(
                grant, ResourceKind.USER, lambda: self.store.insert_user(user, reserved=True), source_address,
            )
        except ValueError as e:
            return reject(ReasonCode.VALIDATION_FAILED, str(e))

    def list_users(self, claims: ClaimSet, tenant_id: str) -> Union[List[User], Rejection]:
        target = Target(ResourceKind.USER, tenant_id)
        grant = self._authorize(claims, Action.LIST_USERS, target, tenant_id)
        if isinstance(grant, Rejection):
            return grant
        return self.store.list_users(tenant_id)

    def update_user(self, claims: ClaimSet, user_id: str, full_name: Optional[str] = None,
                    role: Optional[Role] = None, is_active: Optional[bool] = None,
                    source_address: str = "") -> Union[User, Rejection]:
        user = self.store.get_user(user_id)
        if user is None:
            return reject(ReasonCode.NOT_FOUND, f"user={user_id}")
        if role is Role.PLATFORM_ADMIN:
            return reject(ReasonCode.VALIDATION_FAILED, "不可提升为 super_admin")
        changes = _changed(full_name=full_name, role=role, is_active=is_active)
        target = Target.of_user(user, frozenset(changes))
        grant = self._authorize(claims, Action.UPDATE_USER, target, source_address=source_address)
        if isinstance(grant, Rejection):
            return grant
        updated = self.store.update_user(user_id, changes)
        if updated is None:
            return reject(ReasonCode.NOT_FOUND, f"user={user_id}")
        self.pipeline.record(grant, user_id, source_address)
        return updated

    def delete_user(self, claims: ClaimSet, user_id: str, source_address: str = "") -> Union[bool, Rejection]:
        user = self.store.get_user(user_id)
        if user is None:
            if user_id == claims.actor_id:
                return reject(ReasonCode.SELF_DELETION_FORBIDDEN)
            return reject(ReasonCode.NOT_FOUND, f"user={user_id}")
        grant = self._authorize(claims, Action.DELETE_USER, Target.of_user(user), source_address=source_address)
        if isinstance(grant, Rejection):
            return grant
        if not self.store.delete_user(user_id):
            return reject(ReasonCode.NOT_FOUND, f"user={user_id}")
        self.pipeline.quota.reclaim(user.tenant_id, ResourceKind.USER)
        self.pipeline.record(grant, user_id, source_address)
        return True

    # ---------- 项目 ----------

    def create_project(self, claims: ClaimSet, name: str, description: str = "",
                       status: ProjectStatus = ProjectStatus.ACTIVE, tenant_id: Optional[str] = None,
                       source_address: str = "") -> Union[Project, Rejection]:
        if not name or not name.strip():
            return reject(ReasonCode.VALIDATION_FAILED, "name 必填")
        # 非平台管理员的租户只来自声明；tenant_id 仅作路由提示，由作用域解析校验
        owner_tenant = claims.tenant_id if not claims.is_platform_admin else tenant_id
        if owner_tenant is None:
            if claims.is_platform_admin:
                return reject(ReasonCode.VALIDATION_FAILED, "super_admin 创建项目须指定 tenantId")
            return reject(ReasonCode.NO_TENANT_ASSIGNED)
        target = Target(ResourceKind.PROJECT, owner_tenant)
        grant = self._authorize(claims, Action.CREATE_PROJECT, target, tenant_id, source_address)
        if isinstance(grant, Rejection):
            return grant
        project = Project(
            id=_new_id(), tenant_id=owner_tenant, name=name.strip(), description=description or "",
            status=status, created_by=claims.actor_id,
        )
        return self.pipeline.create(
            grant, ResourceKind.PROJECT, lambda: self.store.insert_project(project, reserved=True), source_address,
        )

    def list_projects(self, claims: ClaimSet, status: Optional[ProjectStatus] = None, search: str = "",
                      page: int = 1, limit: int = 20,
                      tenant_id: Optional[str] = None) -> Union[Tuple[List[Dict[str, Any]], int], Rejection]:
        owner_tenant = claims.tenant_id if not claims.is_platform_admin else tenant_id
        target = Target(ResourceKind.PROJECT, owner_tenant)
        grant = self._authorize(claims, Action.LIST_PROJECTS, target, tenant_id)
        if isinstance(grant, Rejection):
            return grant
        if owner_tenant is None:
            return [], 0
        return self.store.list_projects(owner_tenant, status=status, search=search, page=max(1, page), limit=max(1, limit))

    def get_project(self, claims: ClaimSet, project_id: str) -> Union[Project, Rejection]:
        project = self.store.get_project(project_id)
        if project is None:
            return reject(ReasonCode.NOT_FOUND, f"project={project_id}")
        grant = self._authorize(claims, Action.READ_PROJECT, Target.of_project(project))
        if isinstance(grant, Rejection):
            return grant
        return project

    def update_project(self, claims: ClaimSet, project_id: str, name: Optional[str] = None,
                       description: Optional[str] = None, status: Optional[ProjectStatus] = None,
                       source_address: str = "") -> Union[Project, Rejection]:
        project = self.store.get_project(project_id)
        if project is None:
            return reject(ReasonCode.NOT_FOUND, f"project={project_id}")
        changes = _changed(name=name, description=description, status=status)
        grant = self._authorize(claims, Action.UPDATE_PROJECT, Target.of_project(project, frozenset(changes)),
                                source_address=source_address)
        if isinstance(grant, Rejection):
            return grant
        updated = self.store.update_project(project_id, changes)
        if updated is None:
            return reject(ReasonCode.NOT_FOUND, f"project={project_id}")
        self.pipeline.record(grant, project_id, source_address)
        return updated

    def delete_project(self, claims: ClaimSet, project_id: str, source_address: str = "") -> Union[bool, Rejection]:
        project = self.store.get_project(project_id)
        if project is None:
            return reject(ReasonCode.NOT_FOUND, f"project={project_id}")
        grant = self._authorize(claims, Action.DELETE_PROJECT, Target.of_project(project), source_address=source_address)
        if isinstance(grant, Rejection):
            return grant
        if not self.store.delete_project(project_id):
            return reject(ReasonCode.NOT_FOUND, f"project={project_id}")
        self.pipeline.quota.reclaim(project.tenant_id, ResourceKind.PROJECT)
        self.pipeline.record(grant, project_id, source_address)
        return True

    # ---------- 任务 ----------

    def create_task(self, claims: ClaimSet, project_id: str, title: str, description: str = "",
                    assigned_to: Optional[str] = None, priority: str = "medium", due_date: Optional[str] = None,
                    asserted_tenant_id: Optional[str] = None, source_address: str = "") -> Union[Task, Rejection]:
        """任务租户取自所属项目；调用方声称的租户与项目租户不一致时在落库前拒绝。"""
        if not title or not title.strip():
            return reject(ReasonCode.VALIDATION_FAILED, "title 必填")
        project = self.store.get_project(project_id)
        if project is None:
            return reject(ReasonCode.NOT_FOUND, f"project={project_id}")
        if asserted_tenant_id is not None and asserted_tenant_id != project.tenant_id:
            return reject(ReasonCode.VALIDATION_FAILED, "任务租户必须与项目租户一致")
        target = Target(ResourceKind.TASK, project.tenant_id, owner_id=project.created_by)
        grant = self._authorize(claims, Action.CREATE_TASK, target, source_address=source_address)
        if isinstance(grant, Rejection):
            return grant
        invalid = self._check_assignee(assigned_to, project.tenant_id)
        if invalid is not None:
            return invalid
        task = Task(
            id=_new_id(), project_id=project.id, tenant_id=project.tenant_id, title=title.strip(),
            description=description or "", assigned_to=assigned_to, priority=priority or "medium",
            due_date=due_date, created_by=claims.actor_id,
        )
        return self.pipeline.create(grant, ResourceKind.TASK, lambda: self.store.insert_task(task), source_address)

    def list_tasks(self, claims: ClaimSet, project_id: str,
                   status: Optional[TaskStatus] = None) -> Union[List[Task], Rejection]:
        project = self.store.get_project(project_id)
        if project is None:
            return reject(ReasonCode.NOT_FOUND, f"project={project_id}")
        grant = self._authorize(claims, Action.LIST_TASKS, Target.of_project(project))
        if isinstance(grant, Rejection):
            return grant
        return self.store.list_tasks(project_id, status)

    def get_task(self, claims: ClaimSet, task_id: str) -> Union[Task, Rejection]:
        task = self.store.get_task(task_id)
        if task is None:
            return reject(ReasonCode.NOT_FOUND, f"task={task_id}")
        grant = self._authorize(claims, Action.READ_TASK, Target.of_task(task))
        if isinstance(grant, Rejection):
            return grant
        return task

    def update_task_status(self, claims: ClaimSet, task_id: str, status: TaskStatus,
                           source_address: str = "") -> Union[Task, Rejection]:
        task = self.store.get_task(task_id)
        if task is None:
            return reject(ReasonCode.NOT_FOUND, f"task={task_id}")
        grant = self._authorize(claims, Action.UPDATE_TASK_STATUS, Target.of_task(task, frozenset({"status"})),
                                source_address=source_address)
        if isinstance(grant, Rejection):
            return grant
        updated = self.store.update_task(task_id, {"status": status})
        if updated is None:
            return reject(ReasonCode.NOT_FOUND, f"task={task_id}")
        self.pipeline.record(grant, task_id, source_address)
        return updated

    def update_task(self, claims: ClaimSet, task_id: str, title: Optional[str] = None,
                    description: Optional[str] = None, status: Optional[TaskStatus] = None,
                    assigned_to: Optional[str] = None, priority: Optional[str] = None,
                    due_date: Optional[str] = None, source_address: str = "") -> Union[Task, Rejection]:
        task = self.store.get_task(task_id)
        if task is None:
            return reject(ReasonCode.NOT_FOUND, f"task={task_id}")
        changes = _changed(title=title, description=description, status=status, assigned_to=assigned_to,
                           priority=priority, due_date=due_date)
        grant = self._authorize(claims, Action.UPDATE_TASK, Target.of_task(task, frozenset(changes)),
                                source_address=source_address)
        if isinstance(grant, Rejection):
            return grant
        invalid = self._check_assignee(assigned_to, task.tenant_id)
        if invalid is not None:
            return invalid
        updated = self.store.update_task(task_id, changes)
        if updated is None:
            return reject(ReasonCode.NOT_FOUND, f"task={task_id}")
        self.pipeline.record(grant, task_id, source_address)
        return updated

    def delete_task(self, claims: ClaimSet, task_id: str, source_address: str = "") -> Union[bool, Rejection]:
        task = self.store.get_task(task_id)
        if task is None:
            return reject(ReasonCode.NOT_FOUND, f"task={task_id}")
        grant = self._authorize(claims, Action.DELETE_TASK, Target.of_task(task), source_address=source_address)
        if isinstance(grant, Rejection):
            return grant
        if not self.store.delete_task(task_id):
            return reject(ReasonCode.NOT_FOUND, f"task={task_id}")
        self.pipeline.record(grant, task_id, source_address)
        return True

    # ---------- 内部 ----------

    def _authorize(self, claims: ClaimSet, action: Action, target: Target, tenant_hint: Optional[str] = None,
                   source_address: str = "") -> Union[AccessGrant, Rejection]:
        grant = self.pipeline.authorize(claims, action, target, tenant_hint, source_address)
        if isinstance(grant, Rejection):
            if action in _HIDE_ON_MISMATCH and grant.code is ReasonCode.TENANT_MISMATCH:
                return reject(ReasonCode.NOT_FOUND)
            return grant
        invalid = self._check_tenant(claims, target.tenant_id)
        if invalid is not None:
            return self.pipeline.deny(grant, invalid, source_address)
        return grant

    def _check_tenant(self, claims: ClaimSet, tenant_id: Optional[str]) -> Optional[Rejection]:
        """租户必须存在；非平台管理员在已停用租户内的一切操作被拒绝。"""
        if tenant_id is None:
            return None
        tenant = self.store.get_tenant(tenant_id)
        if tenant is None:
            return reject(ReasonCode.NOT_FOUND, f"tenant={tenant_id}")
        if tenant.status is TenantStatus.SUSPENDED and not claims.is_platform_admin:
            logger.info("tenant suspended tenant=%s actor=%s", tenant_id, claims.actor_id)
            return reject(ReasonCode.TENANT_SUSPENDED)
        return None

    def _check_assignee(self, assigned_to: Optional[str], tenant_id: str) -> Optional[Rejection]:
        if assigned_to is None:
            return None
        assignee = self.store.get_user(assigned_to)
        if assignee is None or assignee.tenant_id != tenant_id:
            return reject(ReasonCode.VALIDATION_FAILED, "被指派人必须属于同一租户")
        return None
