"""
进程内存储协作方：租户、用户、项目、任务与配额台账，全部按 tenant_id 隔离。
单实例 / 测试使用；生产可替换为数据库实现（配额台账见 sql_ledger.SqlQuotaLedger）。
台账计数 = 实际行数 + 未消费的预留，二者在同一把锁内读取；
预留对应的行写入后预留即转为行，删除行后名额随行数自然回收。
"""
from __future__ import annotations

import threading
import time
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from .models import (
    PLAN_LIMITS,
    Plan,
    Project,
    ProjectStatus,
    ResourceKind,
    Task,
    TaskStatus,
    Tenant,
    TenantStatus,
    User,
)


class MemoryStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tenants: Dict[str, Tenant] = {}
        self._users: Dict[str, User] = {}
        self._projects: Dict[str, Project] = {}
        self._tasks: Dict[str, Task] = {}
        self._held: Dict[Tuple[str, ResourceKind], int] = {}

    # ---------- 租户 ----------

    def create_tenant(self, tenant_id: str, name: str, plan: Plan = Plan.FREE,
                      max_users: Optional[int] = None, max_projects: Optional[int] = None) -> Tenant:
        tenant_id = (tenant_id or "").strip()
        if not tenant_id:
            raise ValueError("tenant_id 必填")
        default_users, default_projects = PLAN_LIMITS[plan]
        tenant = Tenant(
            id=tenant_id,
            name=(name or tenant_id).strip(),
            plan=plan,
            max_users=default_users if max_users is None else max_users,
            max_projects=default_projects if max_projects is None else max_projects,
        )
        with self._lock:
            if tenant_id in self._tenants:
                raise ValueError("租户已存在")
            self._tenants[tenant_id] = tenant
            return replace(tenant)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._lock:
            t = self._tenants.get(tenant_id)
            return replace(t) if t else None

    def set_tenant_status(self, tenant_id: str, status: TenantStatus) -> None:
        with self._lock:
            if tenant_id in self._tenants:
                self._tenants[tenant_id].status = status

    def set_plan(self, tenant_id: str, plan: Plan) -> None:
        """切换套餐并按套餐默认值更新上限；已超出新上限的存量不回收，只阻止新增。"""
        with self._lock:
            t = self._tenants.get(tenant_id)
            if t is None:
                return
            t.plan = plan
            t.max_users, t.max_projects = PLAN_LIMITS[plan]

    def list_tenants(self) -> List[Tenant]:
        with self._lock:
            return [replace(t) for t in self._tenants.values()]

    # ---------- 配额台账 ----------

    def try_increment(self, tenant_id: str, kind: ResourceKind) -> bool:
        with self._lock:
            tenant = self._tenants.get(tenant_id)
            if tenant is None:
                raise LookupError(tenant_id)
            ceiling = tenant.ceiling(kind)
            key = (tenant_id, kind)
            held = self._held.get(key, 0)
            if ceiling is not None and self.count(tenant_id, kind) + held >= ceiling:
                return False
            self._held[key] = held + 1
            return True

    def decrement(self, tenant_id: str, kind: ResourceKind) -> None:
        """释放一个未落库的预留。"""
        with self._lock:
            self._settle(tenant_id, kind)

    def release_deleted(self, tenant_id: str, kind: ResourceKind) -> None:
        """使用量由实际行数推导，删除行无需额外扣减。"""

    def used(self, tenant_id: str, kind: ResourceKind) -> int:
        with self._lock:
            return self.count(tenant_id, kind) + self._held.get((tenant_id, kind), 0)

    def count(self, tenant_id: str, kind: ResourceKind) -> int:
        """实际落库行数（不含未消费的预留）。"""
        with self._lock:
            if kind is ResourceKind.USER:
                return sum(1 for u in self._users.values() if u.tenant_id == tenant_id)
            if kind is ResourceKind.PROJECT:
                return sum(1 for p in self._projects.values() if p.tenant_id == tenant_id)
            if kind is ResourceKind.TASK:
                return sum(1 for t in self._tasks.values() if t.tenant_id == tenant_id)
            return 0

    def _settle(self, tenant_id: Optional[str], kind: ResourceKind) -> None:
        key = (tenant_id, kind)
        if self._held.get(key, 0) > 0:
            self._held[key] -= 1

    # ---------- 用户 ----------

    def insert_user(self, user: User, reserved: bool = False) -> User:
        """reserved=True 表示该行兑现一个已有预留。"""
        with self._lock:
            if user.id in self._users:
                raise ValueError("用户已存在")
            email = user.email.lower()
            if any(u.email.lower() == email and u.tenant_id == user.tenant_id for u in self._users.values()):
                raise ValueError("该租户下邮箱已存在")
            self._users[user.id] = replace(user)
            if reserved:
                self._settle(user.tenant_id, ResourceKind.USER)
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            u = self._users.get(user_id)
            return replace(u) if u else None

    def list_users(self, tenant_id: str) -> List[User]:
        with self._lock:
            users = [replace(u) for u in self._users.values() if u.tenant_id == tenant_id]
        users.sort(key=lambda u: u.created_at, reverse=True)
        return users

    def update_user(self, user_id: str, changes: Dict[str, Any]) -> Optional[User]:
        with self._lock:
            u = self._users.get(user_id)
            if u is None:
                return None
            for k, v in changes.items():
                if v is not None and hasattr(u, k):
                    setattr(u, k, v)
            return replace(u)

    def delete_user(self, user_id: str) -> bool:
        """删除用户并取消其任务指派。"""
        with self._lock:
            u = self._users.pop(user_id, None)
            if u is None:
                return False
            for t in self._tasks.values():
                if t.assigned_to == user_id:
                    t.assigned_to = None
            return True

    # ---------- 项目 ----------

    def insert_project(self, project: Project, reserved: bool = False) -> Project:
        with self._lock:
            if project.id in self._projects:
                raise ValueError("项目已存在")
            self._projects[project.id] = replace(project)
            if reserved:
                self._settle(project.tenant_id, ResourceKind.PROJECT)
            return replace(project)

    def get_project(self, project_id: str) -> Optional[Project]:
        with self._lock:
            p = self._projects.get(project_id)
            return replace(p) if p else None

    def list_projects(self, tenant_id: str, status: Optional[ProjectStatus] = None, search: str = "",
                      page: int = 1, limit: int = 20) -> Tuple[List[Dict[str, Any]], int]:
        """按状态、名称关键字过滤，分页，附带任务数与已完成任务数。"""
        with self._lock:
            rows = [p for p in self._projects.values() if p.tenant_id == tenant_id]
            if status is not None:
                rows = [p for p in rows if p.status is status]
            if search:
                kw = search.lower()
                rows = [p for p in rows if kw in p.name.lower()]
            rows.sort(key=lambda p: p.created_at, reverse=True)
            total = len(rows)
            start = max(0, (page - 1) * limit)
            out = []
            for p in rows[start:start + limit]:
                d = p.to_dict()
                tasks = [t for t in self._tasks.values() if t.project_id == p.id]
                d["taskCount"] = len(tasks)
                d["completedTaskCount"] = sum(1 for t in tasks if t.status is TaskStatus.COMPLETED)
                out.append(d)
            return out, total

    def update_project(self, project_id: str, changes: Dict[str, Any]) -> Optional[Project]:
        with self._lock:
            p = self._projects.get(project_id)
            if p is None:
                return None
            for k, v in changes.items():
                if v is not None and hasattr(p, k):
                    setattr(p, k, v)
            p.updated_at = time.time()
            return replace(p)

    def delete_project(self, project_id: str) -> bool:
        """删除项目及其任务。"""
        with self._lock:
            p = self._projects.pop(project_id, None)
            if p is None:
                return False
            for tid in [tid for tid, t in self._tasks.items() if t.project_id == project_id]:
                del self._tasks[tid]
            return True

    # ---------- 任务 ----------

    def insert_task(self, task: Task) -> Task:
        with self._lock:
            project = self._projects.get(task.project_id)
            if project is None:
                raise LookupError(task.project_id)
            # 存储层兜底：任务租户必须等于项目租户
            if project.tenant_id != task.tenant_id:
                raise ValueError("任务租户与项目租户不一致")
            self._tasks[task.id] = replace(task)
            return replace(task)

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._lock:
            t = self._tasks.get(task_id)
            return replace(t) if t else None

    def list_tasks(self, project_id: str, status: Optional[TaskStatus] = None) -> List[Task]:
        with self._lock:
            tasks = [replace(t) for t in self._tasks.values() if t.project_id == project_id]
        if status is not None:
            tasks = [t for t in tasks if t.status is status]
        tasks.sort(key=lambda t: t.created_at, reverse=True)
        return tasks

    def update_task(self, task_id: str, changes: Dict[str, Any]) -> Optional[Task]:
        with self._lock:
            t = self._tasks.get(task_id)
            if t is None:
                return None
            for k, v in changes.items():
                # 归属字段创建后不可变
                if k in ("tenant_id", "project_id", "created_by"):
                    continue
                if v is not None and hasattr(t, k):
                    setattr(t, k, v)
            t.updated_at = time.time()
            return replace(t)

    def delete_task(self, task_id: str) -> bool:
        with self._lock:
            return self._tasks.pop(task_id, None) is not None
