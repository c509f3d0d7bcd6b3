# 用户 / 项目 / 任务路由；授权、租户隔离与配额全部委托 TenantService
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response

from ..models import ClaimSet, ProjectStatus, TaskStatus
from ..service import TenantService
from .dependencies import get_service, get_source_address, require_claims, unwrap
from .schemas import (
    ListResponse,
    ProjectCreate,
    ProjectUpdate,
    TaskCreate,
    TaskStatusUpdate,
    TaskUpdate,
    UserCreate,
    UserUpdate,
)

router = APIRouter(prefix="/api")


# ---------- 用户 ----------

@router.post("/tenants/{tenant_id}/users", status_code=201)
def create_user(
    tenant_id: str,
    body: UserCreate,
    claims: ClaimSet = Depends(require_claims),
    service: TenantService = Depends(get_service),
    source: str = Depends(get_source_address),
):
    user = unwrap(service.create_user(claims, tenant_id, body.email, body.fullName, body.role, source))
    return user.to_dict()


@router.get("/tenants/{tenant_id}/users", response_model=ListResponse)
def list_users(
    tenant_id: str,
    claims: ClaimSet = Depends(require_claims),
    service: TenantService = Depends(get_service),
):
    users = unwrap(service.list_users(claims, tenant_id))
    return ListResponse(data=[u.to_dict() for u in users], total=len(users))


@router.put("/users/{user_id}")
def update_user(
    user_id: str,
    body: UserUpdate,
    claims: ClaimSet = Depends(require_claims),
    service: TenantService = Depends(get_service),
    source: str = Depends(get_source_address),
):
    user = unwrap(service.update_user(claims, user_id, body.fullName, body.role, body.isActive, source))
    return user.to_dict()


@router.delete("/users/{user_id}", status_code=204)
def delete_user(
    user_id: str,
    claims: ClaimSet = Depends(require_claims),
    service: TenantService = Depends(get_service),
    source: str = Depends(get_source_address),
):
    unwrap(service.delete_user(claims, user_id, source))
    return Response(status_code=204)


# ---------- 项目 ----------

@router.post("/projects", status_code=201)
def create_project(
    body: ProjectCreate,
    claims: ClaimSet = Depends(require_claims),
    service: TenantService = Depends(get_service),
    source: str = Depends(get_source_address),
):
    project = unwrap(service.create_project(
        claims, body.name, body.description, body.status, tenant_id=body.tenantId, source_address=source,
    ))
    return project.to_dict()


@router.get("/projects")
def list_projects(
    status: Optional[ProjectStatus] = None,
    search: str = "",
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    tenantId: Optional[str] = None,
    claims: ClaimSet = Depends(require_claims),
    service: TenantService = Depends(get_service),
):
    data, total = unwrap(service.list_projects(claims, status, search, page, limit, tenant_id=tenantId))
    return {
        "data": data,
        "total": total,
        "pagination": {"currentPage": page, "totalPages": (total + limit - 1) // limit, "limit": limit},
    }


@router.get("/projects/{project_id}")
def get_project(
    project_id: str,
    claims: ClaimSet = Depends(require_claims),
    service: TenantService = Depends(get_service),
):
    return unwrap(service.get_project(claims, project_id)).to_dict()


@router.put("/projects/{project_id}")
def update_project(
    project_id: str,
    body: ProjectUpdate,
    claims: ClaimSet = Depends(require_claims),
    service: TenantService = Depends(get_service),
    source: str = Depends(get_source_address),
):
    project = unwrap(service.update_project(claims, project_id, body.name, body.description, body.status, source))
    return project.to_dict()


@router.delete("/projects/{project_id}", status_code=204)
def delete_project(
    project_id: str,
    claims: ClaimSet = Depends(require_claims),
    service: TenantService = Depends(get_service),
    source: str = Depends(get_source_address),
):
    unwrap(service.delete_project(claims, project_id, source))
    return Response(status_code=204)


# ---------- 任务 ----------

@router.post("/projects/{project_id}/tasks", status_code=201)
def create_task(
    project_id: str,
    body: TaskCreate,
    claims: ClaimSet = Depends(require_claims),
    service: TenantService = Depends(get_service),
    source: str = Depends(get_source_address),
):
    task = unwrap(service.create_task(
        claims, project_id, body.title, body.description, body.assignedTo, body.priority, body.dueDate,
        asserted_tenant_id=body.tenantId, source_address=source,
    ))
    return task.to_dict()


@router.get("/projects/{project_id}/tasks", response_model=ListResponse)
def list_tasks(
    project_id: str,
    status: Optional[TaskStatus] = None,
    claims: ClaimSet = Depends(require_claims),
    service: TenantService = Depends(get_service),
):
    tasks = unwrap(service.list_tasks(claims, project_id, status))
    return ListResponse(data=[t.to_dict() for t in tasks], total=len(tasks))


@router.get("/tasks/{task_id}")
def get_task(
    task_id: str,
    claims: ClaimSet = Depends(require_claims),
    service: TenantService = Depends(get_service),
):
    return unwrap(service.get_task(claims, task_id)).to_dict()


@router.patch("/tasks/{task_id}/status")
def update_task_status(
    task_id: str,
    body: TaskStatusUpdate,
    claims: ClaimSet = Depends(require_claims),
    service: TenantService = Depends(get_service),
    source: str = Depends(get_source_address),
):
    return unwrap(service.update_task_status(claims, task_id, body.status, source)).to_dict()


@router.put("/tasks/{task_id}")
def update_task(
    task_id: str,
    body: TaskUpdate,
    claims: ClaimSet = Depends(require_claims),
    service: TenantService = Depends(get_service),
    source: str = Depends(get_source_address),
):
    task = unwrap(service.update_task(
        claims, task_id, body.title, body.description, body.status, body.assignedTo, body.priority, body.dueDate,
        source_address=source,
    ))
    return task.to_dict()


@router.delete("/tasks/{task_id}", status_code=204)
def delete_task(
    task_id: str,
    claims: ClaimSet = Depends(require_claims),
    service: TenantService = Depends(get_service),
    source: str = Depends(get_source_address),
):
    unwrap(service.delete_task(claims, task_id, source))
    return Response(status_code=204)
