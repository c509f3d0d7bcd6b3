# 请求/响应模型与统一错误格式
from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel

from ..models import ProjectStatus, Role, TaskStatus


class ErrorBody(BaseModel):
    code: str
    message: str
    details: str = ""
    requestId: str = ""


class ListResponse(BaseModel):
    data: List[Any]
    total: int


# ---------- User ----------
class UserCreate(BaseModel):
    email: str
    fullName: str = ""
    role: Role = Role.MEMBER


class UserUpdate(BaseModel):
    fullName: Optional[str] = None
    role: Optional[Role] = None
    isActive: Optional[bool] = None


# ---------- Project ----------
class ProjectCreate(BaseModel):
    name: str
    description: str = ""
    status: ProjectStatus = ProjectStatus.ACTIVE
    tenantId: Optional[str] = None


class ProjectUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[ProjectStatus] = None


# ---------- Task ----------
class TaskCreate(BaseModel):
    title: str
    description: str = ""
    assignedTo: Optional[str] = None
    priority: str = "medium"
    dueDate: Optional[str] = None
    tenantId: Optional[str] = None


class TaskStatusUpdate(BaseModel):
    status: TaskStatus


class TaskUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    assignedTo: Optional[str] = None
    priority: Optional[str] = None
    dueDate: Optional[str] = None
