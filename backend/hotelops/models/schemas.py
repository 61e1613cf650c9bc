"""
Pydantic 模式定义
用于 API 请求/响应验证
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field

from authz.history import ExportFormat, HistoryAction, HistorySource, TimeRange
from authz.key import PermissionKey, PermissionSpec
from authz.context import ResourceContext


# ============== 认证 Schemas ==============

class LoginRequest(BaseModel):
    username: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


# ============== 权限检查 Schemas ==============

class PermissionSpecIn(BaseModel):
    resource: str = Field(..., min_length=1, max_length=50)
    action: str = Field(..., min_length=1, max_length=50)
    scope: str = "own"
    context: Optional[Dict[str, Any]] = None

    def to_spec(self) -> PermissionSpec:
        key = PermissionKey(self.resource, self.action, self.scope)
        return PermissionSpec.of(key, ResourceContext.from_dict(self.context))


class PermissionSetRequest(BaseModel):
    """OR / AND 组合检查"""
    permissions: List[PermissionSpecIn] = Field(..., min_length=1)


class BulkCheckRequest(BaseModel):
    permissions: List[PermissionSpecIn] = Field(..., min_length=1, max_length=500)
    global_context: Optional[Dict[str, Any]] = None


class EvaluationResponse(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    source: str
    scope_filters: Dict[str, Any] = {}
    ttl: Optional[int] = None


# ============== 角色分配 Schemas ==============

class AssignRoleRequest(BaseModel):
    user_id: str
    role_id: str
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    conditions: Dict[str, Any] = {}
    metadata: Dict[str, Any] = {}


class ModifyAssignmentRequest(BaseModel):
    expires_at: Optional[datetime] = None
    conditions: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None


class BulkItemIn(BaseModel):
    operation: Literal["assign", "remove"]
    user_id: str
    role_id: Optional[str] = None
    assignment_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    conditions: Dict[str, Any] = {}
    reason: Optional[str] = None


class BulkAssignmentRequest(BaseModel):
    items: List[BulkItemIn] = Field(..., min_length=1)
    batch_id: Optional[str] = None
    reason: Optional[str] = None


class RollbackRequest(BaseModel):
    reason: Optional[str] = None


# ============== 历史查询 Schemas ==============

class HistoryFilterIn(BaseModel):
    time_range: Optional[TimeRange] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    user_ids: List[str] = []
    role_ids: List[str] = []
    admin_ids: List[str] = []
    actions: List[HistoryAction] = []
    sources: List[HistorySource] = []
    search: Optional[str] = None
    batch_id: Optional[str] = None
    group_by_batch: bool = False
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=50, ge=1, le=500)


class HistoryExportRequest(BaseModel):
    format: ExportFormat = ExportFormat.CSV
    filters: HistoryFilterIn = HistoryFilterIn()
