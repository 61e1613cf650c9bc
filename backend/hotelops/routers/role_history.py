"""
角色分配与历史路由
分配/移除/修改/批量操作都经由历史台账，提交后失效相关用户的权限缓存
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from authz.context import UserContext, can_assign_role
from authz.history import (
    AssignmentError,
    AssignmentNotFound,
    AuditTrail,
    BulkOperationItem,
    DuplicateActiveAssignment,
    HistoryAction,
    HistoryEntryNotFound,
    HistoryFilter,
    HistorySource,
    RollbackNotSupported,
    TimeRange,
    can_user_rollback,
)
from hotelops.config import settings
from hotelops.models.schemas import (
    AssignRoleRequest,
    BulkAssignmentRequest,
    HistoryExportRequest,
    HistoryFilterIn,
    ModifyAssignmentRequest,
    RollbackRequest,
)
from hotelops.security.auth import require_permission
from hotelops.services.permission_engine import PermissionEngine, get_permission_engine

assignment_router = APIRouter(prefix="/roles/assignments", tags=["角色分配"])
history_router = APIRouter(prefix="/roles/history", tags=["角色历史"])

require_role_assign = require_permission("role", "assign", "property")
require_history_read = require_permission("role_history", "read", "property")


def _audit_trail(request: Request, user: UserContext) -> AuditTrail:
    return AuditTrail(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        session_id=user.session_id,
        request_id=request.headers.get("x-request-id"),
    )


def _raise_http(e: Exception):
    """领域异常 → HTTP 异常"""
    if isinstance(e, DuplicateActiveAssignment):
        raise HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (AssignmentNotFound, HistoryEntryNotFound)):
        raise HTTPException(status_code=404, detail=str(e))
    raise HTTPException(status_code=400, detail=str(e))


def _check_assignable(engine: PermissionEngine, user: UserContext, role_id: Optional[str]) -> None:
    role = engine.store.get_role_definition(role_id) if role_id else None
    if role is not None and not can_assign_role(user.role, role.level):
        raise HTTPException(status_code=403, detail=f"无权分配角色 '{role.name}'")


def _visible_org(user: UserContext, engine: PermissionEngine) -> Optional[str]:
    """
    调用者可见的组织

    平台管理员返回 None（不限组织）；未归属任何组织的非管理员直接拒绝。
    """
    if user.is_platform_admin(engine.evaluator.platform_admin_roles):
        return None
    if user.tenant.organization_id is None:
        raise HTTPException(status_code=403, detail="当前用户未归属任何组织")
    return user.tenant.organization_id


def _check_target_user(engine: PermissionEngine, user: UserContext, user_id: Optional[str]) -> None:
    """目标用户必须与调用者同组织（用户不存在时交给台账报错）"""
    org_id = _visible_org(user, engine)
    target = engine.store.get_user(user_id) if user_id else None
    if org_id is not None and target is not None and target.organization_id != org_id:
        raise HTTPException(status_code=403, detail="无权操作其他组织的角色分配")


def _check_assignment(engine: PermissionEngine, user: UserContext, assignment_id: Optional[str]) -> None:
    """修改/移除已有分配：同组织且角色层级低于调用者"""
    assignment = engine.store.get_assignment(assignment_id) if assignment_id else None
    if assignment is None:
        return
    _check_target_user(engine, user, assignment.user_id)
    _check_assignable(engine, user, assignment.role_id)


def _tenant_filter(criteria: HistoryFilter, user: UserContext,
                   engine: PermissionEngine) -> HistoryFilter:
    """非平台管理员只能看到本组织的历史"""
    org_id = _visible_org(user, engine)
    if org_id is not None:
        criteria.organization_id = org_id
    return criteria


def _to_filter(data: HistoryFilterIn) -> HistoryFilter:
    return HistoryFilter(**data.model_dump())


# ========== 角色分配 ==========

@assignment_router.post("", status_code=201)
async def assign_role(
    data: AssignRoleRequest,
    request: Request,
    user: UserContext = Depends(require_role_assign),
    engine: PermissionEngine = Depends(get_permission_engine),
):
    """分配角色"""
    _check_target_user(engine, user, data.user_id)
    _check_assignable(engine, user, data.role_id)
    try:
        entry = engine.ledger.record_assignment(
            data.user_id, data.role_id, assigned_by=user.user_id,
            reason=data.reason, expires_at=data.expires_at,
            conditions=data.conditions, metadata=data.metadata,
            audit_trail=_audit_trail(request, user),
        )
    except AssignmentError as e:
        engine.rollback()
        _raise_http(e)
    engine.commit()
    return entry.to_dict()


@assignment_router.patch("/{assignment_id}")
async def modify_assignment(
    assignment_id: str,
    data: ModifyAssignmentRequest,
    request: Request,
    user: UserContext = Depends(require_role_assign),
    engine: PermissionEngine = Depends(get_permission_engine),
):
    """修改分配（过期时间/条件/元数据）"""
    changes = data.model_dump(exclude_unset=True)
    reason = changes.pop("reason", None)
    if not changes:
        raise HTTPException(status_code=400, detail="没有需要修改的字段")
    _check_assignment(engine, user, assignment_id)
    try:
        entry = engine.ledger.record_modification(
            assignment_id, user.user_id, changes, reason=reason,
            audit_trail=_audit_trail(request, user),
        )
    except AssignmentError as e:
        engine.rollback()
        _raise_http(e)
    engine.commit()
    return entry.to_dict()


@assignment_router.delete("/{assignment_id}")
async def remove_assignment(
    assignment_id: str,
    request: Request,
    reason: Optional[str] = None,
    user: UserContext = Depends(require_role_assign),
    engine: PermissionEngine = Depends(get_permission_engine),
):
    """移除分配"""
    _check_assignment(engine, user, assignment_id)
    try:
        entry = engine.ledger.record_removal(
            assignment_id, user.user_id, reason=reason,
            audit_trail=_audit_trail(request, user),
        )
    except AssignmentError as e:
        engine.rollback()
        _raise_http(e)
    engine.commit()
    return entry.to_dict()


@assignment_router.post("/bulk")
async def bulk_assign(
    data: BulkAssignmentRequest,
    request: Request,
    user: UserContext = Depends(require_role_assign),
    engine: PermissionEngine = Depends(get_permission_engine),
):
    """
    批量分配/移除

    每项独立执行，返回 {batch_id, succeeded, failed, results}
    """
    for item in data.items:
        if item.assignment_id:
            _check_assignment(engine, user, item.assignment_id)
        else:
            _check_target_user(engine, user, item.user_id)
            _check_assignable(engine, user, item.role_id)

    items = [BulkOperationItem(**item.model_dump()) for item in data.items]
    result = engine.ledger.record_bulk(
        items, user.user_id, batch_id=data.batch_id, reason=data.reason,
        audit_trail=_audit_trail(request, user),
    )
    engine.commit()
    return result.to_dict()


# ========== 角色历史 ==========

@history_router.get("")
async def query_history(
    time_range: Optional[TimeRange] = None,
    user_ids: List[str] = Query(default=[]),
    role_ids: List[str] = Query(default=[]),
    admin_ids: List[str] = Query(default=[]),
    actions: List[HistoryAction] = Query(default=[]),
    sources: List[HistorySource] = Query(default=[]),
    search: Optional[str] = None,
    batch_id: Optional[str] = None,
    group_by_batch: bool = False,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
    user: UserContext = Depends(require_history_read),
    engine: PermissionEngine = Depends(get_permission_engine),
):
    """查询角色分配历史"""
    criteria = HistoryFilter(
        time_range=time_range, user_ids=user_ids, role_ids=role_ids, admin_ids=admin_ids,
        actions=actions, sources=sources, search=search, batch_id=batch_id,
        group_by_batch=group_by_batch, page=page, limit=limit,
    )
    page_result = engine.ledger.query(_tenant_filter(criteria, user, engine))
    # 查询会补记过期条目
    engine.commit()
    return page_result.to_dict()


@history_router.get("/summary")
async def history_summary(
    time_range: Optional[TimeRange] = None,
    user: UserContext = Depends(require_history_read),
    engine: PermissionEngine = Depends(get_permission_engine),
):
    """历史摘要（动作计数、近期各时段计数）"""
    criteria = _tenant_filter(HistoryFilter(time_range=time_range), user, engine)
    summary = engine.ledger.get_summary(criteria)
    engine.commit()
    return summary


@history_router.get("/users/{user_id}")
async def user_history(
    user_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    user: UserContext = Depends(require_history_read),
    engine: PermissionEngine = Depends(get_permission_engine),
):
    """用户的角色历史"""
    target = engine.store.get_user(user_id)
    if target is None:
        raise HTTPException(status_code=404, detail="用户不存在")
    org_id = _visible_org(user, engine)
    if org_id is not None and target.organization_id != org_id:
        raise HTTPException(status_code=403, detail="无权查看其他组织的用户")

    entries = engine.ledger.get_user_history(user_id, limit=limit)
    engine.commit()
    return {
        "user_id": user_id,
        "entries": [e.to_dict() for e in entries],
        "total": len(entries),
        "enable_rollback": can_user_rollback(user),
    }


@history_router.get("/roles/{role_id}")
async def role_history(
    role_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    show_user_details: bool = True,
    user: UserContext = Depends(require_history_read),
    engine: PermissionEngine = Depends(get_permission_engine),
):
    """角色的分配历史"""
    data = engine.ledger.get_role_history(
        role_id, limit=limit, show_user_details=show_user_details,
        organization_id=_visible_org(user, engine),
    )
    data["entries"] = [e.to_dict() for e in data["entries"]]
    return data


@history_router.get("/admins/{admin_id}")
async def admin_activity(
    admin_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    show_impact_metrics: bool = False,
    show_suspicious_activity: bool = False,
    user: UserContext = Depends(require_history_read),
    engine: PermissionEngine = Depends(get_permission_engine),
):
    """管理员操作历史"""
    data = engine.ledger.get_admin_activity(
        admin_id, limit=limit,
        show_impact_metrics=show_impact_metrics,
        show_suspicious_activity=show_suspicious_activity,
        organization_id=_visible_org(user, engine),
    )
    data["entries"] = [e.to_dict() for e in data["entries"]]
    return data


@history_router.post("/{entry_id}/rollback")
async def rollback_entry(
    entry_id: str,
    data: RollbackRequest,
    request: Request,
    user: UserContext = Depends(require_history_read),
    engine: PermissionEngine = Depends(get_permission_engine),
):
    """回滚历史条目"""
    if not can_user_rollback(user):
        raise HTTPException(status_code=403, detail="权限不足，无法执行回滚")
    original = engine.ledger.get_entry(entry_id)
    if original is None:
        raise HTTPException(status_code=404, detail=f"历史条目不存在: {entry_id}")
    org_id = _visible_org(user, engine)
    if org_id is not None and original.organization_id != org_id:
        raise HTTPException(status_code=403, detail="无权回滚其他组织的历史")
    # 回滚会重新分配或恢复该角色，层级校验与直接分配相同
    _check_assignable(engine, user, original.role_id)
    try:
        result = engine.ledger.rollback(
            entry_id, user.user_id, reason=data.reason,
            audit_trail=_audit_trail(request, user),
        )
    except (AssignmentError, HistoryEntryNotFound, RollbackNotSupported) as e:
        engine.rollback()
        _raise_http(e)
    engine.commit()
    return result.to_dict()


@history_router.post("/export")
async def export_history(
    data: HistoryExportRequest,
    user: UserContext = Depends(require_history_read),
    engine: PermissionEngine = Depends(get_permission_engine),
):
    """导出历史（csv/json 返回内容，pdf/excel 返回条目由外部渲染）"""
    criteria = _tenant_filter(_to_filter(data.filters), user, engine)
    export = engine.ledger.export(criteria, data.format, limit=settings.HISTORY_EXPORT_LIMIT)
    engine.commit()
    response = export.to_dict()
    if export.content is None:
        response["entries"] = [e.to_dict() for e in export.entries]
    return response
