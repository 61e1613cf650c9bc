"""
权限检查路由
提供单个/组合/批量权限检查与当前用户的有效权限
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from authz.context import ResourceContext, UserContext
from authz.key import InvalidKeyFormat, PermissionSpec
from hotelops.models.schemas import (
    BulkCheckRequest,
    EvaluationResponse,
    PermissionSetRequest,
    PermissionSpecIn,
)
from hotelops.security.auth import get_user_context, require_authenticated, require_permission
from hotelops.services.permission_engine import PermissionEngine, get_permission_engine

router = APIRouter(prefix="/permissions", tags=["permissions"])


def _to_specs(items: List[PermissionSpecIn]) -> List[PermissionSpec]:
    try:
        return [item.to_spec() for item in items]
    except InvalidKeyFormat as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.post("/check", response_model=EvaluationResponse)
async def check_permission(
    data: PermissionSpecIn,
    user: UserContext = Depends(get_user_context),
    engine: PermissionEngine = Depends(get_permission_engine),
):
    """
    检查单个权限

    未认证请求返回 allowed=false, reason=unauthenticated
    """
    spec = _to_specs([data])[0]
    result = await engine.gate.evaluate(user, spec.key, spec.context)
    return result.to_dict()


@router.post("/check-any", response_model=EvaluationResponse)
async def check_any_permission(
    data: PermissionSetRequest,
    user: UserContext = Depends(get_user_context),
    engine: PermissionEngine = Depends(get_permission_engine),
):
    """任一权限满足即允许（OR）"""
    result = await engine.gate.require_any(user, _to_specs(data.permissions))
    return result.to_dict()


@router.post("/check-all", response_model=EvaluationResponse)
async def check_all_permissions(
    data: PermissionSetRequest,
    user: UserContext = Depends(get_user_context),
    engine: PermissionEngine = Depends(get_permission_engine),
):
    """全部权限满足才允许（AND）"""
    result = await engine.gate.require_all(user, _to_specs(data.permissions))
    return result.to_dict()


@router.post("/bulk-check")
async def bulk_check_permissions(
    data: BulkCheckRequest,
    user: UserContext = Depends(get_user_context),
    engine: PermissionEngine = Depends(get_permission_engine),
):
    """
    批量检查

    返回 {permissions: {"resource.action.scope": result}, cached, evaluated, errors}
    """
    result = await engine.bulk_check(
        user, _to_specs(data.permissions), ResourceContext.from_dict(data.global_context)
    )
    return result.to_dict()


@router.get("/me")
async def get_my_permissions(
    user: UserContext = Depends(require_authenticated),
    engine: PermissionEngine = Depends(get_permission_engine),
):
    """当前用户的角色与有效权限"""
    effective = engine.evaluator.get_effective_permissions(user.user_id)
    data = effective.to_dict()
    data["system_role"] = user.role
    data["is_platform_admin"] = user.is_platform_admin(engine.evaluator.platform_admin_roles)
    data["tenant"] = {
        "organization_id": user.tenant.organization_id,
        "property_id": user.tenant.property_id,
        "department_id": user.tenant.department_id,
    }
    return data


@router.get("/cache/stats")
async def get_cache_stats(
    user: UserContext = Depends(require_permission("role_history", "read", "organization")),
    engine: PermissionEngine = Depends(get_permission_engine),
):
    """权限缓存统计"""
    return engine.cache.get_statistics()

