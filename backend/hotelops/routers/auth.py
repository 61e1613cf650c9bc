"""
认证路由
"""
import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from authz.context import TenantContext, UserContext
from hotelops.database import get_db
from hotelops.models.rbac import SysUser
from hotelops.models.schemas import LoginRequest, TokenResponse
from hotelops.security.auth import create_access_token, require_authenticated, verify_password

router = APIRouter(prefix="/auth", tags=["认证"])


@router.post("/login", response_model=TokenResponse)
def login(data: LoginRequest, db: Session = Depends(get_db)):
    """用户登录"""
    user = db.query(SysUser).filter(SysUser.username == data.username).first()
    if not user or not verify_password(data.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="用户名或密码错误"
        )
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="账号已停用")

    tenant = TenantContext(
        organization_id=user.organization_id,
        property_id=user.property_id,
        department_id=user.department_id,
    )
    token = create_access_token(user.id, user.system_role, tenant, session_id=uuid.uuid4().hex)
    return {
        "access_token": token,
        "token_type": "bearer",
        "user": {
            "id": str(user.id),
            "username": user.username,
            "name": user.name,
            "system_role": user.system_role,
            "organization_id": user.organization_id,
            "property_id": user.property_id,
            "department_id": user.department_id,
        },
    }


@router.get("/me")
def get_current_user_info(user: UserContext = Depends(require_authenticated)):
    """获取当前用户信息"""
    return user.to_dict()
