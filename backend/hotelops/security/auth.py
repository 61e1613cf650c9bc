"""
认证模块 - JWT 令牌到 UserContext

无令牌的请求得到未认证上下文（user_id=None），权限检查对其返回拒绝而不是 401；
需要身份的接口使用 require_authenticated / require_permission。
"""
import bcrypt
import logging
from datetime import datetime, timedelta, UTC
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from authz.context import TenantContext, UserContext
from authz.key import PermissionKey
from hotelops.config import settings
from hotelops.database import get_db
from hotelops.models.rbac import SysUser
from hotelops.services.permission_engine import PermissionEngine, get_permission_engine
from hotelops.services.sql_store import to_int_id

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def get_password_hash(password: str) -> str:
    """密码哈希"""
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """验证密码"""
    return bcrypt.checkpw(plain_password.encode('utf-8'), hashed_password.encode('utf-8'))


def create_access_token(user_id, role: str, tenant: Optional[TenantContext] = None,
                        session_id: Optional[str] = None,
                        expires_minutes: Optional[int] = None) -> str:
    """创建 JWT token - 携带系统角色与租户上下文"""
    tenant = tenant or TenantContext()
    expire = datetime.now(UTC) + timedelta(
        minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES
    )
    to_encode = {
        "sub": str(user_id),
        "role": role,
        "org": tenant.organization_id,
        "prop": tenant.property_id,
        "dept": tenant.department_id,
        "exp": expire,
    }
    if session_id is not None:
        to_encode["sid"] = session_id
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> dict:
    """解码 JWT token"""
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="无效的认证凭证"
        )


def build_user_context(user: SysUser, request: Optional[Request] = None,
                       session_id: Optional[str] = None) -> UserContext:
    """从用户行构建 UserContext（租户信息以数据库为准）"""
    return UserContext(
        user_id=str(user.id),
        role=user.system_role,
        tenant=TenantContext(
            organization_id=user.organization_id,
            property_id=user.property_id,
            department_id=user.department_id,
        ),
        ip_address=request.client.host if request is not None and request.client else None,
        session_id=session_id,
        metadata={"username": user.username, "name": user.name},
    )


async def get_user_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> UserContext:
    """获取当前用户上下文；无令牌返回未认证上下文"""
    if credentials is None:
        return UserContext(user_id=None)

    payload = decode_token(credentials.credentials)
    uid = to_int_id(payload.get("sub"))
    user = db.query(SysUser).filter(SysUser.id == uid).first() if uid is not None else None
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="用户不存在"
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="账号已停用"
        )
    return build_user_context(user, request, payload.get("sid"))


async def require_authenticated(
    user: UserContext = Depends(get_user_context),
) -> UserContext:
    """要求已认证"""
    if not user.is_authenticated:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="未认证"
        )
    return user


def require_permission(resource: str, action: str, scope: str = "own"):
    """权限检查依赖 - 经由权限门控（共享缓存与去重）"""
    key = PermissionKey(resource, action, scope)

    async def permission_checker(
        user: UserContext = Depends(require_authenticated),
        engine: PermissionEngine = Depends(get_permission_engine),
    ) -> UserContext:
        result = await engine.gate.evaluate(user, key)
        if not result.allowed:
            logger.info(f"Permission {key} denied for user {user.user_id}: {result.reason}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"缺少权限: {key}"
            )
        return user
    return permission_checker
