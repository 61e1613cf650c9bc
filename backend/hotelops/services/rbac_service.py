"""
RBAC Service - 角色管理 + 权限目录 + 用户直接授权

权限变化通过注入的失效回调通知权限缓存：
角色权限变更影响所有持有者，失效全部；直接授权只失效该用户。
"""
from datetime import datetime
from typing import Callable, List, Optional
import logging

from sqlalchemy.orm import Session

from authz.key import PermissionKey, decode, encode
from hotelops.models.rbac import (
    SysPermission,
    SysRole,
    SysRolePermission,
    SysUserPermission,
    SysUserRole,
)
from hotelops.services.sql_store import to_int_id

logger = logging.getLogger(__name__)


def _noop(*args) -> None:
    return None


class RoleService:
    """角色管理服务"""

    def __init__(self, db: Session, invalidate_all: Optional[Callable[[], object]] = None):
        self.db = db
        self._invalidate_all = invalidate_all or _noop

    def get_roles(self, include_inactive: bool = False) -> List[SysRole]:
        q = self.db.query(SysRole)
        if not include_inactive:
            q = q.filter(SysRole.is_active == True)
        return q.order_by(SysRole.level.desc(), SysRole.id).all()

    def get_role_by_id(self, role_id) -> Optional[SysRole]:
        rid = to_int_id(role_id)
        if rid is None:
            return None
        return self.db.query(SysRole).filter(SysRole.id == rid).first()

    def get_role_by_code(self, code: str) -> Optional[SysRole]:
        return self.db.query(SysRole).filter(SysRole.code == code).first()

    def create_role(self, code: str, name: str, description: str = "", level: int = 0,
                    organization_id: Optional[str] = None, is_system: bool = False) -> SysRole:
        existing = self.get_role_by_code(code)
        if existing:
            raise ValueError(f"角色编码 '{code}' 已存在")

        role = SysRole(
            code=code, name=name, description=description, level=level,
            organization_id=organization_id, is_system=is_system,
        )
        self.db.add(role)
        self.db.flush()
        return role

    def update_role(self, role_id, **kwargs) -> SysRole:
        role = self.get_role_by_id(role_id)
        if not role:
            raise ValueError(f"角色 ID {role_id} 不存在")

        for key, value in kwargs.items():
            if key == "code" and value != role.code:
                if self.get_role_by_code(value):
                    raise ValueError(f"角色编码 '{value}' 已存在")
            if key in ("level", "is_active") and getattr(role, key) != value:
                self._invalidate_all()
            if hasattr(role, key):
                setattr(role, key, value)

        self.db.flush()
        return role

    def delete_role(self, role_id) -> None:
        role = self.get_role_by_id(role_id)
        if not role:
            raise ValueError(f"角色 ID {role_id} 不存在")
        if role.is_system:
            raise ValueError(f"系统内置角色 '{role.name}' 不可删除")
        # 仍在使用的角色必须先经由历史台账移除分配
        active = self.db.query(SysUserRole).filter(
            SysUserRole.role_id == role.id, SysUserRole.is_active == True
        ).count()
        if active:
            raise ValueError(f"角色 '{role.name}' 仍有 {active} 个有效分配，不可删除")

        self.db.query(SysRolePermission).filter(SysRolePermission.role_id == role.id).delete()
        self.db.query(SysUserRole).filter(SysUserRole.role_id == role.id).delete()
        self.db.delete(role)
        self.db.flush()
        self._invalidate_all()

    def assign_permissions(self, role_id, permission_ids: List[int]) -> None:
        """替换角色的全部权限"""
        role = self._editable_role(role_id)
        self.db.query(SysRolePermission).filter(SysRolePermission.role_id == role.id).delete()
        for pid in permission_ids:
            self.db.add(SysRolePermission(role_id=role.id, permission_id=pid))
        self.db.flush()
        self.db.expire(role)
        self._invalidate_all()
        logger.info(f"Role {role.code} now has {len(permission_ids)} permissions")

    def add_permission(self, role_id, permission_id: int) -> None:
        role = self._editable_role(role_id)
        existing = self.db.query(SysRolePermission).filter(
            SysRolePermission.role_id == role.id,
            SysRolePermission.permission_id == permission_id
        ).first()
        if not existing:
            self.db.add(SysRolePermission(role_id=role.id, permission_id=permission_id))
            self.db.flush()
            self.db.expire(role)
            self._invalidate_all()

    def remove_permission(self, role_id, permission_id: int) -> None:
        role = self._editable_role(role_id)
        self.db.query(SysRolePermission).filter(
            SysRolePermission.role_id == role.id,
            SysRolePermission.permission_id == permission_id
        ).delete()
        self.db.flush()
        self.db.expire(role)
        self._invalidate_all()

    def _editable_role(self, role_id) -> SysRole:
        role = self.get_role_by_id(role_id)
        if not role:
            raise ValueError(f"角色 ID {role_id} 不存在")
        if role.is_system:
            raise ValueError(f"系统内置角色 '{role.name}' 的权限不可修改")
        return role


class PermissionService:
    """权限目录与用户直接授权服务"""

    def __init__(self, db: Session, invalidator: Optional[Callable[[str], object]] = None):
        self.db = db
        self._invalidate = invalidator or _noop

    def get_permissions(self, resource: Optional[str] = None) -> List[SysPermission]:
        q = self.db.query(SysPermission).filter(SysPermission.is_active == True)
        if resource:
            q = q.filter(SysPermission.resource == resource)
        return q.order_by(SysPermission.resource, SysPermission.action, SysPermission.id).all()

    def get_permission_by_key(self, key) -> Optional[SysPermission]:
        code = encode(key) if isinstance(key, PermissionKey) else encode(decode(key))
        return self.db.query(SysPermission).filter(SysPermission.code == code).first()

    def ensure_permission(self, key, name: str = "", description: str = "") -> SysPermission:
        """按权限键获取或创建权限"""
        key = key if isinstance(key, PermissionKey) else decode(key)
        perm = self.get_permission_by_key(key)
        if perm:
            return perm
        perm = SysPermission(
            code=encode(key), name=name or encode(key),
            resource=key.resource, action=key.action, scope=key.scope,
            description=description,
        )
        self.db.add(perm)
        self.db.flush()
        return perm

    def set_user_permission(self, user_id, key, granted: bool = True,
                            expires_at: Optional[datetime] = None) -> SysUserPermission:
        """设置用户直接授权（granted=False 为显式拒绝）"""
        uid = to_int_id(user_id)
        if uid is None:
            raise ValueError(f"用户 ID {user_id} 不合法")
        perm = self.ensure_permission(key)
        row = self.db.query(SysUserPermission).filter(
            SysUserPermission.user_id == uid,
            SysUserPermission.permission_id == perm.id
        ).first()
        if row is None:
            row = SysUserPermission(user_id=uid, permission_id=perm.id)
            self.db.add(row)
        row.granted = granted
        row.expires_at = expires_at
        self.db.flush()
        self._invalidate(str(uid))
        return row

    def remove_user_permission(self, user_id, key) -> bool:
        uid = to_int_id(user_id)
        perm = self.get_permission_by_key(key)
        if uid is None or perm is None:
            return False
        deleted = self.db.query(SysUserPermission).filter(
            SysUserPermission.user_id == uid,
            SysUserPermission.permission_id == perm.id
        ).delete()
        self.db.flush()
        if deleted:
            self._invalidate(str(uid))
        return bool(deleted)
