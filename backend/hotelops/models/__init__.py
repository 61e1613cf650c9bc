"""
数据模型
"""
from hotelops.models.rbac import (
    SysUser,
    SysRole,
    SysPermission,
    SysRolePermission,
    SysUserRole,
    SysUserPermission,
    SysRoleHistory,
)

__all__ = [
    "SysUser",
    "SysRole",
    "SysPermission",
    "SysRolePermission",
    "SysUserRole",
    "SysUserPermission",
    "SysRoleHistory",
]
