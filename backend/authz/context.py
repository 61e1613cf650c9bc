"""
authz/context.py

权限上下文 - 用户上下文、租户上下文、资源上下文

仅 ResourceContext.extra 保留开放的键值元数据。
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union


class SystemRole(str, Enum):
    """系统角色（用户的顶层角色）"""
    PLATFORM_ADMIN = "PLATFORM_ADMIN"
    ORGANIZATION_OWNER = "ORGANIZATION_OWNER"
    ORGANIZATION_ADMIN = "ORGANIZATION_ADMIN"
    PROPERTY_MANAGER = "PROPERTY_MANAGER"
    DEPARTMENT_ADMIN = "DEPARTMENT_ADMIN"
    STAFF = "STAFF"
    CLIENT = "CLIENT"
    VENDOR = "VENDOR"


# 系统角色层级，用于分配校验
SYSTEM_ROLE_LEVELS: Dict[str, int] = {
    SystemRole.PLATFORM_ADMIN.value: 10,
    SystemRole.ORGANIZATION_OWNER.value: 9,
    SystemRole.ORGANIZATION_ADMIN.value: 8,
    SystemRole.PROPERTY_MANAGER.value: 7,
    SystemRole.DEPARTMENT_ADMIN.value: 6,
    SystemRole.STAFF.value: 5,
    SystemRole.VENDOR.value: 3,
    SystemRole.CLIENT.value: 2,
}


@dataclass(frozen=True)
class TenantContext:
    """租户上下文 - 组织/物业/部门"""

    organization_id: Optional[str] = None
    property_id: Optional[str] = None
    department_id: Optional[str] = None

    def key(self) -> Tuple[Optional[str], Optional[str], Optional[str]]:
        """缓存键中的租户部分"""
        return (self.organization_id, self.property_id, self.department_id)


@dataclass(frozen=True)
class ResourceContext:
    """
    资源上下文 - 被检查的目标数据行

    Attributes:
        resource_id: 资源ID
        owner_id: 资源所有者（用户ID）
        organization_id / property_id / department_id: 资源所属租户
        extra: 开放的元数据（不参与判定，可哈希的元组对）
    """

    resource_id: Optional[str] = None
    owner_id: Optional[str] = None
    organization_id: Optional[str] = None
    property_id: Optional[str] = None
    department_id: Optional[str] = None
    extra: Tuple[Tuple[str, Any], ...] = ()

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ResourceContext"]:
        """从请求中的字典构造，未知键放入 extra"""
        if not data:
            return None
        known = {"resource_id", "owner_id", "organization_id", "property_id", "department_id"}
        kwargs = {k: (str(v) if v is not None else None) for k, v in data.items() if k in known}
        extra = tuple(sorted((k, v) for k, v in data.items() if k not in known))
        return cls(extra=extra, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "resource_id": self.resource_id,
            "owner_id": self.owner_id,
            "organization_id": self.organization_id,
            "property_id": self.property_id,
            "department_id": self.department_id,
        }
        data.update(dict(self.extra))
        return {k: v for k, v in data.items() if v is not None}


@dataclass
class UserContext:
    """
    用户上下文

    Attributes:
        user_id: 用户ID（None 表示未认证）
        role: 系统角色编码
        tenant: 租户上下文
        ip_address: 客户端IP
        session_id: 会话ID
        metadata: 额外元数据
    """

    user_id: Optional[str]
    role: Optional[str] = None
    tenant: TenantContext = field(default_factory=TenantContext)
    ip_address: Optional[str] = None
    session_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    def is_platform_admin(self, admin_roles=None) -> bool:
        """是否为平台管理员（默认角色 PLATFORM_ADMIN）"""
        roles = admin_roles or {SystemRole.PLATFORM_ADMIN.value}
        return self.role in roles

    @property
    def tenant_key(self) -> Tuple[Optional[str], Optional[str], Optional[str]]:
        return self.tenant.key()

    @property
    def cache_partition(self) -> Tuple[Optional[str], ...]:
        """缓存分区：系统角色 + 租户，角色变化后旧条目不再命中"""
        return (self.role,) + self.tenant.key()

    @property
    def level(self) -> int:
        return SYSTEM_ROLE_LEVELS.get(self.role or "", 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "role": self.role,
            "organization_id": self.tenant.organization_id,
            "property_id": self.tenant.property_id,
            "department_id": self.tenant.department_id,
            "ip_address": self.ip_address,
            "session_id": self.session_id,
        }

    def __repr__(self) -> str:
        return (
            f"UserContext(user_id={self.user_id!r}, role={self.role!r}, "
            f"org={self.tenant.organization_id!r})"
        )


def can_assign_role(assigner_role: Optional[str], target: Union[int, str]) -> bool:
    """
    分配层级校验

    平台管理员可以分配任何角色；其他用户只能分配严格低于自身层级的角色。

    Args:
        assigner_role: 分配人的系统角色
        target: 目标角色层级（int）或系统角色编码（str）
    """
    if assigner_role == SystemRole.PLATFORM_ADMIN.value:
        return True
    target_level = target if isinstance(target, int) else SYSTEM_ROLE_LEVELS.get(target, 0)
    return SYSTEM_ROLE_LEVELS.get(assigner_role or "", 0) > target_level


__all__ = [
    "SystemRole",
    "SYSTEM_ROLE_LEVELS",
    "TenantContext",
    "ResourceContext",
    "UserContext",
    "can_assign_role",
]
