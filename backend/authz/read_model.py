"""
authz/read_model.py - 角色/分配读模型接口

引擎不实现存储，只通过这些接口查询租户的角色与分配数据。
hotelops 层提供 SQLAlchemy 实现；InMemoryRoleStore 用于测试和嵌入场景。
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional
import itertools
import threading

from authz.key import PermissionKey


@dataclass(frozen=True)
class RoleDefinition:
    """
    角色定义

    level 只用于多角色时的优先级排序，高层级不会自动获得低层级的权限，
    只有 permissions 中的显式成员才授予访问。
    """

    id: str
    name: str
    level: int = 0
    is_system_role: bool = False
    permissions: FrozenSet[PermissionKey] = frozenset()
    organization_id: Optional[str] = None
    description: str = ""


@dataclass
class RoleAssignment:
    """用户-角色分配"""

    id: str
    user_id: str
    role_id: str
    assigned_by: Optional[str]
    assigned_at: datetime
    expires_at: Optional[datetime] = None
    conditions: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    organization_id: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def is_effective(self, now: datetime) -> bool:
        """激活且未过期"""
        return self.is_active and not self.is_expired(now)

    def snapshot(self) -> Dict[str, Any]:
        """可回滚的可变字段快照"""
        return {
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "conditions": dict(self.conditions),
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class DirectGrant:
    """用户级直接授权（granted=False 为显式拒绝）"""

    key: PermissionKey
    granted: bool = True
    expires_at: Optional[datetime] = None

    def is_effective(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now


@dataclass(frozen=True)
class UserSummary:
    """用户摘要（历史记录中的展示信息）"""

    id: str
    name: str = ""
    email: str = ""
    organization_id: Optional[str] = None
    property_id: Optional[str] = None
    department_id: Optional[str] = None


class IRoleReadModel(ABC):
    """角色读模型接口 - 一致性读"""

    @abstractmethod
    def get_active_assignments(self, user_id: str) -> List[RoleAssignment]:
        """获取用户的激活分配（可能包含已过期但未标记的分配）"""

    @abstractmethod
    def get_role_definition(self, role_id: str) -> Optional[RoleDefinition]:
        """获取角色定义"""

    @abstractmethod
    def get_direct_grants(self, user_id: str) -> List[DirectGrant]:
        """获取用户的直接授权/拒绝"""


class IAssignmentStore(IRoleReadModel):
    """分配存储接口 - 历史台账通过它写入分配变更"""

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[UserSummary]:
        """获取用户摘要，不存在返回 None"""

    @abstractmethod
    def get_assignment(self, assignment_id: str) -> Optional[RoleAssignment]:
        """根据ID获取分配（包括已失效的）"""

    @abstractmethod
    def find_active_assignment(self, user_id: str, role_id: str) -> Optional[RoleAssignment]:
        """查找同一用户同一角色的激活分配"""

    @abstractmethod
    def list_assignments(self, user_id: Optional[str] = None,
                         active_only: bool = False) -> List[RoleAssignment]:
        """列出分配"""

    @abstractmethod
    def add_assignment(self, assignment: RoleAssignment) -> RoleAssignment:
        """新增分配，返回带ID的分配"""

    @abstractmethod
    def update_assignment(self, assignment_id: str, **changes) -> RoleAssignment:
        """更新分配字段"""

    @abstractmethod
    def deactivate_assignment(self, assignment_id: str) -> RoleAssignment:
        """将分配标记为失效"""


class InMemoryRoleStore(IAssignmentStore):
    """
    内存分配存储

    Example:
        >>> store = InMemoryRoleStore()
        >>> store.add_user(UserSummary(id="u1", name="Alice"))
        >>> store.add_role(RoleDefinition(id="r1", name="Front Desk",
        ...     permissions=frozenset({PermissionKey("reservation", "read", "property")})))
    """

    def __init__(self):
        self._users: Dict[str, UserSummary] = {}
        self._roles: Dict[str, RoleDefinition] = {}
        self._assignments: Dict[str, RoleAssignment] = {}
        self._grants: Dict[str, List[DirectGrant]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    # ----- 种子数据 -----

    def add_user(self, user: UserSummary) -> UserSummary:
        self._users[user.id] = user
        return user

    def add_role(self, role: RoleDefinition) -> RoleDefinition:
        self._roles[role.id] = role
        return role

    def set_direct_grants(self, user_id: str, grants: Iterable[DirectGrant]) -> None:
        self._grants[user_id] = list(grants)

    # ----- IRoleReadModel -----

    def get_active_assignments(self, user_id: str) -> List[RoleAssignment]:
        return [replace(a) for a in self._assignments.values()
                if a.user_id == user_id and a.is_active]

    def get_role_definition(self, role_id: str) -> Optional[RoleDefinition]:
        return self._roles.get(role_id)

    def get_direct_grants(self, user_id: str) -> List[DirectGrant]:
        return list(self._grants.get(user_id, []))

    # ----- IAssignmentStore -----

    def get_user(self, user_id: str) -> Optional[UserSummary]:
        return self._users.get(user_id)

    def get_assignment(self, assignment_id: str) -> Optional[RoleAssignment]:
        assignment = self._assignments.get(assignment_id)
        return replace(assignment) if assignment else None

    def find_active_assignment(self, user_id: str, role_id: str) -> Optional[RoleAssignment]:
        for a in self._assignments.values():
            if a.user_id == user_id and a.role_id == role_id and a.is_active:
                return replace(a)
        return None

    def list_assignments(self, user_id: Optional[str] = None,
                         active_only: bool = False) -> List[RoleAssignment]:
        result = []
        for a in self._assignments.values():
            if user_id is not None and a.user_id != user_id:
                continue
            if active_only and not a.is_active:
                continue
            result.append(replace(a))
        return result

    def add_assignment(self, assignment: RoleAssignment) -> RoleAssignment:
        with self._lock:
            if not assignment.id:
                assignment = replace(assignment, id=f"ura-{next(self._ids)}")
            self._assignments[assignment.id] = assignment
        return replace(assignment)

    def update_assignment(self, assignment_id: str, **changes) -> RoleAssignment:
        assignment = self._assignments.get(assignment_id)
        if assignment is None:
            raise KeyError(assignment_id)
        updated = replace(assignment, **changes)
        self._assignments[assignment_id] = updated
        return replace(updated)

    def deactivate_assignment(self, assignment_id: str) -> RoleAssignment:
        return self.update_assignment(assignment_id, is_active=False)


__all__ = [
    "RoleDefinition",
    "RoleAssignment",
    "DirectGrant",
    "UserSummary",
    "IRoleReadModel",
    "IAssignmentStore",
    "InMemoryRoleStore",
]
