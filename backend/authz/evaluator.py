"""
authz/evaluator.py

权限评估核心 - 根据用户的角色图和直接授权，对单个权限键给出允许/拒绝

评估顺序:
1. 未认证 → 拒绝（不抛异常，UI 门控渲染拒绝状态）
2. 平台管理员 → 无条件允许
3. 收集激活且未过期的分配，解析为角色定义
4. 候选集 = 角色权限 ∪ 直接授权 − 直接拒绝
5. 存在同资源同操作、作用域满足的候选键 → 允许
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Collection, Dict, Iterable, List, Optional, Set
import logging

from authz.context import ResourceContext, SystemRole, UserContext
from authz.key import PermissionKey
from authz.read_model import IRoleReadModel, RoleAssignment, RoleDefinition
from authz.scope import generate_scope_filters, scope_satisfies

logger = logging.getLogger(__name__)

UNAUTHENTICATED = "unauthenticated"


class EvaluationSource(str, Enum):
    """评估结果来源"""
    ROLE = "role"
    USER = "user"
    CACHED = "cached"
    DEFAULT = "default"


@dataclass
class PermissionEvaluationResult:
    """
    权限评估结果

    Attributes:
        allowed: 是否允许
        reason: 拒绝原因或说明
        source: 结果来源（role/user/cached/default）
        scope_filters: 允许时数据查询需要附加的过滤条件
        ttl: 缓存剩余秒数（仅 cached 结果）
    """

    allowed: bool
    reason: Optional[str] = None
    source: EvaluationSource = EvaluationSource.DEFAULT
    scope_filters: Dict[str, Any] = field(default_factory=dict)
    ttl: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "allowed": self.allowed,
            "reason": self.reason,
            "source": self.source.value,
            "scope_filters": self.scope_filters,
        }
        if self.ttl is not None:
            data["ttl"] = self.ttl
        return data

    @classmethod
    def denied(cls, reason: str, source: EvaluationSource = EvaluationSource.DEFAULT
               ) -> "PermissionEvaluationResult":
        return cls(allowed=False, reason=reason, source=source)


@dataclass
class EffectivePermissions:
    """用户的有效权限视图（派生数据，不持久化）"""

    user_id: str
    roles: List[RoleDefinition] = field(default_factory=list)
    role_granted: Set[PermissionKey] = field(default_factory=set)
    direct_granted: Set[PermissionKey] = field(default_factory=set)
    denied: Set[PermissionKey] = field(default_factory=set)
    # 带条件的分配：permission key -> 条件列表（任一满足即可）
    conditional: Dict[PermissionKey, List[Dict[str, Any]]] = field(default_factory=dict)

    @property
    def granted(self) -> Set[PermissionKey]:
        """候选集：角色权限 ∪ 直接授权 − 直接拒绝"""
        return (self.role_granted | self.direct_granted) - self.denied

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "roles": [{"id": r.id, "name": r.name, "level": r.level} for r in self.roles],
            "granted": sorted(str(k) for k in self.granted),
            "denied": sorted(str(k) for k in self.denied),
        }


class PermissionEvaluator:
    """
    权限评估器

    Example:
        >>> evaluator = PermissionEvaluator(store)
        >>> ctx = UserContext(user_id="u1", role="STAFF")
        >>> evaluator.evaluate(ctx, PermissionKey("reservation", "read", "own")).allowed
        True
    """

    def __init__(
        self,
        read_model: IRoleReadModel,
        platform_admin_roles: Optional[Collection[str]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._read_model = read_model
        self._admin_roles = set(platform_admin_roles or {SystemRole.PLATFORM_ADMIN.value})
        self._clock = clock

    @property
    def platform_admin_roles(self) -> Set[str]:
        return set(self._admin_roles)

    def get_effective_permissions(self, user_id: str) -> EffectivePermissions:
        """解析用户的有效权限"""
        now = self._clock()
        effective = EffectivePermissions(user_id=user_id)

        assignments = self._read_model.get_active_assignments(user_id)
        roles_by_level: List[RoleDefinition] = []
        for assignment in assignments:
            if not assignment.is_effective(now):
                continue
            role = self._read_model.get_role_definition(assignment.role_id)
            if role is None:
                logger.warning(
                    f"Assignment {assignment.id} references missing role {assignment.role_id}"
                )
                continue
            roles_by_level.append(role)
            self._collect_role_permissions(effective, assignment, role)

        # 多角色按层级排序（高层级在前）
        effective.roles = sorted(roles_by_level, key=lambda r: (-r.level, r.id))

        for grant in self._read_model.get_direct_grants(user_id):
            if not grant.is_effective(now):
                continue
            if grant.granted:
                effective.direct_granted.add(grant.key)
            else:
                effective.denied.add(grant.key)

        logger.debug(
            f"User {user_id} resolved {len(effective.granted)} permissions from "
            f"{len(effective.roles)} roles ({len(effective.denied)} denied)"
        )
        return effective

    def evaluate(
        self,
        user: Optional[UserContext],
        key: PermissionKey,
        resource_context: Optional[ResourceContext] = None,
    ) -> PermissionEvaluationResult:
        """
        评估单个权限键

        Args:
            user: 用户上下文（None 视为未认证）
            key: 请求的权限键
            resource_context: 目标资源上下文（用于分配条件）

        Returns:
            PermissionEvaluationResult
        """
        if user is None or not user.is_authenticated:
            return PermissionEvaluationResult.denied(UNAUTHENTICATED)

        # 平台管理员无条件通过（产品定义，非缺陷）
        if user.is_platform_admin(self._admin_roles):
            return PermissionEvaluationResult(
                allowed=True,
                reason="platform admin bypass",
                source=EvaluationSource.ROLE,
                scope_filters=generate_scope_filters(key.scope, user),
            )

        try:
            effective = self.get_effective_permissions(user.user_id)
        except Exception as e:
            logger.warning(f"Failed to resolve permissions for user {user.user_id}: {e}")
            return PermissionEvaluationResult.denied(f"evaluation error: {e}")

        return self._decide(user, key, effective, resource_context)

    def evaluate_many(
        self,
        user: Optional[UserContext],
        keys: Iterable[PermissionKey],
        resource_context: Optional[ResourceContext] = None,
    ) -> Dict[PermissionKey, PermissionEvaluationResult]:
        """
        一次解析有效权限，评估多个键

        与 evaluate() 不同，读模型异常会向上抛出，由批量传输记录为错误。
        """
        keys = list(dict.fromkeys(keys))
        if user is None or not user.is_authenticated or user.is_platform_admin(self._admin_roles):
            return {k: self.evaluate(user, k, resource_context) for k in keys}

        effective = self.get_effective_permissions(user.user_id)
        return {k: self._decide(user, k, effective, resource_context) for k in keys}

    def _evaluate_many_or_deny(
        self,
        user: Optional[UserContext],
        keys: List[PermissionKey],
        resource_context: Optional[ResourceContext],
    ) -> Dict[PermissionKey, PermissionEvaluationResult]:
        try:
            return self.evaluate_many(user, keys, resource_context)
        except Exception as e:
            logger.warning(f"Failed to resolve permissions for user {user.user_id}: {e}")
            return {k: PermissionEvaluationResult.denied(f"evaluation error: {e}") for k in keys}

    def evaluate_any(
        self,
        user: Optional[UserContext],
        keys: Iterable[PermissionKey],
        resource_context: Optional[ResourceContext] = None,
    ) -> PermissionEvaluationResult:
        """OR 组合：任一权限满足即允许"""
        keys = list(keys)
        results = self._evaluate_many_or_deny(user, keys, resource_context)
        for key in keys:
            if results[key].allowed:
                return results[key]
        return PermissionEvaluationResult.denied(
            f"None of the required permissions granted: {', '.join(str(k) for k in keys)}"
        )

    def evaluate_all(
        self,
        user: Optional[UserContext],
        keys: Iterable[PermissionKey],
        resource_context: Optional[ResourceContext] = None,
    ) -> PermissionEvaluationResult:
        """AND 组合：全部权限满足才允许"""
        keys = list(keys)
        results = self._evaluate_many_or_deny(user, keys, resource_context)
        for key in keys:
            if not results[key].allowed:
                return results[key]
        if not keys:
            return PermissionEvaluationResult.denied("no permissions requested")
        return results[keys[0]]

    # ----- 内部方法 -----

    def _collect_role_permissions(
        self,
        effective: EffectivePermissions,
        assignment: RoleAssignment,
        role: RoleDefinition,
    ) -> None:
        if not assignment.conditions:
            effective.role_granted.update(role.permissions)
            return
        for perm in role.permissions:
            effective.conditional.setdefault(perm, []).append(dict(assignment.conditions))

    def _decide(
        self,
        user: UserContext,
        key: PermissionKey,
        effective: EffectivePermissions,
        resource_context: Optional[ResourceContext],
    ) -> PermissionEvaluationResult:
        if key in effective.denied:
            return PermissionEvaluationResult.denied(
                "Explicitly denied by user permission", EvaluationSource.USER
            )

        if self._matches(key, effective.role_granted - effective.denied):
            return self._allowed(user, key, EvaluationSource.ROLE, "granted by role")

        for perm, conditions_list in effective.conditional.items():
            if perm in effective.denied or not self._key_satisfies(perm, key):
                continue
            for conditions in conditions_list:
                failure = self._check_conditions(conditions, user, resource_context)
                if failure is None:
                    return self._allowed(user, key, EvaluationSource.ROLE, "granted by conditional role")
                logger.debug(f"Condition failed for {perm} (user {user.user_id}): {failure}")

        if self._matches(key, effective.direct_granted - effective.denied):
            return self._allowed(user, key, EvaluationSource.USER, "granted by user permission")

        return PermissionEvaluationResult.denied("No matching permission found")

    def _allowed(self, user: UserContext, key: PermissionKey,
                 source: EvaluationSource, reason: str) -> PermissionEvaluationResult:
        return PermissionEvaluationResult(
            allowed=True,
            reason=reason,
            source=source,
            scope_filters=generate_scope_filters(key.scope, user),
        )

    @staticmethod
    def _key_satisfies(held: PermissionKey, required: PermissionKey) -> bool:
        return (
            held.resource == required.resource
            and held.action == required.action
            and scope_satisfies(held.scope, required.scope)
        )

    def _matches(self, key: PermissionKey, candidates: Set[PermissionKey]) -> bool:
        return any(self._key_satisfies(held, key) for held in candidates)

    @staticmethod
    def _check_conditions(
        conditions: Dict[str, Any],
        user: UserContext,
        resource: Optional[ResourceContext],
    ) -> Optional[str]:
        """检查分配条件，返回失败原因，全部通过返回 None"""
        tenant = user.tenant
        for name, value in conditions.items():
            if not value:
                continue
            if name == "sameDepartment":
                if resource and resource.department_id and tenant.department_id != resource.department_id:
                    return "User is not in the same department as the resource"
            elif name == "sameProperty":
                if resource and resource.property_id and tenant.property_id != resource.property_id:
                    return "User is not in the same property as the resource"
            elif name == "sameOrganization":
                if (resource and resource.organization_id
                        and tenant.organization_id != resource.organization_id):
                    return "User is not in the same organization as the resource"
            elif name == "isOwner":
                if resource and resource.owner_id and user.user_id != resource.owner_id:
                    return "User is not the owner of the resource"
            else:
                logger.warning(f"Unknown condition: {name}")
        return None


__all__ = [
    "UNAUTHENTICATED",
    "EvaluationSource",
    "PermissionEvaluationResult",
    "EffectivePermissions",
    "PermissionEvaluator",
]
