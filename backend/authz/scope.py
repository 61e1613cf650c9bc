"""
authz/scope.py

权限作用域层级 - 决定持有的作用域能否满足请求的作用域

作用域从窄到宽: own < department < property < organization < platform
"""
from enum import Enum
from typing import Any, Dict, Optional, TYPE_CHECKING, Union

if TYPE_CHECKING:
    from authz.context import UserContext


class Scope(str, Enum):
    """权限作用域（从窄到宽）"""
    OWN = "own"
    DEPARTMENT = "department"
    PROPERTY = "property"
    ORGANIZATION = "organization"
    PLATFORM = "platform"


DEFAULT_SCOPE = Scope.OWN.value

SCOPE_RANK: Dict[str, int] = {
    Scope.OWN.value: 0,
    Scope.DEPARTMENT.value: 1,
    Scope.PROPERTY.value: 2,
    Scope.ORGANIZATION.value: 3,
    Scope.PLATFORM.value: 4,
}


def is_valid_scope(scope: Union[str, Scope]) -> bool:
    """是否为已知作用域"""
    return _value(scope) in SCOPE_RANK


def scope_rank(scope: Union[str, Scope]) -> int:
    """
    获取作用域等级

    Raises:
        ValueError: 未知作用域
    """
    value = _value(scope)
    if value not in SCOPE_RANK:
        raise ValueError(f"Unknown scope: {value}")
    return SCOPE_RANK[value]


def scope_satisfies(held: Union[str, Scope], required: Union[str, Scope]) -> bool:
    """
    持有的作用域是否满足请求的作用域

    organization 级授权满足 department/own 级请求，
    但 department 级授权永远不满足 organization 级请求。
    """
    return scope_rank(held) >= scope_rank(required)


def generate_scope_filters(
    scope: Union[str, Scope], user: Optional["UserContext"]
) -> Dict[str, Any]:
    """
    根据请求作用域和用户租户上下文生成数据过滤条件

    platform 级不过滤；越窄的作用域附加越多的过滤列。
    """
    value = _value(scope)
    filters: Dict[str, Any] = {}
    if user is None or value == Scope.PLATFORM.value:
        return filters

    tenant = user.tenant
    rank = scope_rank(value)

    if tenant.organization_id is not None:
        filters["organization_id"] = tenant.organization_id
    if rank <= SCOPE_RANK[Scope.PROPERTY.value] and tenant.property_id is not None:
        filters["property_id"] = tenant.property_id
    if rank <= SCOPE_RANK[Scope.DEPARTMENT.value] and tenant.department_id is not None:
        filters["department_id"] = tenant.department_id
    if value == Scope.OWN.value:
        filters["user_id"] = user.user_id

    return filters


def _value(scope: Union[str, Scope]) -> str:
    return scope.value if isinstance(scope, Scope) else scope


__all__ = [
    "Scope",
    "DEFAULT_SCOPE",
    "SCOPE_RANK",
    "is_valid_scope",
    "scope_rank",
    "scope_satisfies",
    "generate_scope_filters",
]
