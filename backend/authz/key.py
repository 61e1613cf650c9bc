"""
authz/key.py

权限键模型 - 规范的 (resource, action, scope) 三元组及其字符串编码

字符串格式 "<resource>.<action>.<scope>"，scope 省略时默认 own。
本层不做通配符匹配：两个键相等当且仅当三个字段完全相同。
"""
from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING

from authz.scope import DEFAULT_SCOPE, Scope, is_valid_scope

if TYPE_CHECKING:
    from authz.context import ResourceContext


class InvalidKeyFormat(ValueError):
    """权限键格式错误（调用方缺陷，不面向最终用户）"""

    pass


@dataclass(frozen=True)
class PermissionKey:
    """
    权限键

    Attributes:
        resource: 资源类型 (如 "reservation", "guest", "role")
        action: 操作类型 (如 "read", "update", "assign")
        scope: 作用域 (own/department/property/organization/platform)
    """

    resource: str
    action: str
    scope: str = DEFAULT_SCOPE

    def __post_init__(self):
        if isinstance(self.scope, Scope):
            object.__setattr__(self, "scope", self.scope.value)
        if not self.resource or not self.action:
            raise InvalidKeyFormat(
                f"Permission key requires resource and action: "
                f"{self.resource!r}.{self.action!r}"
            )
        if "." in self.resource or "." in self.action:
            raise InvalidKeyFormat(
                f"Permission key segments must not contain '.': "
                f"{self.resource!r}.{self.action!r}"
            )
        if not is_valid_scope(self.scope):
            raise InvalidKeyFormat(f"Unknown permission scope: {self.scope!r}")

    def __str__(self) -> str:
        return encode(self)

    @classmethod
    def from_string(cls, key_str: str) -> "PermissionKey":
        """从字符串解析，等价于 decode()"""
        return decode(key_str)

    def with_scope(self, scope: str) -> "PermissionKey":
        """返回同一资源/操作、不同作用域的键"""
        return PermissionKey(self.resource, self.action, scope)


def encode(key: PermissionKey) -> str:
    """编码为 "<resource>.<action>.<scope>" """
    return f"{key.resource}.{key.action}.{key.scope}"


def decode(key_str: str) -> PermissionKey:
    """
    解析权限键字符串

    Args:
        key_str: "resource.action" 或 "resource.action.scope"

    Returns:
        PermissionKey 对象

    Raises:
        InvalidKeyFormat: 缺少 action、段为空、段数过多或作用域未知
    """
    if not isinstance(key_str, str):
        raise InvalidKeyFormat(f"Permission key must be a string: {key_str!r}")

    parts = [p.strip() for p in key_str.strip().split(".")]
    if len(parts) < 2:
        raise InvalidKeyFormat(f"Invalid permission key (missing action): {key_str!r}")
    if len(parts) > 3:
        raise InvalidKeyFormat(f"Invalid permission key (too many segments): {key_str!r}")
    if any(not p for p in parts):
        raise InvalidKeyFormat(f"Invalid permission key (empty segment): {key_str!r}")

    scope = parts[2] if len(parts) == 3 else DEFAULT_SCOPE
    return PermissionKey(resource=parts[0], action=parts[1], scope=scope)


@dataclass(frozen=True)
class PermissionSpec:
    """
    单个权限检查请求 - 权限键加可选的资源上下文

    UI 门控组件和批量检查传输都以此为单位提问。
    """

    resource: str
    action: str
    scope: str = DEFAULT_SCOPE
    context: Optional["ResourceContext"] = None

    @property
    def key(self) -> PermissionKey:
        return PermissionKey(self.resource, self.action, self.scope)

    @classmethod
    def of(cls, key: PermissionKey, context: Optional["ResourceContext"] = None) -> "PermissionSpec":
        return cls(key.resource, key.action, key.scope, context)


__all__ = [
    "InvalidKeyFormat",
    "PermissionKey",
    "PermissionSpec",
    "encode",
    "decode",
]
