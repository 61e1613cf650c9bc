"""
authz/transport.py

批量检查传输 - 批量评估器依赖的单次往返线协议

请求: list[PermissionSpec] + global_context
响应: {encoded_key: PermissionEvaluationResult} + 计数 {cached, evaluated, errors}
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple
import logging

from authz.context import ResourceContext, UserContext
from authz.evaluator import PermissionEvaluationResult, PermissionEvaluator
from authz.key import PermissionSpec, encode

logger = logging.getLogger(__name__)


class BatchEvaluationFailure(Exception):
    """批量评估传输/后端失败（调用方可重试，引擎不自动重试）"""

    pass


@dataclass
class BulkCheckResult:
    """批量检查响应"""

    permissions: Dict[str, PermissionEvaluationResult] = field(default_factory=dict)
    cached: int = 0
    evaluated: int = 0
    errors: List[str] = field(default_factory=list)

    def failed_keys(self) -> Set[str]:
        """出错的编码键（errors 格式为 "<key>: <message>"）"""
        return {e.split(": ", 1)[0] for e in self.errors}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "permissions": {k: v.to_dict() for k, v in self.permissions.items()},
            "cached": self.cached,
            "evaluated": self.evaluated,
            "errors": list(self.errors),
        }


class IBulkCheckTransport(ABC):
    """批量检查传输接口"""

    @abstractmethod
    async def check_bulk(
        self,
        user: UserContext,
        specs: List[PermissionSpec],
        global_context: Optional[ResourceContext] = None,
    ) -> BulkCheckResult:
        """
        一次往返评估全部权限

        Raises:
            BatchEvaluationFailure: 整体失败
        """


class LocalBulkTransport(IBulkCheckTransport):
    """
    进程内批量检查 - 直接调用 PermissionEvaluator

    也是 /permissions/bulk-check 端点的服务端实现。单个规格出错只影响该规格。
    """

    def __init__(self, evaluator: PermissionEvaluator):
        self._evaluator = evaluator

    async def check_bulk(
        self,
        user: UserContext,
        specs: List[PermissionSpec],
        global_context: Optional[ResourceContext] = None,
    ) -> BulkCheckResult:
        return self.check_bulk_sync(user, specs, global_context)

    def check_bulk_sync(
        self,
        user: UserContext,
        specs: List[PermissionSpec],
        global_context: Optional[ResourceContext] = None,
    ) -> BulkCheckResult:
        result = BulkCheckResult()

        # 按资源上下文分组，每组只解析一次有效权限
        groups: Dict[Optional[ResourceContext], List[PermissionSpec]] = {}
        for spec in specs:
            groups.setdefault(spec.context or global_context, []).append(spec)

        for context, group in groups.items():
            try:
                evaluated = self._evaluator.evaluate_many(user, [s.key for s in group], context)
            except Exception as e:
                logger.warning(f"Bulk check failed for user {user.user_id}: {e}")
                for spec in group:
                    encoded = encode(spec.key)
                    result.errors.append(f"{encoded}: {e}")
                    result.permissions[encoded] = PermissionEvaluationResult.denied(str(e))
                continue

            for spec in group:
                result.permissions[encode(spec.key)] = evaluated[spec.key]
                result.evaluated += 1

        return result


class CallableBulkTransport(IBulkCheckTransport):
    """
    适配任意异步函数为传输（远程客户端、测试桩）

    Example:
        >>> async def send(user, specs, ctx):
        ...     return BulkCheckResult(...)
        >>> transport = CallableBulkTransport(send)
    """

    def __init__(self, func):
        self._func = func
        self.calls: List[Tuple[UserContext, List[PermissionSpec]]] = []

    async def check_bulk(
        self,
        user: UserContext,
        specs: List[PermissionSpec],
        global_context: Optional[ResourceContext] = None,
    ) -> BulkCheckResult:
        self.calls.append((user, list(specs)))
        return await self._func(user, specs, global_context)


__all__ = [
    "BatchEvaluationFailure",
    "BulkCheckResult",
    "IBulkCheckTransport",
    "LocalBulkTransport",
    "CallableBulkTransport",
]
