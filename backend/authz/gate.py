"""
authz/gate.py

权限门控 - UI 组件的入站接口

每次门控调用只发起一次 evaluate_batch，共享批量评估器的缓存与去重。
组合语义显式给出：require_any 为 OR，require_all 为 AND。
"""
from typing import Iterable, List, Optional, Sequence
import asyncio
import logging

from authz.batch import BatchEvaluator
from authz.context import ResourceContext, UserContext
from authz.evaluator import EvaluationSource, PermissionEvaluationResult
from authz.key import PermissionKey, PermissionSpec
from authz.scope import DEFAULT_SCOPE

logger = logging.getLogger(__name__)


class PermissionGate:
    """
    权限门控

    Example:
        >>> gate = PermissionGate(batch)
        >>> if await gate.check_permission(user, "reservation", "read", "property"):
        ...     render()
    """

    def __init__(self, batch: BatchEvaluator):
        self._batch = batch

    async def check_permission(
        self,
        user: Optional[UserContext],
        resource: str,
        action: str,
        scope: str = DEFAULT_SCOPE,
        context: Optional[ResourceContext] = None,
    ) -> bool:
        """单个权限检查"""
        result = await self.evaluate(user, PermissionKey(resource, action, scope), context)
        return result.allowed

    async def evaluate(
        self,
        user: Optional[UserContext],
        key: PermissionKey,
        context: Optional[ResourceContext] = None,
    ) -> PermissionEvaluationResult:
        results = await self._batch.evaluate_batch(user, [key], context)
        return results[key]

    async def check_any_permission(
        self,
        user: Optional[UserContext],
        specs: Sequence[PermissionSpec],
    ) -> bool:
        """任一规格满足即返回 True（OR）"""
        return (await self.require_any(user, specs)).allowed

    async def require_any(
        self,
        user: Optional[UserContext],
        specs: Sequence[PermissionSpec],
    ) -> PermissionEvaluationResult:
        """OR 组合，返回第一个允许的结果；全部拒绝时汇总原因"""
        results = await self._evaluate_specs(user, specs)
        for result in results:
            if result.allowed:
                return result
        return PermissionEvaluationResult.denied(
            "None of the required permissions granted: "
            + ", ".join(str(s.key) for s in specs),
            EvaluationSource.DEFAULT,
        )

    async def require_all(
        self,
        user: Optional[UserContext],
        specs: Sequence[PermissionSpec],
    ) -> PermissionEvaluationResult:
        """AND 组合，返回第一个拒绝的结果；空列表视为拒绝"""
        if not specs:
            return PermissionEvaluationResult.denied("no permissions requested")
        results = await self._evaluate_specs(user, specs)
        for result in results:
            if not result.allowed:
                return result
        return results[0]

    async def _evaluate_specs(
        self,
        user: Optional[UserContext],
        specs: Iterable[PermissionSpec],
    ) -> List[PermissionEvaluationResult]:
        specs = list(specs)
        contexts = {s.context for s in specs}
        if len(contexts) <= 1:
            context = next(iter(contexts), None)
            results = await self._batch.evaluate_batch(user, [s.key for s in specs], context)
            return [results[s.key] for s in specs]

        # 资源上下文不同的规格按上下文分批（缓存键包含资源上下文）
        logger.debug(f"Gate check spans {len(contexts)} resource contexts")
        resolved = await asyncio.gather(
            *(self._batch.evaluate_batch(user, [s.key], s.context) for s in specs)
        )
        return [r[s.key] for r, s in zip(resolved, specs)]


__all__ = ["PermissionGate"]
