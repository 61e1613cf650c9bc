"""
authz/batch.py

批量评估器 - 去重、缓存、单次往返

1. 缓存命中直接返回（source=cached）
2. 去重窗口内相同 (用户, 租户, 键, 资源上下文) 的请求共享同一个 future
3. 窗口内排队的冷键一次性发给传输层
4. 成功结果写缓存；传输失败时全部待决键拒绝（fail closed），不缓存、不重试
"""
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple
import asyncio
import logging

from authz.cache import CacheKey, PermissionCache
from authz.context import ResourceContext, UserContext
from authz.evaluator import (
    UNAUTHENTICATED,
    EvaluationSource,
    PermissionEvaluationResult,
)
from authz.key import PermissionKey, PermissionSpec, encode
from authz.transport import IBulkCheckTransport

logger = logging.getLogger(__name__)

GroupKey = Tuple[str, Tuple, Optional[ResourceContext]]

DEFAULT_DEDUP_WINDOW_MS = 50


@dataclass
class _PendingBatch:
    """一个待发送的批次（同一用户/租户/资源上下文）"""

    user: UserContext
    resource_context: Optional[ResourceContext]
    futures: Dict[PermissionKey, asyncio.Future] = field(default_factory=dict)
    # 发送时的用户缓存代次，None 表示尚未发送
    generation: Optional[int] = None
    timer: Optional[asyncio.Task] = None


@dataclass
class BatchStatistics:
    """批量评估统计"""

    requests: int = 0
    cache_hits: int = 0
    deduplicated: int = 0
    transport_calls: int = 0
    transport_failures: int = 0


class BatchEvaluator:
    """
    批量评估器

    同一客户端会话内所有门控组件共享一个实例（以及它的缓存和在途请求表）。

    Example:
        >>> cache = init_cache()
        >>> batch = BatchEvaluator(LocalBulkTransport(evaluator), cache)
        >>> results = await batch.evaluate_batch(user, [PermissionKey("guest", "read")])
    """

    def __init__(
        self,
        transport: IBulkCheckTransport,
        cache: PermissionCache,
        dedup_window_ms: int = DEFAULT_DEDUP_WINDOW_MS,
    ):
        self._transport = transport
        self._cache = cache
        self._window = max(0, dedup_window_ms) / 1000.0
        self._pending: Dict[GroupKey, _PendingBatch] = {}
        self._inflight: Dict[CacheKey, _PendingBatch] = {}
        self._tasks: Set[asyncio.Task] = set()
        self.stats = BatchStatistics()

    @property
    def cache(self) -> PermissionCache:
        return self._cache

    async def evaluate_batch(
        self,
        user: Optional[UserContext],
        keys: Iterable[PermissionKey],
        resource_context: Optional[ResourceContext] = None,
    ) -> Dict[PermissionKey, PermissionEvaluationResult]:
        """
        批量评估

        Args:
            user: 用户上下文
            keys: 权限键列表（重复键只评估一次）
            resource_context: 本批共享的资源上下文

        Returns:
            {PermissionKey: PermissionEvaluationResult}
        """
        keys = list(dict.fromkeys(keys))
        if user is None or not user.is_authenticated:
            return {k: PermissionEvaluationResult.denied(UNAUTHENTICATED) for k in keys}

        results: Dict[PermissionKey, PermissionEvaluationResult] = {}
        waiting: Dict[PermissionKey, asyncio.Future] = {}
        generation = self._cache.generation(user.user_id)

        for key in keys:
            self.stats.requests += 1
            entry = self._cache.get(user.user_id, user.cache_partition, key, resource_context)
            if entry is not None:
                self.stats.cache_hits += 1
                results[key] = entry.to_result(self._cache.now())
                continue

            cache_key = PermissionCache.make_key(user.user_id, user.cache_partition, key, resource_context)
            inflight = self._inflight.get(cache_key)
            if inflight is not None and inflight.generation in (None, generation):
                future = inflight.futures.get(key)
                if future is not None and not future.done():
                    self.stats.deduplicated += 1
                    waiting[key] = future
                    continue

            waiting[key] = self._enqueue(user, key, resource_context, cache_key)

        if waiting:
            # shield: 请求方取消时在途评估继续完成并写缓存
            resolved = await asyncio.gather(*(asyncio.shield(f) for f in waiting.values()))
            results.update(zip(waiting.keys(), resolved))

        return {k: results[k] for k in keys}

    async def flush(self) -> None:
        """立即发送所有排队批次并等待完成（用于关闭和测试）"""
        pending = list(self._pending.values())
        self._pending.clear()
        for batch in pending:
            if batch.timer is not None:
                batch.timer.cancel()
        await asyncio.gather(*(self._dispatch(batch) for batch in pending))
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ----- 内部方法 -----

    def _enqueue(
        self,
        user: UserContext,
        key: PermissionKey,
        resource_context: Optional[ResourceContext],
        cache_key: CacheKey,
    ) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        group_key: GroupKey = (user.user_id, user.cache_partition, resource_context)
        batch = self._pending.get(group_key)
        if batch is None:
            batch = _PendingBatch(user=user, resource_context=resource_context)
            self._pending[group_key] = batch
            task = loop.create_task(self._dispatch_later(group_key, batch))
            batch.timer = task
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        future = batch.futures.get(key)
        if future is None:
            future = loop.create_future()
            batch.futures[key] = future
        self._inflight[cache_key] = batch
        return future

    async def _dispatch_later(self, group_key: GroupKey, batch: _PendingBatch) -> None:
        await asyncio.sleep(self._window)
        if self._pending.get(group_key) is batch:
            del self._pending[group_key]
            await self._dispatch(batch)

    async def _dispatch(self, batch: _PendingBatch) -> None:
        if batch.generation is not None:
            return
        user = batch.user
        batch.generation = self._cache.generation(user.user_id)
        specs = [PermissionSpec.of(k) for k in batch.futures]

        self.stats.transport_calls += 1
        logger.debug(f"Dispatching bulk check of {len(specs)} permissions for user {user.user_id}")
        try:
            response = await self._transport.check_bulk(user, specs, batch.resource_context)
        except Exception as e:
            self.stats.transport_failures += 1
            logger.warning(
                f"Bulk permission check failed for user {user.user_id} "
                f"({len(specs)} keys denied): {e}"
            )
            for future in batch.futures.values():
                if not future.done():
                    future.set_result(PermissionEvaluationResult.denied(
                        f"batch evaluation failed: {e}", EvaluationSource.DEFAULT
                    ))
        else:
            failed = response.failed_keys()
            if response.errors:
                logger.warning(f"Bulk permission check reported errors: {response.errors}")
            for key, future in batch.futures.items():
                encoded = encode(key)
                result = response.permissions.get(encoded)
                if result is None:
                    result = PermissionEvaluationResult.denied("missing from bulk response")
                elif encoded not in failed:
                    self._cache.set(
                        user.user_id, user.cache_partition, key, result,
                        resource_context=batch.resource_context,
                        generation=batch.generation,
                    )
                if not future.done():
                    future.set_result(result)
        finally:
            for key in batch.futures:
                cache_key = PermissionCache.make_key(
                    user.user_id, user.cache_partition, key, batch.resource_context
                )
                if self._inflight.get(cache_key) is batch:
                    del self._inflight[cache_key]


__all__ = [
    "DEFAULT_DEDUP_WINDOW_MS",
    "BatchStatistics",
    "BatchEvaluator",
]
