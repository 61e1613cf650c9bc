"""
authz/cache.py

权限结果缓存 - 显式生命周期的缓存对象

替代模块级全局缓存：通过 init_cache(config) 创建实例，
按引用传给批量评估器，teardown_cache(cache) 释放。每个测试可拥有独立实例。

键: (user_id, partition, PermissionKey, ResourceContext | None)
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple
import logging
import threading

from authz.context import ResourceContext
from authz.evaluator import EvaluationSource, PermissionEvaluationResult
from authz.key import PermissionKey

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, Tuple[Optional[str], ...], PermissionKey, Optional[ResourceContext]]


@dataclass
class CacheConfig:
    """
    缓存配置

    Attributes:
        fresh_ttl_seconds: 新鲜期（默认 15 分钟），期内命中直接返回
        gc_after_seconds: 闲置回收期（默认 30 分钟），超过后可被回收
        max_entries: 最大条目数，超出时先回收再淘汰最久未访问的条目
    """

    fresh_ttl_seconds: int = 15 * 60
    gc_after_seconds: int = 30 * 60
    max_entries: int = 10000


@dataclass
class CacheEntry:
    """缓存条目"""

    key: PermissionKey
    value: bool
    source: EvaluationSource
    expires_at: datetime
    last_accessed_at: datetime
    reason: Optional[str] = None
    scope_filters: Optional[Dict[str, Any]] = None

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expires_at

    def to_result(self, now: datetime) -> PermissionEvaluationResult:
        """转为 cached 来源的评估结果"""
        return PermissionEvaluationResult(
            allowed=self.value,
            reason=self.reason,
            source=EvaluationSource.CACHED,
            scope_filters=dict(self.scope_filters or {}),
            ttl=max(0, int((self.expires_at - now).total_seconds())),
        )


class PermissionCache:
    """
    权限缓存

    特性：
    - 新鲜期内命中，过期条目保留到闲置回收
    - 按用户失效（跨所有租户上下文删除）
    - 每用户代次：失效后拒绝旧代次计算出的写入
    - 命中/未命中统计

    写入只来自批量评估器，删除只来自历史台账（及管理服务的同一失效入口）。
    """

    def __init__(self, config: Optional[CacheConfig] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._generations: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def now(self) -> datetime:
        return self._clock()

    @staticmethod
    def make_key(user_id: str, tenant_key: Tuple[Optional[str], ...], key: PermissionKey,
                 resource_context: Optional[ResourceContext] = None) -> CacheKey:
        return (user_id, tuple(tenant_key), key, resource_context)

    def generation(self, user_id: str) -> int:
        """用户当前代次（每次失效 +1）"""
        with self._lock:
            return self._generations.get(user_id, 0)

    def get(self, user_id: str, tenant_key: Tuple[Optional[str], ...], key: PermissionKey,
            resource_context: Optional[ResourceContext] = None) -> Optional[CacheEntry]:
        """获取新鲜条目，过期或不存在返回 None"""
        cache_key = self.make_key(user_id, tenant_key, key, resource_context)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(cache_key)
            if entry is None or not entry.is_fresh(now):
                self._misses += 1
                return None
            entry.last_accessed_at = now
            self._hits += 1
            return entry

    def set(
        self,
        user_id: str,
        tenant_key: Tuple[Optional[str], ...],
        key: PermissionKey,
        result: PermissionEvaluationResult,
        resource_context: Optional[ResourceContext] = None,
        generation: Optional[int] = None,
    ) -> bool:
        """
        写入评估结果

        Args:
            generation: 计算开始时的用户代次；已失效则拒绝写入

        Returns:
            True 如果写入成功
        """
        if self._closed:
            return False
        now = self._clock()
        with self._lock:
            if generation is not None and generation != self._generations.get(user_id, 0):
                logger.debug(f"Discarding stale cache write for user {user_id}: {key}")
                return False
            cache_key = self.make_key(user_id, tenant_key, key, resource_context)
            self._entries[cache_key] = CacheEntry(
                key=key,
                value=result.allowed,
                source=result.source,
                reason=result.reason,
                scope_filters=dict(result.scope_filters),
                expires_at=now + timedelta(seconds=self.config.fresh_ttl_seconds),
                last_accessed_at=now,
            )
            if len(self._entries) > self.config.max_entries:
                self._evict(now)
        return True

    def invalidate_user(self, user_id: str) -> int:
        """
        删除用户在所有租户上下文下的全部条目

        角色变化可能影响任何资源/操作/作用域组合，因此不只删除变化的那一项。

        Returns:
            删除的条目数
        """
        with self._lock:
            self._generations[user_id] = self._generations.get(user_id, 0) + 1
            doomed = [k for k in self._entries if k[0] == user_id]
            for k in doomed:
                del self._entries[k]
        logger.debug(f"Invalidated {len(doomed)} cached permissions for user {user_id}")
        return len(doomed)

    def invalidate_all(self) -> int:
        """清空全部条目（角色定义变更时使用）"""
        with self._lock:
            count = len(self._entries)
            for user_id in {k[0] for k in self._entries} | set(self._generations):
                self._generations[user_id] = self._generations.get(user_id, 0) + 1
            self._entries.clear()
        logger.info(f"Invalidated all {count} cached permissions")
        return count

    def collect_garbage(self) -> int:
        """回收闲置超过 gc_after 的条目"""
        now = self._clock()
        idle = timedelta(seconds=self.config.gc_after_seconds)
        with self._lock:
            doomed = [k for k, e in self._entries.items() if now - e.last_accessed_at >= idle]
            for k in doomed:
                del self._entries[k]
        if doomed:
            logger.debug(f"Garbage-collected {len(doomed)} idle cache entries")
        return len(doomed)

    def get_statistics(self) -> Dict[str, Any]:
        """缓存统计"""
        now = self._clock()
        with self._lock:
            total = len(self._entries)
            expired = len([e for e in self._entries.values() if not e.is_fresh(now)])
            return {
                "total_cached": total,
                "expired_cached": expired,
                "valid_cached": total - expired,
                "hits": self._hits,
                "misses": self._misses,
                "users": len({k[0] for k in self._entries}),
            }

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        """清空条目和统计（用于测试）"""
        with self._lock:
            self._entries.clear()
            self._generations.clear()
            self._hits = 0
            self._misses = 0

    def _evict(self, now: datetime) -> None:
        """容量超限：先回收闲置条目，再淘汰最久未访问的条目"""
        idle = timedelta(seconds=self.config.gc_after_seconds)
        for k in [k for k, e in self._entries.items() if now - e.last_accessed_at >= idle]:
            del self._entries[k]
        overflow = len(self._entries) - self.config.max_entries
        if overflow > 0:
            oldest = sorted(self._entries.items(), key=lambda item: item[1].last_accessed_at)
            for k, _ in oldest[:overflow]:
                del self._entries[k]

    def _close(self) -> None:
        self.clear()
        self._closed = True


def init_cache(config: Optional[CacheConfig] = None,
               clock: Callable[[], datetime] = datetime.now) -> PermissionCache:
    """创建缓存实例"""
    cache = PermissionCache(config, clock=clock)
    logger.info(
        f"Permission cache initialized (fresh={cache.config.fresh_ttl_seconds}s, "
        f"gc_after={cache.config.gc_after_seconds}s)"
    )
    return cache


def teardown_cache(cache: PermissionCache) -> None:
    """释放缓存实例，之后的写入被忽略"""
    stats = cache.get_statistics()
    cache._close()
    logger.info(f"Permission cache torn down ({stats['total_cached']} entries dropped)")


__all__ = [
    "CacheConfig",
    "CacheEntry",
    "PermissionCache",
    "init_cache",
    "teardown_cache",
]
