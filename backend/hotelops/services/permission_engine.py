"""
权限引擎装配 - 每个请求一套门控/台账，共享应用级批量评估器与缓存

缓存失效延迟到事务提交之后执行：提交前失效会让并发请求在新代次下
读到未提交的旧数据并写回缓存。
"""
from typing import Callable, List, Optional, Set
import asyncio
import logging

from fastapi import Depends, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from authz.batch import BatchEvaluator
from authz.cache import CacheConfig, PermissionCache
from authz.context import ResourceContext, UserContext
from authz.evaluator import EvaluationSource, PermissionEvaluator
from authz.gate import PermissionGate
from authz.history import RoleHistoryLedger
from authz.key import PermissionSpec, encode
from authz.transport import BulkCheckResult, IBulkCheckTransport, LocalBulkTransport
from hotelops.config import Settings, settings
from hotelops.database import SessionLocal, get_db
from hotelops.services.rbac_service import PermissionService, RoleService
from hotelops.services.sql_store import SqlHistoryStore, SqlRoleStore

logger = logging.getLogger(__name__)


def cache_config_from_settings(config: Settings = settings) -> CacheConfig:
    return CacheConfig(
        fresh_ttl_seconds=config.PERMISSION_CACHE_FRESH_SECONDS,
        gc_after_seconds=config.PERMISSION_CACHE_GC_SECONDS,
        max_entries=config.PERMISSION_CACHE_MAX_ENTRIES,
    )


class DeferredInvalidator:
    """收集需要失效的用户，提交后统一失效"""

    def __init__(self, cache: PermissionCache):
        self._cache = cache
        self._users: Set[str] = set()
        self._all = False

    def user(self, user_id: str) -> None:
        self._users.add(user_id)

    def everything(self) -> None:
        self._all = True

    def flush(self) -> int:
        if self._all:
            count = self._cache.invalidate_all()
        else:
            count = sum(self._cache.invalidate_user(u) for u in self._users)
        self._users.clear()
        self._all = False
        return count

    def discard(self) -> None:
        self._users.clear()
        self._all = False


class SessionBulkTransport(IBulkCheckTransport):
    """
    应用级批量检查传输

    每次发送打开独立的数据库会话，在线程池中运行同步评估器，
    只读取已提交的数据，不阻塞事件循环。
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal,
                 platform_admin_roles: Optional[List[str]] = None):
        self._session_factory = session_factory
        self._platform_admin_roles = platform_admin_roles

    async def check_bulk(
        self,
        user: UserContext,
        specs: List[PermissionSpec],
        global_context: Optional[ResourceContext] = None,
    ) -> BulkCheckResult:
        return await run_in_threadpool(self._check, user, specs, global_context)

    def _check(self, user, specs, global_context) -> BulkCheckResult:
        db = self._session_factory()
        try:
            evaluator = PermissionEvaluator(
                SqlRoleStore(db), platform_admin_roles=self._platform_admin_roles
            )
            return LocalBulkTransport(evaluator).check_bulk_sync(user, specs, global_context)
        finally:
            db.close()


def build_batch_evaluator(
    cache: PermissionCache,
    session_factory: Callable[[], Session] = SessionLocal,
    config: Settings = settings,
) -> BatchEvaluator:
    """应用级批量评估器：所有请求共享缓存与在途请求表"""
    transport = SessionBulkTransport(session_factory, config.PLATFORM_ADMIN_ROLES)
    return BatchEvaluator(transport, cache, dedup_window_ms=config.PERMISSION_DEDUP_WINDOW_MS)


class PermissionEngine:
    """
    请求级权限引擎

    传入应用级 batch 时门控经由共享的批量评估器；否则在本会话上建立独立的评估链路。

    Example:
        >>> engine = PermissionEngine(db, cache)
        >>> await engine.gate.check_permission(user, "reservation", "read", "property")
        >>> engine.ledger.record_assignment("3", "5", assigned_by="1")
        >>> engine.commit()
    """

    def __init__(self, db: Session, cache: Optional[PermissionCache] = None,
                 config: Settings = settings, batch: Optional[BatchEvaluator] = None):
        if cache is None and batch is None:
            raise ValueError("PermissionEngine needs a cache or a shared batch evaluator")
        cache = batch.cache if batch is not None else cache
        self.db = db
        self.cache = cache
        self.invalidations = DeferredInvalidator(cache)

        self.store = SqlRoleStore(db)
        self.evaluator = PermissionEvaluator(
            self.store, platform_admin_roles=config.PLATFORM_ADMIN_ROLES
        )
        if batch is None:
            batch = BatchEvaluator(
                LocalBulkTransport(self.evaluator), cache,
                dedup_window_ms=config.PERMISSION_DEDUP_WINDOW_MS,
            )
        self.batch = batch
        self.gate = PermissionGate(self.batch)
        self.ledger = RoleHistoryLedger(
            self.store, SqlHistoryStore(db), invalidator=self.invalidations.user
        )
        self.roles = RoleService(db, invalidate_all=self.invalidations.everything)
        self.permissions = PermissionService(db, invalidator=self.invalidations.user)

    async def bulk_check(
        self,
        user: Optional[UserContext],
        specs: List[PermissionSpec],
        global_context: Optional[ResourceContext] = None,
    ) -> BulkCheckResult:
        """批量检查，经由批量评估器（命中缓存计入 cached）"""
        groups = {}
        for spec in specs:
            groups.setdefault(spec.context or global_context, []).append(spec.key)

        resolved = await asyncio.gather(
            *(self.batch.evaluate_batch(user, keys, ctx) for ctx, keys in groups.items())
        )
        result = BulkCheckResult()
        for evaluated in resolved:
            for key, r in evaluated.items():
                result.permissions[encode(key)] = r
                if r.source == EvaluationSource.CACHED:
                    result.cached += 1
                else:
                    result.evaluated += 1
        return result

    def commit(self) -> None:
        """提交事务并执行延迟失效"""
        self.db.commit()
        count = self.invalidations.flush()
        logger.debug(f"Committed permission changes, {count} cache entries invalidated")

    def rollback(self) -> None:
        self.db.rollback()
        self.invalidations.discard()


def get_permission_batch(request: Request) -> BatchEvaluator:
    """依赖注入：应用级批量评估器（lifespan 中创建）"""
    return request.app.state.permission_batch


def get_permission_engine(
    db: Session = Depends(get_db),
    batch: BatchEvaluator = Depends(get_permission_batch),
) -> PermissionEngine:
    """依赖注入：请求级权限引擎，门控共享应用级批量评估器"""
    return PermissionEngine(db, batch=batch)
