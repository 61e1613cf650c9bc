"""
测试 authz.cache - 权限结果缓存
"""
from datetime import datetime, timedelta

import pytest

from authz.cache import CacheConfig, PermissionCache, init_cache, teardown_cache
from authz.context import ResourceContext
from authz.evaluator import EvaluationSource, PermissionEvaluationResult
from authz.key import PermissionKey

TENANT = ("org-1", "p-1", None)
OTHER_TENANT = ("org-2", None, None)
KEY = PermissionKey("reservation", "read", "property")


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 6, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return init_cache(CacheConfig(fresh_ttl_seconds=60, gc_after_seconds=120, max_entries=100),
                      clock=clock)


def _allowed():
    return PermissionEvaluationResult(allowed=True, reason="granted by role",
                                      source=EvaluationSource.ROLE,
                                      scope_filters={"property_id": "p-1"})


class TestCacheBasics:
    def test_miss_then_hit(self, cache):
        assert cache.get("u1", TENANT, KEY) is None
        assert cache.set("u1", TENANT, KEY, _allowed()) is True

        entry = cache.get("u1", TENANT, KEY)
        assert entry is not None
        assert entry.value is True

        stats = cache.get_statistics()
        assert stats["hits"] == 1
        assert stats["misses"] == 1

    def test_to_result_is_cached_source(self, cache, clock):
        cache.set("u1", TENANT, KEY, _allowed())
        clock.advance(seconds=10)
        result = cache.get("u1", TENANT, KEY).to_result(clock())
        assert result.source == EvaluationSource.CACHED
        assert result.ttl == 50
        assert result.scope_filters == {"property_id": "p-1"}

    def test_key_includes_tenant_and_context(self, cache):
        """测试租户与资源上下文都是缓存键的一部分"""
        ctx = ResourceContext(resource_id="res-1")
        cache.set("u1", TENANT, KEY, _allowed(), resource_context=ctx)
        assert cache.get("u1", TENANT, KEY) is None
        assert cache.get("u1", OTHER_TENANT, KEY, ctx) is None
        assert cache.get("u1", TENANT, KEY, ctx) is not None

    def test_stale_after_fresh_ttl(self, cache, clock):
        cache.set("u1", TENANT, KEY, _allowed())
        clock.advance(seconds=61)
        assert cache.get("u1", TENANT, KEY) is None
        # 过期条目保留到闲置回收
        assert len(cache) == 1
        assert cache.get_statistics()["expired_cached"] == 1


class TestInvalidation:
    def test_invalidate_user_all_tenants(self, cache):
        """测试按用户失效覆盖所有租户上下文"""
        cache.set("u1", TENANT, KEY, _allowed())
        cache.set("u1", OTHER_TENANT, KEY, _allowed())
        cache.set("u2", TENANT, KEY, _allowed())

        assert cache.invalidate_user("u1") == 2
        assert cache.get("u1", TENANT, KEY) is None
        assert cache.get("u1", OTHER_TENANT, KEY) is None
        assert cache.get("u2", TENANT, KEY) is not None

    def test_generation_bumped(self, cache):
        assert cache.generation("u1") == 0
        cache.invalidate_user("u1")
        assert cache.generation("u1") == 1

    def test_stale_generation_write_refused(self, cache):
        """测试失效后拒绝旧代次计算出的写入"""
        generation = cache.generation("u1")
        cache.invalidate_user("u1")
        assert cache.set("u1", TENANT, KEY, _allowed(), generation=generation) is False
        assert cache.get("u1", TENANT, KEY) is None

        assert cache.set("u1", TENANT, KEY, _allowed(), generation=cache.generation("u1")) is True

    def test_invalidate_all(self, cache):
        cache.set("u1", TENANT, KEY, _allowed())
        cache.set("u2", TENANT, KEY, _allowed())
        generation = cache.generation("u1")

        assert cache.invalidate_all() == 2
        assert len(cache) == 0
        assert cache.set("u1", TENANT, KEY, _allowed(), generation=generation) is False


class TestGarbageCollection:
    def test_collect_idle(self, cache, clock):
        cache.set("u1", TENANT, KEY, _allowed())
        clock.advance(seconds=119)
        assert cache.collect_garbage() == 0
        clock.advance(seconds=1)
        assert cache.collect_garbage() == 1
        assert len(cache) == 0

    def test_access_resets_idle(self, cache, clock):
        cache.set("u1", TENANT, KEY, _allowed())
        clock.advance(seconds=50)
        cache.get("u1", TENANT, KEY)
        clock.advance(seconds=100)
        assert cache.collect_garbage() == 0

    def test_capacity_evicts_least_recent(self, clock):
        cache = PermissionCache(CacheConfig(max_entries=2), clock=clock)
        keys = [PermissionKey("room", action) for action in ("read", "update", "delete")]
        for key in keys:
            cache.set("u1", TENANT, key, _allowed())
            clock.advance(seconds=1)
        assert len(cache) == 2
        assert cache.get("u1", TENANT, keys[0]) is None
        assert cache.get("u1", TENANT, keys[2]) is not None


class TestLifecycle:
    def test_isolated_instances(self, clock):
        """测试多个缓存实例互不影响"""
        a = init_cache(clock=clock)
        b = init_cache(clock=clock)
        a.set("u1", TENANT, KEY, _allowed())
        assert b.get("u1", TENANT, KEY) is None

    def test_teardown(self, cache):
        cache.set("u1", TENANT, KEY, _allowed())
        teardown_cache(cache)
        assert cache.closed
        assert len(cache) == 0
        assert cache.set("u1", TENANT, KEY, _allowed()) is False
