"""
测试 authz.gate - 权限门控（OR / AND 组合）
"""
from datetime import datetime

import pytest

from authz.batch import BatchEvaluator
from authz.cache import init_cache
from authz.context import ResourceContext, UserContext
from authz.evaluator import PermissionEvaluator
from authz.gate import PermissionGate
from authz.key import PermissionSpec
from authz.read_model import RoleAssignment
from authz.transport import LocalBulkTransport


@pytest.fixture
def gate(role_store):
    role_store.add_assignment(RoleAssignment(
        id="", user_id="u1", role_id="r1", assigned_by="admin", assigned_at=datetime.now()
    ))
    transport = LocalBulkTransport(PermissionEvaluator(role_store))
    return PermissionGate(BatchEvaluator(transport, init_cache(), dedup_window_ms=0))


class TestCheckPermission:
    @pytest.mark.asyncio
    async def test_allowed(self, gate, staff_user):
        assert await gate.check_permission(staff_user, "reservation", "read", "own") is True

    @pytest.mark.asyncio
    async def test_denied_wider_scope(self, gate, staff_user):
        assert await gate.check_permission(staff_user, "reservation", "read", "organization") is False

    @pytest.mark.asyncio
    async def test_default_scope_own(self, gate, staff_user):
        assert await gate.check_permission(staff_user, "guest", "read") is True

    @pytest.mark.asyncio
    async def test_unauthenticated(self, gate):
        assert await gate.check_permission(UserContext(user_id=None), "guest", "read") is False

    @pytest.mark.asyncio
    async def test_invalid_scope_raises(self, gate, staff_user):
        """测试调用方传入未知作用域属于编程错误"""
        with pytest.raises(ValueError):
            await gate.check_permission(staff_user, "guest", "read", "galaxy")


class TestComposition:
    @pytest.mark.asyncio
    async def test_require_any(self, gate, staff_user):
        """测试 OR：任一满足即允许"""
        specs = [
            PermissionSpec("report", "read", "property"),
            PermissionSpec("guest", "read", "property"),
        ]
        assert await gate.check_any_permission(staff_user, specs) is True

    @pytest.mark.asyncio
    async def test_require_any_denied(self, gate, staff_user):
        result = await gate.require_any(staff_user, [PermissionSpec("report", "read", "property")])
        assert result.allowed is False
        assert "report.read.property" in result.reason

    @pytest.mark.asyncio
    async def test_require_all(self, gate, staff_user):
        """测试 AND：全部满足才允许"""
        ok = await gate.require_all(staff_user, [
            PermissionSpec("reservation", "read", "property"),
            PermissionSpec("guest", "read", "own"),
        ])
        assert ok.allowed is True

        denied = await gate.require_all(staff_user, [
            PermissionSpec("reservation", "read", "property"),
            PermissionSpec("report", "read", "property"),
        ])
        assert denied.allowed is False

    @pytest.mark.asyncio
    async def test_require_all_empty(self, gate, staff_user):
        assert (await gate.require_all(staff_user, [])).allowed is False

    @pytest.mark.asyncio
    async def test_require_any_empty(self, gate, staff_user):
        assert (await gate.require_any(staff_user, [])).allowed is False

    @pytest.mark.asyncio
    async def test_mixed_contexts(self, gate, staff_user):
        specs = [
            PermissionSpec("guest", "read", "property", ResourceContext(resource_id="g-1")),
            PermissionSpec("reservation", "read", "own", ResourceContext(resource_id="r-1")),
        ]
        assert (await gate.require_all(staff_user, specs)).allowed is True
