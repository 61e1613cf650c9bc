"""
测试 hotelops.services.sql_store - SQLAlchemy 读模型与历史存储
"""
from datetime import datetime, timedelta

import pytest

from authz.context import TenantContext, UserContext
from authz.evaluator import PermissionEvaluator
from authz.history import HistoryAction, HistoryFilter, RoleHistoryLedger
from authz.key import PermissionKey
from authz.read_model import RoleAssignment
from hotelops.models.rbac import SysRole, SysRoleHistory, SysUserRole
from hotelops.services.rbac_service import PermissionService
from hotelops.services.sql_store import SqlHistoryStore, SqlRoleStore, to_int_id


@pytest.fixture
def store(seeded_db):
    return SqlRoleStore(seeded_db)


@pytest.fixture
def ledger(seeded_db, store):
    return RoleHistoryLedger(store, SqlHistoryStore(seeded_db))


def _role_id(db, code):
    return str(db.query(SysRole).filter(SysRole.code == code).first().id)


def _context(user):
    return UserContext(
        user_id=str(user.id),
        role=user.system_role,
        tenant=TenantContext(user.organization_id, user.property_id, user.department_id),
    )


class TestToIntId:
    def test_valid(self):
        assert to_int_id("12") == 12
        assert to_int_id(7) == 7

    @pytest.mark.parametrize("value", [None, "abc", "", "1.5"])
    def test_invalid(self, value):
        assert to_int_id(value) is None


class TestSqlRoleStore:
    def test_role_definition(self, seeded_db, store):
        """测试角色定义携带权限键集合"""
        role = store.get_role_definition(_role_id(seeded_db, "STAFF"))
        assert role.is_system_role is True
        assert role.level == 5
        assert PermissionKey("reservation", "read", "property") in role.permissions
        assert PermissionKey("task", "update", "own") in role.permissions

    def test_unknown_role(self, store):
        assert store.get_role_definition("9999") is None
        assert store.get_role_definition("abc") is None

    def test_user_summary(self, store, staff):
        summary = store.get_user(str(staff.id))
        assert summary.name == "Front1"
        assert summary.organization_id == "org-1"
        assert store.get_user("nope") is None

    def test_active_assignments(self, store, staff):
        assignments = store.get_active_assignments(str(staff.id))
        assert len(assignments) == 1
        assert assignments[0].is_active

    def test_add_update_deactivate(self, seeded_db, store, staff):
        role_id = _role_id(seeded_db, "VENDOR")
        added = store.add_assignment(RoleAssignment(
            id="", user_id=str(staff.id), role_id=role_id, assigned_by="1",
            assigned_at=datetime.now(), conditions={"isOwner": True}, metadata={"note": "x"},
        ))
        assert added.id.isdigit()
        assert store.find_active_assignment(str(staff.id), role_id).id == added.id

        updated = store.update_assignment(added.id, metadata={"note": "y"})
        assert updated.metadata == {"note": "y"}
        assert seeded_db.get(SysUserRole, int(added.id)).meta == {"note": "y"}

        store.deactivate_assignment(added.id)
        assert store.find_active_assignment(str(staff.id), role_id) is None
        assert store.get_assignment(added.id).is_active is False

    def test_update_missing(self, store):
        with pytest.raises(KeyError):
            store.update_assignment("424242", is_active=False)

    def test_direct_grants(self, seeded_db, store, staff):
        service = PermissionService(seeded_db)
        service.set_user_permission(staff.id, "report.read.property")
        service.set_user_permission(staff.id, "guest.read.property", granted=False)

        grants = {g.key: g.granted for g in store.get_direct_grants(str(staff.id))}
        assert grants[PermissionKey("report", "read", "property")] is True
        assert grants[PermissionKey("guest", "read", "property")] is False


class TestEvaluationAgainstDatabase:
    def test_staff_permissions(self, store, staff):
        """测试数据库中的员工角色评估"""
        evaluator = PermissionEvaluator(store)
        user = _context(staff)
        assert evaluator.evaluate(user, PermissionKey("reservation", "read", "own")).allowed
        assert not evaluator.evaluate(user, PermissionKey("reservation", "read", "organization")).allowed
        assert not evaluator.evaluate(user, PermissionKey("role", "assign", "property")).allowed

    def test_direct_deny(self, seeded_db, store, staff):
        PermissionService(seeded_db).set_user_permission(staff.id, "reservation.read.property", granted=False)
        evaluator = PermissionEvaluator(store)
        result = evaluator.evaluate(_context(staff), PermissionKey("reservation", "read", "property"))
        assert result.allowed is False


class TestSqlHistoryStore:
    def test_ledger_roundtrip(self, seeded_db, ledger, staff, property_manager):
        """测试台账写入数据库并可按ID读回"""
        role_id = _role_id(seeded_db, "VENDOR")
        entry = ledger.record_assignment(str(staff.id), role_id, assigned_by=str(property_manager.id),
                                         reason="contractor", conditions={"isOwner": True})
        assert entry.id.startswith("rh-")
        assert seeded_db.query(SysRoleHistory).count() == 1

        loaded = SqlHistoryStore(seeded_db).get(entry.id)
        assert loaded.action == HistoryAction.ASSIGNED
        assert loaded.reason == "contractor"
        assert loaded.metadata["admin_name"] == "Manager"
        assert loaded.organization_id == "org-1"

    def test_rollback_in_database(self, seeded_db, ledger, staff):
        role_id = _role_id(seeded_db, "VENDOR")
        entry = ledger.record_assignment(str(staff.id), role_id, assigned_by="1")
        result = ledger.rollback(entry.id, performed_by="1")
        assert result.entry.context.parent_action == entry.id
        assert SqlRoleStore(seeded_db).find_active_assignment(str(staff.id), role_id) is None

    def test_expired_sweep(self, seeded_db, ledger, staff):
        role_id = _role_id(seeded_db, "VENDOR")
        ledger.record_assignment(str(staff.id), role_id, assigned_by="1",
                                 expires_at=datetime.now() - timedelta(seconds=1))
        page = ledger.query(HistoryFilter(actions=[HistoryAction.EXPIRED]))
        assert page.total == 1

    def test_get_invalid_id(self, seeded_db):
        assert SqlHistoryStore(seeded_db).get("not-an-id") is None
