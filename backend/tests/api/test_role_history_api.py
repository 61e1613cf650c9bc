"""
测试角色分配与历史 API
"""
import csv
import io

import pytest

from hotelops.models.rbac import SysRole, SysUserRole


@pytest.fixture
def role_ids(seeded_db):
    return {r.code: str(r.id) for r in seeded_db.query(SysRole).all()}


def _assign(client, headers, user_id, role_id, **extra):
    return client.post("/roles/assignments", headers=headers,
                       json={"user_id": str(user_id), "role_id": role_id, **extra})


class TestAssignments:
    def test_assign(self, client, manager_headers, staff, property_manager, role_ids):
        """测试分配角色并记录历史"""
        response = _assign(client, manager_headers, staff.id, role_ids["VENDOR"], reason="contract")
        assert response.status_code == 201
        data = response.json()
        assert data["action"] == "ASSIGNED"
        assert data["assigned_by"] == str(property_manager.id)
        assert data["reason"] == "contract"
        assert data["audit_trail"]["session_id"] == "test-session"
        assert data["metadata"]["role_name"] == "供应商"

    def test_assign_duplicate(self, client, manager_headers, staff, role_ids):
        _assign(client, manager_headers, staff.id, role_ids["VENDOR"])
        response = _assign(client, manager_headers, staff.id, role_ids["VENDOR"])
        assert response.status_code == 409

    def test_assign_unknown_user(self, client, manager_headers, role_ids):
        response = _assign(client, manager_headers, 9999, role_ids["VENDOR"])
        assert response.status_code == 400

    def test_assign_higher_role_forbidden(self, client, manager_headers, staff, role_ids):
        """测试不能分配不低于自身层级的角色"""
        response = _assign(client, manager_headers, staff.id, role_ids["ORGANIZATION_OWNER"])
        assert response.status_code == 403

    def test_staff_cannot_assign(self, client, staff_headers, staff, role_ids):
        response = _assign(client, staff_headers, staff.id, role_ids["VENDOR"])
        assert response.status_code == 403

    def test_unauthenticated(self, client, staff, role_ids):
        response = _assign(client, {}, staff.id, role_ids["VENDOR"])
        assert response.status_code == 401

    def test_modify(self, client, manager_headers, staff, role_ids):
        assignment_id = _assign(client, manager_headers, staff.id, role_ids["VENDOR"]).json()["assignment_id"]
        response = client.patch(f"/roles/assignments/{assignment_id}", headers=manager_headers,
                                json={"conditions": {"isOwner": True}, "reason": "scope down"})
        assert response.status_code == 200
        assert response.json()["action"] == "MODIFIED"
        assert response.json()["snapshot"]["conditions"] == {}

    def test_modify_nothing(self, client, manager_headers, staff, role_ids):
        assignment_id = _assign(client, manager_headers, staff.id, role_ids["VENDOR"]).json()["assignment_id"]
        response = client.patch(f"/roles/assignments/{assignment_id}", headers=manager_headers,
                                json={"reason": "noop"})
        assert response.status_code == 400

    def test_remove(self, client, manager_headers, staff, role_ids):
        assignment_id = _assign(client, manager_headers, staff.id, role_ids["VENDOR"]).json()["assignment_id"]
        response = client.delete(f"/roles/assignments/{assignment_id}", headers=manager_headers,
                                 params={"reason": "ended"})
        assert response.status_code == 200
        assert response.json()["action"] == "REMOVED"

    def test_remove_unknown(self, client, manager_headers):
        assert client.delete("/roles/assignments/9999", headers=manager_headers).status_code == 404

    def test_bulk(self, client, manager_headers, make_user, role_ids):
        users = [make_user(f"bulk{i}", "STAFF", assign_system_role=False) for i in range(3)]
        items = [{"operation": "assign", "user_id": str(u.id), "role_id": role_ids["VENDOR"]} for u in users]
        items.append({"operation": "assign", "user_id": "9999", "role_id": role_ids["VENDOR"]})

        response = client.post("/roles/assignments/bulk", headers=manager_headers,
                               json={"items": items, "reason": "onboarding"})
        assert response.status_code == 200
        data = response.json()
        assert data["succeeded"] == 3
        assert data["failed"] == 1

        history = client.get("/roles/history", headers=manager_headers,
                             params={"batch_id": data["batch_id"]}).json()
        assert history["total"] == 3


class TestCacheInvalidation:
    def test_removal_revokes_cached_permission(self, client, seeded_db, manager_headers,
                                               staff, staff_headers):
        """测试移除分配后缓存的授权立即失效"""
        body = {"resource": "reservation", "action": "read", "scope": "own"}
        assert client.post("/permissions/check", headers=staff_headers, json=body).json()["allowed"] is True
        assert client.post("/permissions/check", headers=staff_headers, json=body).json()["source"] == "cached"

        assignment = seeded_db.query(SysUserRole).filter(SysUserRole.user_id == staff.id).first()
        response = client.delete(f"/roles/assignments/{assignment.id}", headers=manager_headers)
        assert response.status_code == 200

        after = client.post("/permissions/check", headers=staff_headers, json=body).json()
        assert after["allowed"] is False
        assert after["source"] != "cached"


class TestHistory:
    def test_query(self, client, manager_headers, staff, role_ids):
        _assign(client, manager_headers, staff.id, role_ids["VENDOR"])
        response = client.get("/roles/history", headers=manager_headers,
                              params={"actions": ["ASSIGNED"], "time_range": "24h"})
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["entries"][0]["user_id"] == str(staff.id)

    def test_query_forbidden_for_staff(self, client, staff_headers):
        assert client.get("/roles/history", headers=staff_headers).status_code == 403

    def test_tenant_isolation(self, client, manager_headers, staff, make_user, auth_headers_for, role_ids):
        """测试其他组织看不到本组织历史"""
        _assign(client, manager_headers, staff.id, role_ids["VENDOR"])
        outsider = make_user("outsider", "ORGANIZATION_OWNER", organization_id="org-2", property_id=None)
        headers = auth_headers_for(outsider)

        assert client.get("/roles/history", headers=headers).json()["total"] == 0
        response = client.get(f"/roles/history/users/{staff.id}", headers=headers)
        assert response.status_code == 403
        role_data = client.get(f"/roles/history/roles/{role_ids['VENDOR']}", headers=headers).json()
        assert role_data["total"] == 0

    def test_user_history(self, client, manager_headers, owner_headers, staff, role_ids):
        _assign(client, manager_headers, staff.id, role_ids["VENDOR"])
        data = client.get(f"/roles/history/users/{staff.id}", headers=manager_headers).json()
        assert data["total"] == 1
        assert data["enable_rollback"] is False

        data = client.get(f"/roles/history/users/{staff.id}", headers=owner_headers).json()
        assert data["enable_rollback"] is True

    def test_user_history_unknown(self, client, manager_headers):
        assert client.get("/roles/history/users/9999", headers=manager_headers).status_code == 404

    def test_role_history(self, client, manager_headers, staff, role_ids):
        _assign(client, manager_headers, staff.id, role_ids["VENDOR"])
        data = client.get(f"/roles/history/roles/{role_ids['VENDOR']}", headers=manager_headers,
                          params={"show_user_details": False}).json()
        assert data["total"] == 1
        assert data["entries"][0]["metadata"]["user_name"] == "***"

    def test_admin_activity(self, client, manager_headers, staff, property_manager, role_ids):
        _assign(client, manager_headers, staff.id, role_ids["VENDOR"])
        data = client.get(f"/roles/history/admins/{property_manager.id}", headers=manager_headers,
                          params={"show_impact_metrics": True}).json()
        assert data["total"] == 1
        assert data["impact_metrics"]["unique_users"] == 1

    def test_summary(self, client, manager_headers, staff, role_ids):
        _assign(client, manager_headers, staff.id, role_ids["VENDOR"])
        data = client.get("/roles/history/summary", headers=manager_headers).json()
        assert data["total_entries"] == 1
        assert data["actions_count"] == {"ASSIGNED": 1}


class TestRollbackApi:
    def test_rollback_requires_org_admin(self, client, manager_headers, staff, role_ids):
        entry_id = _assign(client, manager_headers, staff.id, role_ids["VENDOR"]).json()["id"]
        response = client.post(f"/roles/history/{entry_id}/rollback", headers=manager_headers, json={})
        assert response.status_code == 403

    def test_rollback(self, client, manager_headers, owner_headers, staff, role_ids):
        """测试回滚分配：生成引用原条目的移除条目"""
        entry_id = _assign(client, manager_headers, staff.id, role_ids["VENDOR"]).json()["id"]
        response = client.post(f"/roles/history/{entry_id}/rollback", headers=owner_headers,
                               json={"reason": "wrong user"})
        assert response.status_code == 200
        data = response.json()
        assert data["rollback_action"] == "REMOVED"
        assert data["entry"]["context"]["parent_action"] == entry_id
        assert data["entry"]["reason"] == "Rollback: wrong user"

        again = client.post(f"/roles/history/{entry_id}/rollback", headers=owner_headers, json={})
        assert again.status_code == 400

    def test_rollback_unknown(self, client, owner_headers):
        response = client.post("/roles/history/rh-0000009999/rollback", headers=owner_headers, json={})
        assert response.status_code == 404


class TestExportApi:
    def test_csv(self, client, manager_headers, staff, role_ids):
        _assign(client, manager_headers, staff.id, role_ids["VENDOR"])
        response = client.post("/roles/history/export", headers=manager_headers, json={"format": "csv"})
        assert response.status_code == 200
        data = response.json()
        assert data["record_count"] == 1
        assert data["file_name"].endswith(".csv")
        rows = list(csv.reader(io.StringIO(data["content"])))
        assert rows[1][2] == "ASSIGNED"

    def test_pdf_returns_entries(self, client, manager_headers, staff, role_ids):
        _assign(client, manager_headers, staff.id, role_ids["VENDOR"])
        data = client.post("/roles/history/export", headers=manager_headers,
                           json={"format": "pdf", "filters": {"actions": ["ASSIGNED"]}}).json()
        assert data["content"] is None
        assert len(data["entries"]) == 1


def _assignment_of(db, user):
    return db.query(SysUserRole).filter(SysUserRole.user_id == user.id,
                                        SysUserRole.is_active == True).first()


@pytest.fixture
def outsider_headers(make_user, auth_headers_for):
    """另一组织的所有者"""
    outsider = make_user("outsider", "ORGANIZATION_OWNER", organization_id="org-2", property_id=None)
    return auth_headers_for(outsider)


class TestCrossOrganizationWrites:
    def test_assign(self, client, outsider_headers, staff, role_ids):
        response = _assign(client, outsider_headers, staff.id, role_ids["VENDOR"])
        assert response.status_code == 403

    def test_modify_and_remove(self, client, seeded_db, outsider_headers, staff):
        assignment = _assignment_of(seeded_db, staff)
        response = client.patch(f"/roles/assignments/{assignment.id}", headers=outsider_headers,
                                json={"conditions": {"isOwner": True}})
        assert response.status_code == 403
        response = client.delete(f"/roles/assignments/{assignment.id}", headers=outsider_headers)
        assert response.status_code == 403
        assert _assignment_of(seeded_db, staff) is not None

    def test_bulk(self, client, seeded_db, outsider_headers, staff, role_ids):
        response = client.post("/roles/assignments/bulk", headers=outsider_headers, json={"items": [
            {"operation": "assign", "user_id": str(staff.id), "role_id": role_ids["VENDOR"]},
        ]})
        assert response.status_code == 403

        assignment = _assignment_of(seeded_db, staff)
        response = client.post("/roles/assignments/bulk", headers=outsider_headers, json={"items": [
            {"operation": "remove", "user_id": str(staff.id), "assignment_id": str(assignment.id)},
        ]})
        assert response.status_code == 403

    def test_rollback(self, client, manager_headers, outsider_headers, staff, role_ids):
        """测试其他组织不能回滚本组织的历史"""
        entry_id = _assign(client, manager_headers, staff.id, role_ids["VENDOR"]).json()["id"]
        response = client.post(f"/roles/history/{entry_id}/rollback", headers=outsider_headers, json={})
        assert response.status_code == 403

        history = client.get(f"/roles/history/users/{staff.id}", headers=manager_headers).json()
        assert [e["action"] for e in history["entries"]] == ["ASSIGNED"]

    def test_platform_admin_crosses_organizations(self, client, admin_headers, staff, role_ids):
        response = _assign(client, admin_headers, staff.id, role_ids["VENDOR"])
        assert response.status_code == 201


class TestRoleLevelOnWrites:
    def test_rollback_cannot_restore_higher_role(self, client, seeded_db, admin_headers,
                                                 make_user, auth_headers_for, org_owner):
        """测试不能通过回滚恢复高于自身层级的角色"""
        org_admin = make_user("orgadmin", "ORGANIZATION_ADMIN", property_id=None)
        headers = auth_headers_for(org_admin)
        assignment = _assignment_of(seeded_db, org_owner)
        removed = client.delete(f"/roles/assignments/{assignment.id}", headers=admin_headers).json()

        response = client.post(f"/roles/history/{removed['id']}/rollback", headers=headers, json={})
        assert response.status_code == 403
        assert _assignment_of(seeded_db, org_owner) is None

    def test_modify_higher_role(self, client, seeded_db, manager_headers, org_owner):
        assignment = _assignment_of(seeded_db, org_owner)
        response = client.patch(f"/roles/assignments/{assignment.id}", headers=manager_headers,
                                json={"expires_at": "2030-01-01T00:00:00"})
        assert response.status_code == 403

    def test_bulk_remove_by_assignment_id(self, client, seeded_db, manager_headers, org_owner):
        assignment = _assignment_of(seeded_db, org_owner)
        response = client.post("/roles/assignments/bulk", headers=manager_headers, json={"items": [
            {"operation": "remove", "user_id": str(org_owner.id), "assignment_id": str(assignment.id)},
        ]})
        assert response.status_code == 403
        assert _assignment_of(seeded_db, org_owner) is not None


class TestCallerWithoutOrganization:
    def test_history_denied(self, client, make_user, auth_headers_for):
        """测试未归属组织的非平台管理员看不到任何历史"""
        floating = make_user("floating", "ORGANIZATION_OWNER", organization_id=None, property_id=None)
        headers = auth_headers_for(floating)
        assert client.get("/roles/history", headers=headers).status_code == 403
        assert client.get("/roles/history/summary", headers=headers).status_code == 403
