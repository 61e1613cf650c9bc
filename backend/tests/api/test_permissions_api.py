"""
测试权限检查与认证 API
"""


class TestAuthApi:
    def test_login(self, client, staff):
        response = client.post("/auth/login", json={"username": "front1", "password": "123456"})
        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "bearer"
        assert data["user"]["system_role"] == "STAFF"
        assert data["user"]["department_id"] == "front-desk"

    def test_login_wrong_password(self, client, staff):
        response = client.post("/auth/login", json={"username": "front1", "password": "wrong"})
        assert response.status_code == 401

    def test_me(self, client, staff, staff_headers):
        response = client.get("/auth/me", headers=staff_headers)
        assert response.status_code == 200
        assert response.json()["user_id"] == str(staff.id)
        assert response.json()["organization_id"] == "org-1"

    def test_me_unauthenticated(self, client):
        assert client.get("/auth/me").status_code == 401

    def test_invalid_token(self, client):
        response = client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_login_token_works(self, client, staff):
        token = client.post("/auth/login", json={"username": "front1", "password": "123456"}).json()["access_token"]
        response = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200


class TestCheckApi:
    def test_unauthenticated_is_denial(self, client):
        """测试未认证请求得到拒绝结果而不是错误"""
        response = client.post("/permissions/check", json={"resource": "guest", "action": "read"})
        assert response.status_code == 200
        assert response.json()["allowed"] is False
        assert response.json()["reason"] == "unauthenticated"

    def test_scope_hierarchy(self, client, staff_headers):
        own = client.post("/permissions/check", headers=staff_headers,
                          json={"resource": "reservation", "action": "read", "scope": "own"})
        assert own.json()["allowed"] is True
        assert own.json()["scope_filters"]["department_id"] == "front-desk"

        org = client.post("/permissions/check", headers=staff_headers,
                          json={"resource": "reservation", "action": "read", "scope": "organization"})
        assert org.json()["allowed"] is False

    def test_platform_admin(self, client, admin_headers):
        response = client.post("/permissions/check", headers=admin_headers,
                               json={"resource": "anything", "action": "purge", "scope": "platform"})
        assert response.json()["allowed"] is True

    def test_invalid_scope(self, client, staff_headers):
        response = client.post("/permissions/check", headers=staff_headers,
                               json={"resource": "guest", "action": "read", "scope": "galaxy"})
        assert response.status_code == 422

    def test_second_check_cached(self, client, staff_headers):
        body = {"resource": "guest", "action": "read", "scope": "property"}
        client.post("/permissions/check", headers=staff_headers, json=body)
        response = client.post("/permissions/check", headers=staff_headers, json=body)
        assert response.json()["source"] == "cached"
        assert response.json()["ttl"] > 0

    def test_requests_share_app_batch(self, client, staff_headers):
        """测试各请求经由应用级批量评估器，第二次请求不再发起传输"""
        batch = client.app.state.permission_batch
        body = {"resource": "room", "action": "read", "scope": "property"}
        client.post("/permissions/check", headers=staff_headers, json=body)
        client.post("/permissions/check", headers=staff_headers, json=body)
        assert batch.stats.requests == 2
        assert batch.stats.transport_calls == 1
        assert batch.stats.cache_hits == 1

    def test_check_any(self, client, staff_headers):
        response = client.post("/permissions/check-any", headers=staff_headers, json={"permissions": [
            {"resource": "report", "action": "read", "scope": "property"},
            {"resource": "room", "action": "read", "scope": "property"},
        ]})
        assert response.json()["allowed"] is True

    def test_check_all(self, client, staff_headers):
        response = client.post("/permissions/check-all", headers=staff_headers, json={"permissions": [
            {"resource": "report", "action": "read", "scope": "property"},
            {"resource": "room", "action": "read", "scope": "property"},
        ]})
        assert response.json()["allowed"] is False

    def test_check_all_requires_permissions(self, client, staff_headers):
        response = client.post("/permissions/check-all", headers=staff_headers, json={"permissions": []})
        assert response.status_code == 422

    def test_bulk_check(self, client, staff_headers):
        """测试批量检查返回按编码键索引的结果"""
        body = {"permissions": [
            {"resource": "guest", "action": "read", "scope": "property"},
            {"resource": "task", "action": "update"},
            {"resource": "report", "action": "read", "scope": "organization"},
        ]}
        data = client.post("/permissions/bulk-check", headers=staff_headers, json=body).json()
        assert data["permissions"]["guest.read.property"]["allowed"] is True
        assert data["permissions"]["task.update.own"]["allowed"] is True
        assert data["permissions"]["report.read.organization"]["allowed"] is False
        assert data["evaluated"] == 3
        assert data["errors"] == []

    def test_bulk_check_with_context(self, client, staff_headers):
        body = {
            "permissions": [{"resource": "guest", "action": "read", "scope": "property"}],
            "global_context": {"property_id": "p-1", "resource_id": 15},
        }
        data = client.post("/permissions/bulk-check", headers=staff_headers, json=body).json()
        assert data["permissions"]["guest.read.property"]["allowed"] is True


class TestMyPermissions:
    def test_requires_auth(self, client):
        assert client.get("/permissions/me").status_code == 401

    def test_staff(self, client, staff_headers):
        data = client.get("/permissions/me", headers=staff_headers).json()
        assert data["system_role"] == "STAFF"
        assert data["is_platform_admin"] is False
        assert "reservation.read.property" in data["granted"]
        assert [r["name"] for r in data["roles"]] == ["员工"]
        assert data["tenant"]["organization_id"] == "org-1"


class TestCacheStats:
    def test_forbidden_for_staff(self, client, staff_headers):
        assert client.get("/permissions/cache/stats", headers=staff_headers).status_code == 403

    def test_owner(self, client, owner_headers):
        response = client.get("/permissions/cache/stats", headers=owner_headers)
        assert response.status_code == 200
        assert response.json()["total_cached"] >= 1


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"
