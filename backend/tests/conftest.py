"""
Pytest 配置和共享 fixtures
"""
import os

# 应用模块在导入时读取配置，必须先于 hotelops 导入设置
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["SEED_RBAC_DATA"] = "false"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

from authz.context import TenantContext, UserContext
from authz.key import PermissionKey
from authz.read_model import InMemoryRoleStore, RoleDefinition, UserSummary
from hotelops.database import Base, get_db
from hotelops.models.rbac import SysRole, SysUser, SysUserRole
from hotelops.security.auth import create_access_token, get_password_hash
from hotelops.services.permission_engine import build_batch_evaluator
from hotelops.services.rbac_seed import seed_rbac_data
from hotelops.main import app


# ============== 内存读模型 Fixtures ==============

FRONT_DESK_PERMISSIONS = frozenset({
    PermissionKey("reservation", "read", "property"),
    PermissionKey("guest", "read", "property"),
})


@pytest.fixture
def role_store():
    """内存角色存储：前台角色 r1 + 用户 u1/u2"""
    store = InMemoryRoleStore()
    store.add_role(RoleDefinition(id="r1", name="Front Desk", level=5,
                                  permissions=FRONT_DESK_PERMISSIONS, organization_id="org-1"))
    store.add_role(RoleDefinition(id="r2", name="Housekeeping", level=4, permissions=frozenset({
        PermissionKey("room", "update", "department"),
    })))
    store.add_user(UserSummary(id="u1", name="Alice", email="alice@hotel.test",
                               organization_id="org-1", property_id="p-1"))
    store.add_user(UserSummary(id="u2", name="Bob", email="bob@hotel.test",
                               organization_id="org-1", property_id="p-1"))
    store.add_user(UserSummary(id="admin", name="Admin", email="admin@hotel.test",
                               organization_id="org-1"))
    return store


@pytest.fixture
def staff_user():
    return UserContext(
        user_id="u1",
        role="STAFF",
        tenant=TenantContext(organization_id="org-1", property_id="p-1", department_id="d-1"),
    )


@pytest.fixture
def platform_admin():
    return UserContext(user_id="root", role="PLATFORM_ADMIN")


# ============== 数据库 Fixtures ==============

@pytest.fixture(scope="function")
def db_engine():
    """创建内存数据库引擎"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine):
    """创建数据库会话"""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def seeded_db(db_session):
    """写入系统角色与权限目录"""
    seed_rbac_data(db_session)
    return db_session


@pytest.fixture(scope="function")
def client(seeded_db):
    """创建测试客户端"""
    def override_get_db():
        yield seeded_db

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        # 共享批量评估器的传输改为在测试库上开会话
        app.state.permission_batch = build_batch_evaluator(
            app.state.permission_cache, session_factory=sessionmaker(bind=seeded_db.get_bind())
        )
        yield test_client
    app.dependency_overrides.clear()


def create_user(db, username, system_role, organization_id="org-1", property_id="p-1",
                department_id=None, assign_system_role=True):
    """创建用户，并把同名系统角色分配给他"""
    user = SysUser(
        username=username,
        password_hash=get_password_hash("123456"),
        name=username.title(),
        email=f"{username}@hotel.test",
        system_role=system_role,
        organization_id=organization_id,
        property_id=property_id,
        department_id=department_id,
        is_active=True
    )
    db.add(user)
    db.flush()
    if assign_system_role:
        role = db.query(SysRole).filter(SysRole.code == system_role).first()
        db.add(SysUserRole(user_id=user.id, role_id=role.id, assigned_by="seed",
                           organization_id=organization_id))
    db.commit()
    db.refresh(user)
    return user


def token_for(user):
    tenant = TenantContext(
        organization_id=user.organization_id,
        property_id=user.property_id,
        department_id=user.department_id,
    )
    return create_access_token(user.id, user.system_role, tenant, session_id="test-session")


def headers_for(user):
    return {"Authorization": f"Bearer {token_for(user)}"}


# ============== 认证相关 Fixtures ==============

@pytest.fixture
def make_user(seeded_db):
    """用户工厂：make_user(username, system_role, **tenant) -> SysUser"""
    def _make(username, system_role="STAFF", **kwargs):
        return create_user(seeded_db, username, system_role, **kwargs)
    return _make


@pytest.fixture
def auth_headers_for():
    return headers_for


@pytest.fixture
def org_owner(seeded_db):
    """组织所有者"""
    return create_user(seeded_db, "owner", "ORGANIZATION_OWNER", property_id=None)


@pytest.fixture
def property_manager(seeded_db):
    """物业经理"""
    return create_user(seeded_db, "manager", "PROPERTY_MANAGER")


@pytest.fixture
def staff(seeded_db):
    """前台员工"""
    return create_user(seeded_db, "front1", "STAFF", department_id="front-desk")


@pytest.fixture
def platform_admin_user(seeded_db):
    """平台管理员（不分配任何角色）"""
    return create_user(seeded_db, "root", "PLATFORM_ADMIN", organization_id=None,
                       property_id=None, assign_system_role=False)


@pytest.fixture
def owner_headers(org_owner):
    return headers_for(org_owner)


@pytest.fixture
def manager_headers(property_manager):
    return headers_for(property_manager)


@pytest.fixture
def staff_headers(staff):
    return headers_for(staff)


@pytest.fixture
def admin_headers(platform_admin_user):
    return headers_for(platform_admin_user)
