"""
RBAC 种子数据 - 初始化系统角色、权限目录、角色-权限映射
"""
from sqlalchemy.orm import Session

from authz.context import SYSTEM_ROLE_LEVELS, SystemRole
from authz.key import decode
from hotelops.models.rbac import SysPermission, SysRole, SysRolePermission


# ========== Permission Definitions ==========

SEED_PERMISSIONS = [
    # Reservation
    ("reservation.read.property", "查看预订"),
    ("reservation.create.property", "创建预订"),
    ("reservation.update.property", "修改/取消预订"),
    ("reservation.read.own", "查看本人预订"),
    # Guest
    ("guest.read.property", "查看客人"),
    ("guest.update.property", "更新客人信息"),
    # Room
    ("room.read.property", "查看房间"),
    ("room.update.department", "更新房间状态"),
    # Task
    ("task.read.department", "查看部门任务"),
    ("task.update.own", "完成本人任务"),
    ("task.assign.department", "分配任务"),
    # Report
    ("report.read.property", "查看物业报表"),
    ("report.read.organization", "查看组织报表"),
    # User / Role administration
    ("user.read.organization", "查看用户"),
    ("role.assign.property", "分配物业内角色"),
    ("role.assign.organization", "分配组织内角色"),
    ("role_history.read.property", "查看物业角色历史"),
    ("role_history.read.organization", "查看组织角色历史"),
]

# ========== Role Definitions ==========

SEED_ROLES = [
    {"code": SystemRole.PLATFORM_ADMIN.value, "name": "平台管理员", "description": "平台级无条件访问"},
    {"code": SystemRole.ORGANIZATION_OWNER.value, "name": "组织所有者", "description": "组织全部权限"},
    {"code": SystemRole.ORGANIZATION_ADMIN.value, "name": "组织管理员", "description": "组织管理权限"},
    {"code": SystemRole.PROPERTY_MANAGER.value, "name": "物业经理", "description": "物业管理权限"},
    {"code": SystemRole.DEPARTMENT_ADMIN.value, "name": "部门管理员", "description": "部门管理权限"},
    {"code": SystemRole.STAFF.value, "name": "员工", "description": "日常操作权限"},
    {"code": SystemRole.VENDOR.value, "name": "供应商", "description": "外部供应商"},
    {"code": SystemRole.CLIENT.value, "name": "客户", "description": "住客自助"},
]

# ========== Role→Permission Mappings ==========

ROLE_PERMISSIONS = {
    SystemRole.PLATFORM_ADMIN.value: [],  # 平台管理员旁路，无需显式权限
    SystemRole.ORGANIZATION_OWNER.value: [
        "reservation.update.property", "guest.update.property", "room.update.department",
        "report.read.organization", "user.read.organization",
        "role.assign.organization", "role_history.read.organization",
        "reservation.read.property", "guest.read.property", "room.read.property",
        "task.read.department", "task.assign.department",
    ],
    SystemRole.ORGANIZATION_ADMIN.value: [
        "reservation.read.property", "reservation.update.property",
        "guest.read.property", "guest.update.property", "room.read.property",
        "report.read.organization", "user.read.organization",
        "role.assign.organization", "role_history.read.organization",
    ],
    SystemRole.PROPERTY_MANAGER.value: [
        "reservation.read.property", "reservation.create.property", "reservation.update.property",
        "guest.read.property", "guest.update.property",
        "room.read.property", "room.update.department",
        "task.read.department", "task.assign.department",
        "report.read.property", "role.assign.property", "role_history.read.property",
    ],
    SystemRole.DEPARTMENT_ADMIN.value: [
        "reservation.read.property", "room.update.department",
        "task.read.department", "task.assign.department",
    ],
    SystemRole.STAFF.value: [
        "reservation.read.property", "guest.read.property", "room.read.property",
        "task.update.own",
    ],
    SystemRole.VENDOR.value: ["task.update.own"],
    SystemRole.CLIENT.value: ["reservation.read.own"],
}


def seed_rbac_data(db: Session) -> dict:
    """Seed RBAC initial data. Idempotent - skips existing records.

    Returns dict with counts of created items.
    """
    stats = {"roles": 0, "permissions": 0, "mappings": 0}

    # 1. Seed permissions
    perms = {}
    for code, name in SEED_PERMISSIONS:
        perm = db.query(SysPermission).filter(SysPermission.code == code).first()
        if not perm:
            key = decode(code)
            perm = SysPermission(code=code, name=name, resource=key.resource,
                                 action=key.action, scope=key.scope)
            db.add(perm)
            stats["permissions"] += 1
        perms[code] = perm
    db.flush()

    # 2. Seed roles
    for role_data in SEED_ROLES:
        role = db.query(SysRole).filter(SysRole.code == role_data["code"]).first()
        if role:
            continue
        role = SysRole(level=SYSTEM_ROLE_LEVELS[role_data["code"]], is_system=True, **role_data)
        db.add(role)
        db.flush()
        stats["roles"] += 1

        # 3. Seed mappings (only for newly created roles)
        for code in ROLE_PERMISSIONS.get(role.code, []):
            db.add(SysRolePermission(role_id=role.id, permission_id=perms[code].id))
            stats["mappings"] += 1

    db.commit()
    return stats
