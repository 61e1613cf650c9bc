"""
SQL 存储 - 以 SQLAlchemy 会话实现权限引擎的读模型与历史存储

数据库主键为整数，引擎侧统一使用字符串ID。
只 flush 不 commit，事务边界由路由层控制。
"""
from datetime import datetime
from typing import List, Optional
import logging

from sqlalchemy.orm import Session

from authz.history import (
    AuditTrail,
    HistoryAction,
    HistoryContext,
    HistoryEntry,
    IHistoryStore,
    format_entry_id,
    parse_entry_id,
)
from authz.key import PermissionKey
from authz.read_model import (
    DirectGrant,
    IAssignmentStore,
    RoleAssignment,
    RoleDefinition,
    UserSummary,
)
from hotelops.models.rbac import (
    SysRole,
    SysRoleHistory,
    SysUser,
    SysUserPermission,
    SysUserRole,
)

logger = logging.getLogger(__name__)


def to_int_id(value) -> Optional[int]:
    """字符串ID转数据库主键，非法值返回 None"""
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class SqlRoleStore(IAssignmentStore):
    """基于 SQLAlchemy 的角色/分配存储"""

    def __init__(self, db: Session):
        self.db = db

    # ----- IRoleReadModel -----

    def get_active_assignments(self, user_id: str) -> List[RoleAssignment]:
        uid = to_int_id(user_id)
        if uid is None:
            return []
        rows = self.db.query(SysUserRole).filter(
            SysUserRole.user_id == uid,
            SysUserRole.is_active == True
        ).all()
        return [self._to_assignment(r) for r in rows]

    def get_role_definition(self, role_id: str) -> Optional[RoleDefinition]:
        rid = to_int_id(role_id)
        if rid is None:
            return None
        role = self.db.query(SysRole).filter(SysRole.id == rid, SysRole.is_active == True).first()
        if not role:
            return None
        return RoleDefinition(
            id=str(role.id),
            name=role.name,
            level=role.level or 0,
            is_system_role=bool(role.is_system),
            permissions=frozenset(
                PermissionKey(p.resource, p.action, p.scope)
                for p in role.permissions if p.is_active
            ),
            organization_id=role.organization_id,
            description=role.description or "",
        )

    def get_direct_grants(self, user_id: str) -> List[DirectGrant]:
        uid = to_int_id(user_id)
        if uid is None:
            return []
        rows = self.db.query(SysUserPermission).filter(SysUserPermission.user_id == uid).all()
        return [
            DirectGrant(
                key=PermissionKey(r.permission.resource, r.permission.action, r.permission.scope),
                granted=bool(r.granted),
                expires_at=r.expires_at,
            )
            for r in rows if r.permission and r.permission.is_active
        ]

    # ----- IAssignmentStore -----

    def get_user(self, user_id: str) -> Optional[UserSummary]:
        uid = to_int_id(user_id)
        if uid is None:
            return None
        user = self.db.query(SysUser).filter(SysUser.id == uid, SysUser.is_active == True).first()
        if not user:
            return None
        return UserSummary(
            id=str(user.id),
            name=user.name,
            email=user.email or "",
            organization_id=user.organization_id,
            property_id=user.property_id,
            department_id=user.department_id,
        )

    def get_assignment(self, assignment_id: str) -> Optional[RoleAssignment]:
        row = self._get_row(assignment_id)
        return self._to_assignment(row) if row else None

    def find_active_assignment(self, user_id: str, role_id: str) -> Optional[RoleAssignment]:
        uid, rid = to_int_id(user_id), to_int_id(role_id)
        if uid is None or rid is None:
            return None
        row = self.db.query(SysUserRole).filter(
            SysUserRole.user_id == uid,
            SysUserRole.role_id == rid,
            SysUserRole.is_active == True
        ).first()
        return self._to_assignment(row) if row else None

    def list_assignments(self, user_id: Optional[str] = None,
                         active_only: bool = False) -> List[RoleAssignment]:
        q = self.db.query(SysUserRole)
        if user_id is not None:
            q = q.filter(SysUserRole.user_id == to_int_id(user_id))
        if active_only:
            q = q.filter(SysUserRole.is_active == True)
        return [self._to_assignment(r) for r in q.order_by(SysUserRole.id).all()]

    def add_assignment(self, assignment: RoleAssignment) -> RoleAssignment:
        row = SysUserRole(
            user_id=to_int_id(assignment.user_id),
            role_id=to_int_id(assignment.role_id),
            assigned_by=assignment.assigned_by,
            assigned_at=assignment.assigned_at,
            expires_at=assignment.expires_at,
            conditions=dict(assignment.conditions),
            meta=dict(assignment.metadata),
            is_active=assignment.is_active,
            organization_id=assignment.organization_id,
        )
        self.db.add(row)
        self.db.flush()
        return self._to_assignment(row)

    def update_assignment(self, assignment_id: str, **changes) -> RoleAssignment:
        row = self._get_row(assignment_id)
        if row is None:
            raise KeyError(assignment_id)
        for key, value in changes.items():
            if key == "metadata":
                row.meta = dict(value or {})
            elif key == "conditions":
                row.conditions = dict(value or {})
            elif hasattr(row, key):
                setattr(row, key, value)
        self.db.flush()
        return self._to_assignment(row)

    def deactivate_assignment(self, assignment_id: str) -> RoleAssignment:
        return self.update_assignment(assignment_id, is_active=False)

    # ----- 内部方法 -----

    def _get_row(self, assignment_id: str) -> Optional[SysUserRole]:
        aid = to_int_id(assignment_id)
        if aid is None:
            return None
        return self.db.query(SysUserRole).filter(SysUserRole.id == aid).first()

    @staticmethod
    def _to_assignment(row: SysUserRole) -> RoleAssignment:
        return RoleAssignment(
            id=str(row.id),
            user_id=str(row.user_id),
            role_id=str(row.role_id),
            assigned_by=row.assigned_by,
            assigned_at=row.assigned_at,
            expires_at=row.expires_at,
            conditions=dict(row.conditions or {}),
            metadata=dict(row.meta or {}),
            is_active=bool(row.is_active),
            organization_id=row.organization_id,
        )


class SqlHistoryStore(IHistoryStore):
    """基于 SQLAlchemy 的历史存储（只追加）"""

    def __init__(self, db: Session):
        self.db = db

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        row = SysRoleHistory(
            action=entry.action.value,
            user_id=entry.user_id,
            role_id=entry.role_id,
            timestamp=entry.timestamp,
            assigned_by=entry.assigned_by,
            assignment_id=entry.assignment_id,
            reason=entry.reason,
            source=entry.context.source.value,
            batch_id=entry.context.batch_id,
            parent_action=entry.context.parent_action,
            operation_type=entry.context.operation_type,
            audit_trail=entry.audit_trail.to_dict(),
            meta=dict(entry.metadata),
            snapshot=entry.snapshot,
            organization_id=entry.organization_id,
        )
        self.db.add(row)
        self.db.flush()
        return self._to_entry(row)

    def get(self, entry_id: str) -> Optional[HistoryEntry]:
        seq = parse_entry_id(entry_id)
        if seq is None:
            return None
        row = self.db.query(SysRoleHistory).filter(SysRoleHistory.id == seq).first()
        return self._to_entry(row) if row else None

    def list_entries(
        self,
        user_id: Optional[str] = None,
        role_id: Optional[str] = None,
        admin_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[HistoryEntry]:
        q = self.db.query(SysRoleHistory)
        if user_id is not None:
            q = q.filter(SysRoleHistory.user_id == user_id)
        if role_id is not None:
            q = q.filter(SysRoleHistory.role_id == role_id)
        if admin_id is not None:
            q = q.filter(SysRoleHistory.assigned_by == admin_id)
        if since is not None:
            q = q.filter(SysRoleHistory.timestamp >= since)
        if until is not None:
            q = q.filter(SysRoleHistory.timestamp <= until)
        return [self._to_entry(r) for r in q.all()]

    @staticmethod
    def _to_entry(row: SysRoleHistory) -> HistoryEntry:
        return HistoryEntry(
            id=format_entry_id(row.id),
            action=HistoryAction(row.action),
            user_id=row.user_id,
            role_id=row.role_id,
            timestamp=row.timestamp,
            assigned_by=row.assigned_by,
            assignment_id=row.assignment_id,
            reason=row.reason,
            context=HistoryContext.from_dict({
                "source": row.source,
                "batch_id": row.batch_id,
                "parent_action": row.parent_action,
                "operation_type": row.operation_type,
            }),
            audit_trail=AuditTrail.from_dict(row.audit_trail),
            metadata=dict(row.meta or {}),
            snapshot=row.snapshot,
            organization_id=row.organization_id,
        )
