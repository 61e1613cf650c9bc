"""
RBAC ORM 模型 - 用户、角色、权限、角色-权限映射、用户-角色分配、直接授权、分配历史
"""
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, ForeignKey, Text, JSON, UniqueConstraint
)
from sqlalchemy.orm import relationship
from hotelops.database import Base


class SysUser(Base):
    """用户表"""
    __tablename__ = "sys_user"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, nullable=False, index=True)
    password_hash = Column(String(200), nullable=False)
    name = Column(String(100), nullable=False)
    email = Column(String(200), default="")
    system_role = Column(String(30), nullable=False, default="STAFF")  # SystemRole 编码
    organization_id = Column(String(50), nullable=True, index=True)
    property_id = Column(String(50), nullable=True)
    department_id = Column(String(50), nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.now)

    # Relationships
    role_assignments = relationship(
        "SysUserRole",
        back_populates="user",
        foreign_keys="SysUserRole.user_id",
        cascade="all, delete-orphan"
    )


class SysRole(Base):
    """角色表"""
    __tablename__ = "sys_role"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(String(500), default="")
    level = Column(Integer, default=0)  # 多角色排序优先级，不隐含权限继承
    organization_id = Column(String(50), nullable=True)
    is_system = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    permissions = relationship(
        "SysPermission",
        secondary="sys_role_permission",
        back_populates="roles",
        lazy="selectin"
    )
    assignments = relationship(
        "SysUserRole",
        back_populates="role",
        cascade="all, delete-orphan"
    )


class SysPermission(Base):
    """权限表 - code 为权限键编码 "<resource>.<action>.<scope>" """
    __tablename__ = "sys_permission"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(150), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    resource = Column(String(50), nullable=False)
    action = Column(String(50), nullable=False)
    scope = Column(String(20), nullable=False, default="own")
    description = Column(String(500), default="")
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.now)

    # Many-to-many with roles
    roles = relationship(
        "SysRole",
        secondary="sys_role_permission",
        back_populates="permissions",
        lazy="selectin"
    )


class SysRolePermission(Base):
    """角色-权限映射表"""
    __tablename__ = "sys_role_permission"

    role_id = Column(Integer, ForeignKey("sys_role.id", ondelete="CASCADE"), primary_key=True)
    permission_id = Column(Integer, ForeignKey("sys_permission.id", ondelete="CASCADE"), primary_key=True)


class SysUserRole(Base):
    """用户-角色分配表（失效后保留行，is_active=False）"""
    __tablename__ = "sys_user_role"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("sys_user.id", ondelete="CASCADE"), nullable=False, index=True)
    role_id = Column(Integer, ForeignKey("sys_role.id", ondelete="CASCADE"), nullable=False, index=True)
    assigned_by = Column(String(50), nullable=True)
    assigned_at = Column(DateTime, default=datetime.now)
    expires_at = Column(DateTime, nullable=True)
    conditions = Column(JSON, default=dict)
    meta = Column("metadata", JSON, default=dict)
    is_active = Column(Boolean, default=True, index=True)
    organization_id = Column(String(50), nullable=True)

    # Relationships
    user = relationship("SysUser", back_populates="role_assignments", foreign_keys=[user_id])
    role = relationship("SysRole", back_populates="assignments")


class SysUserPermission(Base):
    """用户直接授权表（granted=False 为显式拒绝）"""
    __tablename__ = "sys_user_permission"
    __table_args__ = (UniqueConstraint("user_id", "permission_id", name="uq_user_permission"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("sys_user.id", ondelete="CASCADE"), nullable=False, index=True)
    permission_id = Column(Integer, ForeignKey("sys_permission.id", ondelete="CASCADE"), nullable=False)
    granted = Column(Boolean, default=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.now)

    permission = relationship("SysPermission", lazy="joined")


class SysRoleHistory(Base):
    """角色分配历史表（只追加）"""
    __tablename__ = "sys_role_history"

    id = Column(Integer, primary_key=True, index=True)
    action = Column(String(20), nullable=False, index=True)
    user_id = Column(String(50), nullable=False, index=True)
    role_id = Column(String(50), nullable=False, index=True)
    timestamp = Column(DateTime, default=datetime.now, index=True)
    assigned_by = Column(String(50), nullable=True, index=True)
    assignment_id = Column(String(50), nullable=True)
    reason = Column(Text, nullable=True)
    source = Column(String(20), default="manual")
    batch_id = Column(String(64), nullable=True, index=True)
    parent_action = Column(String(50), nullable=True)
    operation_type = Column(String(30), nullable=True)
    audit_trail = Column(JSON, default=dict)
    meta = Column("metadata", JSON, default=dict)
    snapshot = Column(JSON, nullable=True)
    organization_id = Column(String(50), nullable=True, index=True)
