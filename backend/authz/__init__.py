"""
authz - 权限评估引擎

与框架无关的授权核心，按 (resource, action, scope) 判定访问：
- key: 权限键模型与字符串编码
- scope: 作用域层级 own < department < property < organization < platform
- context: 用户/租户/资源上下文
- read_model: 角色与分配读模型接口
- evaluator: 单键评估（平台管理员旁路、直接拒绝优先）
- cache: 带显式生命周期的 TTL 缓存
- batch / transport: 去重批量评估与单次往返传输
- gate: UI 门控入站接口
- history: 角色分配历史台账与回滚

使用方式:
    >>> from authz import PermissionKey, PermissionEvaluator, InMemoryRoleStore
    >>> from authz import init_cache, BatchEvaluator, LocalBulkTransport, PermissionGate
    >>> evaluator = PermissionEvaluator(store)
    >>> cache = init_cache()
    >>> gate = PermissionGate(BatchEvaluator(LocalBulkTransport(evaluator), cache))
    >>> await gate.check_permission(user, "reservation", "read", "property")
"""

# 权限键
from authz.key import (
    InvalidKeyFormat,
    PermissionKey,
    PermissionSpec,
    encode,
    decode,
)

# 作用域
from authz.scope import (
    Scope,
    DEFAULT_SCOPE,
    scope_rank,
    scope_satisfies,
    generate_scope_filters,
)

# 上下文
from authz.context import (
    SystemRole,
    SYSTEM_ROLE_LEVELS,
    TenantContext,
    ResourceContext,
    UserContext,
    can_assign_role,
)

# 读模型
from authz.read_model import (
    RoleDefinition,
    RoleAssignment,
    DirectGrant,
    UserSummary,
    IRoleReadModel,
    IAssignmentStore,
    InMemoryRoleStore,
)

# 评估
from authz.evaluator import (
    UNAUTHENTICATED,
    EvaluationSource,
    PermissionEvaluationResult,
    EffectivePermissions,
    PermissionEvaluator,
)

# 缓存
from authz.cache import (
    CacheConfig,
    CacheEntry,
    PermissionCache,
    init_cache,
    teardown_cache,
)

# 批量评估
from authz.transport import (
    BatchEvaluationFailure,
    BulkCheckResult,
    IBulkCheckTransport,
    LocalBulkTransport,
    CallableBulkTransport,
)
from authz.batch import BatchEvaluator, BatchStatistics
from authz.gate import PermissionGate

# 历史台账
from authz.history import (
    HistoryAction,
    HistorySource,
    TimeRange,
    ExportFormat,
    AssignmentError,
    DuplicateActiveAssignment,
    AssignmentNotFound,
    HistoryEntryNotFound,
    RollbackNotSupported,
    HistoryContext,
    AuditTrail,
    HistoryEntry,
    HistoryFilter,
    HistoryPage,
    BulkOperationItem,
    BulkOperationResult,
    RollbackResult,
    HistoryExport,
    IHistoryStore,
    InMemoryHistoryStore,
    RoleHistoryLedger,
    can_user_rollback,
)

__all__ = [
    # key
    "InvalidKeyFormat",
    "PermissionKey",
    "PermissionSpec",
    "encode",
    "decode",
    # scope
    "Scope",
    "DEFAULT_SCOPE",
    "scope_rank",
    "scope_satisfies",
    "generate_scope_filters",
    # context
    "SystemRole",
    "SYSTEM_ROLE_LEVELS",
    "TenantContext",
    "ResourceContext",
    "UserContext",
    "can_assign_role",
    # read model
    "RoleDefinition",
    "RoleAssignment",
    "DirectGrant",
    "UserSummary",
    "IRoleReadModel",
    "IAssignmentStore",
    "InMemoryRoleStore",
    # evaluator
    "UNAUTHENTICATED",
    "EvaluationSource",
    "PermissionEvaluationResult",
    "EffectivePermissions",
    "PermissionEvaluator",
    # cache
    "CacheConfig",
    "CacheEntry",
    "PermissionCache",
    "init_cache",
    "teardown_cache",
    # batch
    "BatchEvaluationFailure",
    "BulkCheckResult",
    "IBulkCheckTransport",
    "LocalBulkTransport",
    "CallableBulkTransport",
    "BatchEvaluator",
    "BatchStatistics",
    "PermissionGate",
    # history
    "HistoryAction",
    "HistorySource",
    "TimeRange",
    "ExportFormat",
    "AssignmentError",
    "DuplicateActiveAssignment",
    "AssignmentNotFound",
    "HistoryEntryNotFound",
    "RollbackNotSupported",
    "HistoryContext",
    "AuditTrail",
    "HistoryEntry",
    "HistoryFilter",
    "HistoryPage",
    "BulkOperationItem",
    "BulkOperationResult",
    "RollbackResult",
    "HistoryExport",
    "IHistoryStore",
    "InMemoryHistoryStore",
    "RoleHistoryLedger",
    "can_user_rollback",
]
