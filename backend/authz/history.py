"""
authz/history.py

角色分配历史台账 - 只追加的变更记录与回滚

每次分配变更（分配/移除/修改/批量/过期）追加一条 HistoryEntry，
并通过注入的 invalidator 失效该用户的权限缓存。
回滚不修改原条目，而是追加一条引用原条目的新条目。
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
import csv
import io
import itertools
import json
import logging
import math
import threading
import uuid

from authz.context import SystemRole, UserContext
from authz.read_model import IAssignmentStore, RoleAssignment

logger = logging.getLogger(__name__)


class HistoryAction(str, Enum):
    """历史动作"""
    ASSIGNED = "ASSIGNED"
    REMOVED = "REMOVED"
    MODIFIED = "MODIFIED"
    EXPIRED = "EXPIRED"
    BULK_ASSIGNED = "BULK_ASSIGNED"
    BULK_REMOVED = "BULK_REMOVED"


class HistorySource(str, Enum):
    """变更来源"""
    MANUAL = "manual"
    BULK = "bulk"
    TEMPLATE = "template"
    MIGRATION = "migration"
    AUTOMATED = "automated"
    SYSTEM = "system"


class TimeRange(str, Enum):
    """查询时间范围预设"""
    ONE_HOUR = "1h"
    TWENTY_FOUR_HOURS = "24h"
    SEVEN_DAYS = "7d"
    THIRTY_DAYS = "30d"
    NINETY_DAYS = "90d"
    CUSTOM = "custom"


class ExportFormat(str, Enum):
    """导出格式"""
    PDF = "pdf"
    CSV = "csv"
    EXCEL = "excel"
    JSON = "json"


TIME_RANGE_DELTAS: Dict[TimeRange, timedelta] = {
    TimeRange.ONE_HOUR: timedelta(hours=1),
    TimeRange.TWENTY_FOUR_HOURS: timedelta(hours=24),
    TimeRange.SEVEN_DAYS: timedelta(days=7),
    TimeRange.THIRTY_DAYS: timedelta(days=30),
    TimeRange.NINETY_DAYS: timedelta(days=90),
}

DEFAULT_QUERY_WINDOW = timedelta(days=30)
ROLLBACK_OPERATION = "rollback"
MODIFIABLE_FIELDS = ("expires_at", "conditions", "metadata")

_ASSIGN_ACTIONS = (HistoryAction.ASSIGNED, HistoryAction.BULK_ASSIGNED)
_REMOVE_ACTIONS = (HistoryAction.REMOVED, HistoryAction.BULK_REMOVED)


# ============== 异常 ==============

class AssignmentError(Exception):
    """分配操作失败（用户/角色不存在、状态不允许等）"""

    pass


class DuplicateActiveAssignment(AssignmentError):
    """同一用户同一角色已有激活分配"""

    pass


class AssignmentNotFound(AssignmentError):
    """分配不存在"""

    pass


class HistoryEntryNotFound(LookupError):
    """历史条目不存在"""

    pass


class RollbackNotSupported(Exception):
    """该历史条目不能回滚"""

    pass


# ============== 数据结构 ==============

@dataclass
class HistoryContext:
    """变更上下文"""

    source: HistorySource = HistorySource.MANUAL
    batch_id: Optional[str] = None
    parent_action: Optional[str] = None
    operation_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.value,
            "batch_id": self.batch_id,
            "parent_action": self.parent_action,
            "operation_type": self.operation_type,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "HistoryContext":
        data = data or {}
        return cls(
            source=HistorySource(data.get("source") or HistorySource.MANUAL.value),
            batch_id=data.get("batch_id"),
            parent_action=data.get("parent_action"),
            operation_type=data.get("operation_type"),
        )


@dataclass
class AuditTrail:
    """请求审计信息"""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "session_id": self.session_id,
            "request_id": self.request_id,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AuditTrail":
        data = data or {}
        return cls(
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            session_id=data.get("session_id"),
            request_id=data.get("request_id"),
        )


@dataclass
class HistoryEntry:
    """
    历史条目（只追加）

    Attributes:
        id: 条目ID（由存储分配，按追加顺序递增）
        action: 动作
        user_id / role_id: 被变更的用户和角色
        timestamp: 变更时间
        assigned_by: 执行人ID（系统过期为 None）
        assignment_id: 关联的分配ID
        context: 来源、批次、回滚引用
        audit_trail: 请求审计信息
        metadata: 用户/角色/执行人展示信息
        snapshot: 变更前的分配快照（修改、移除时记录，用于回滚）
        organization_id: 所属组织（租户过滤）
    """

    id: str
    action: HistoryAction
    user_id: str
    role_id: str
    timestamp: datetime
    assigned_by: Optional[str] = None
    assignment_id: Optional[str] = None
    reason: Optional[str] = None
    context: HistoryContext = field(default_factory=HistoryContext)
    audit_trail: AuditTrail = field(default_factory=AuditTrail)
    metadata: Dict[str, Any] = field(default_factory=dict)
    snapshot: Optional[Dict[str, Any]] = None
    organization_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action.value,
            "user_id": self.user_id,
            "role_id": self.role_id,
            "timestamp": self.timestamp.isoformat(),
            "assigned_by": self.assigned_by,
            "assignment_id": self.assignment_id,
            "reason": self.reason,
            "context": self.context.to_dict(),
            "audit_trail": self.audit_trail.to_dict(),
            "metadata": self.metadata,
            "snapshot": self.snapshot,
            "organization_id": self.organization_id,
        }


@dataclass
class HistoryFilter:
    """
    历史查询条件

    同一类条件内为 OR（如 actions 任一匹配），不同类条件之间为 AND。
    """

    time_range: Optional[TimeRange] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    user_ids: List[str] = field(default_factory=list)
    role_ids: List[str] = field(default_factory=list)
    admin_ids: List[str] = field(default_factory=list)
    actions: List[HistoryAction] = field(default_factory=list)
    sources: List[HistorySource] = field(default_factory=list)
    search: Optional[str] = None
    batch_id: Optional[str] = None
    organization_id: Optional[str] = None
    group_by_batch: bool = False
    page: int = 1
    limit: int = 50


@dataclass
class HistoryPage:
    """分页结果"""

    entries: List[HistoryEntry]
    total: int
    page: int
    limit: int
    total_pages: int
    batches: Optional[Dict[str, List[str]]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "entries": [e.to_dict() for e in self.entries],
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "total_pages": self.total_pages,
        }
        if self.batches is not None:
            data["batches"] = self.batches
        return data


@dataclass
class BulkOperationItem:
    """批量操作项（operation: assign / remove）"""

    operation: str
    user_id: str
    role_id: Optional[str] = None
    assignment_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    conditions: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None


@dataclass
class BulkItemResult:
    user_id: str
    role_id: Optional[str]
    success: bool
    entry_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "role_id": self.role_id,
            "success": self.success,
            "entry_id": self.entry_id,
            "error": self.error,
        }


@dataclass
class BulkOperationResult:
    batch_id: str
    results: List[BulkItemResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return len([r for r in self.results if r.success])

    @property
    def failed(self) -> int:
        return len([r for r in self.results if not r.success])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class RollbackResult:
    success: bool
    message: str
    rollback_action: HistoryAction
    original_entry_id: str
    entry: HistoryEntry

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "rollback_action": self.rollback_action.value,
            "original_entry_id": self.original_entry_id,
            "entry": self.entry.to_dict(),
        }


@dataclass
class HistoryExport:
    """
    导出结果

    csv/json 直接渲染 content；pdf/excel 由外部渲染器根据 entries 生成文件。
    """

    file_name: str
    format: ExportFormat
    record_count: int
    entries: List[HistoryEntry]
    content: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_name": self.file_name,
            "format": self.format.value,
            "record_count": self.record_count,
            "content": self.content,
        }


# ============== 存储 ==============

class IHistoryStore(ABC):
    """历史存储接口 - 只追加"""

    @abstractmethod
    def append(self, entry: HistoryEntry) -> HistoryEntry:
        """追加条目，返回带ID的条目"""

    @abstractmethod
    def get(self, entry_id: str) -> Optional[HistoryEntry]:
        """根据ID获取条目"""

    @abstractmethod
    def list_entries(
        self,
        user_id: Optional[str] = None,
        role_id: Optional[str] = None,
        admin_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[HistoryEntry]:
        """列出条目（未排序）"""


class InMemoryHistoryStore(IHistoryStore):
    """内存历史存储"""

    def __init__(self):
        self._entries: Dict[str, HistoryEntry] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        with self._lock:
            entry = replace(entry, id=format_entry_id(next(self._ids)))
            self._entries[entry.id] = entry
        return entry

    def get(self, entry_id: str) -> Optional[HistoryEntry]:
        return self._entries.get(entry_id)

    def list_entries(self, user_id=None, role_id=None, admin_id=None,
                     since=None, until=None) -> List[HistoryEntry]:
        result = []
        for e in self._entries.values():
            if user_id is not None and e.user_id != user_id:
                continue
            if role_id is not None and e.role_id != role_id:
                continue
            if admin_id is not None and e.assigned_by != admin_id:
                continue
            if since is not None and e.timestamp < since:
                continue
            if until is not None and e.timestamp > until:
                continue
            result.append(e)
        return result

    def __len__(self) -> int:
        return len(self._entries)


def format_entry_id(seq: int) -> str:
    """条目ID，定长以保证字符串排序与追加顺序一致"""
    return f"rh-{seq:010d}"


def parse_entry_id(entry_id: str) -> Optional[int]:
    if not entry_id or not entry_id.startswith("rh-"):
        return None
    try:
        return int(entry_id[3:])
    except ValueError:
        return None


def can_user_rollback(user: Optional[UserContext]) -> bool:
    """平台管理员、组织所有者、组织管理员可以执行回滚"""
    if user is None:
        return False
    return user.role in (
        SystemRole.PLATFORM_ADMIN.value,
        SystemRole.ORGANIZATION_OWNER.value,
        SystemRole.ORGANIZATION_ADMIN.value,
    )


def _noop_invalidator(user_id: str) -> None:
    return None


# ============== 台账 ==============

class RoleHistoryLedger:
    """
    角色分配历史台账

    所有分配变更都经由台账完成：写分配存储 → 追加历史 → 失效用户缓存。

    支持依赖注入以便于测试：
    - invalidator: 用户缓存失效回调（通常为 PermissionCache.invalidate_user）
    - clock: 时间源

    Example:
        >>> ledger = RoleHistoryLedger(store, InMemoryHistoryStore(),
        ...                            invalidator=cache.invalidate_user)
        >>> entry = ledger.record_assignment("U1", "R1", assigned_by="admin")
        >>> ledger.rollback(entry.id, performed_by="admin")
    """

    SUSPICIOUS_HOURLY_THRESHOLD = 50
    OFF_HOURS_RATIO = 0.3

    def __init__(
        self,
        store: IAssignmentStore,
        history: IHistoryStore,
        invalidator: Optional[Callable[[str], Any]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._store = store
        self._history = history
        self._invalidate = invalidator or _noop_invalidator
        self._clock = clock

    # ----- 写操作 -----

    def record_assignment(
        self,
        user_id: str,
        role_id: str,
        assigned_by: Optional[str],
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        conditions: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        source: HistorySource = HistorySource.MANUAL,
        audit_trail: Optional[AuditTrail] = None,
    ) -> HistoryEntry:
        """
        分配角色

        Raises:
            AssignmentError: 用户或角色不存在
            DuplicateActiveAssignment: 已有激活分配
        """
        return self._assign(
            user_id, role_id, assigned_by,
            action=HistoryAction.ASSIGNED,
            context=HistoryContext(source=source),
            reason=reason,
            expires_at=expires_at,
            conditions=conditions,
            metadata=metadata,
            audit_trail=audit_trail,
        )

    def record_removal(
        self,
        assignment_id: str,
        removed_by: Optional[str],
        reason: Optional[str] = None,
        source: HistorySource = HistorySource.MANUAL,
        audit_trail: Optional[AuditTrail] = None,
    ) -> HistoryEntry:
        """
        移除分配（标记失效）

        Raises:
            AssignmentNotFound: 分配不存在
            AssignmentError: 分配已失效
        """
        return self._remove(
            assignment_id, removed_by,
            action=HistoryAction.REMOVED,
            context=HistoryContext(source=source),
            reason=reason,
            audit_trail=audit_trail,
        )

    def record_modification(
        self,
        assignment_id: str,
        modified_by: Optional[str],
        changes: Dict[str, Any],
        reason: Optional[str] = None,
        audit_trail: Optional[AuditTrail] = None,
    ) -> HistoryEntry:
        """
        修改分配的 expires_at / conditions / metadata

        条目的 snapshot 保存修改前的值，回滚时恢复。

        Raises:
            AssignmentNotFound: 分配不存在
            AssignmentError: 分配已失效或修改了不允许的字段
        """
        return self._modify(
            assignment_id, modified_by, changes,
            context=HistoryContext(source=HistorySource.MANUAL),
            reason=reason,
            audit_trail=audit_trail,
        )

    def record_bulk(
        self,
        items: Iterable[BulkOperationItem],
        performed_by: Optional[str],
        batch_id: Optional[str] = None,
        reason: Optional[str] = None,
        audit_trail: Optional[AuditTrail] = None,
    ) -> BulkOperationResult:
        """
        批量分配/移除

        每项独立执行，单项失败不影响其他项；成功项共享同一个 batch_id。
        """
        result = BulkOperationResult(batch_id=batch_id or uuid.uuid4().hex)
        context = HistoryContext(source=HistorySource.BULK, batch_id=result.batch_id)

        for item in items:
            try:
                if item.operation == "assign":
                    if not item.role_id:
                        raise AssignmentError("role_id is required for assign")
                    entry = self._assign(
                        item.user_id, item.role_id, performed_by,
                        action=HistoryAction.BULK_ASSIGNED,
                        context=replace(context),
                        reason=item.reason or reason,
                        expires_at=item.expires_at,
                        conditions=item.conditions,
                        audit_trail=audit_trail,
                    )
                elif item.operation == "remove":
                    assignment_id = item.assignment_id or self._find_assignment_id(item)
                    entry = self._remove(
                        assignment_id, performed_by,
                        action=HistoryAction.BULK_REMOVED,
                        context=replace(context),
                        reason=item.reason or reason,
                        audit_trail=audit_trail,
                    )
                else:
                    raise AssignmentError(f"Unknown bulk operation: {item.operation}")
            except AssignmentError as e:
                result.results.append(BulkItemResult(
                    user_id=item.user_id, role_id=item.role_id, success=False, error=str(e)
                ))
                continue
            result.results.append(BulkItemResult(
                user_id=item.user_id, role_id=entry.role_id, success=True, entry_id=entry.id
            ))

        logger.info(
            f"Bulk role operation {result.batch_id} by {performed_by}: "
            f"{result.succeeded} succeeded, {result.failed} failed"
        )
        return result

    def get_entry(self, entry_id: str) -> Optional[HistoryEntry]:
        return self._history.get(entry_id)

    def rollback(
        self,
        entry_id: str,
        performed_by: Optional[str],
        reason: Optional[str] = None,
        audit_trail: Optional[AuditTrail] = None,
    ) -> RollbackResult:
        """
        回滚历史条目

        ASSIGNED/BULK_ASSIGNED → 移除；REMOVED/BULK_REMOVED → 重新分配；
        MODIFIED → 恢复快照；EXPIRED 不可回滚。

        Raises:
            HistoryEntryNotFound: 条目不存在
            RollbackNotSupported: 该条目不能回滚
            DuplicateActiveAssignment: 重新分配时已有激活分配
        """
        original = self.get_entry(entry_id)
        if original is None:
            raise HistoryEntryNotFound(f"History entry not found: {entry_id}")

        context = HistoryContext(
            source=HistorySource.MANUAL,
            parent_action=original.id,
            operation_type=ROLLBACK_OPERATION,
        )
        rollback_reason = f"Rollback: {reason}" if reason else "Rollback"

        if original.action in _ASSIGN_ACTIONS:
            assignment = self._rollback_target(original)
            entry = self._remove(
                assignment.id, performed_by,
                action=HistoryAction.REMOVED,
                context=context,
                reason=rollback_reason,
                audit_trail=audit_trail,
            )
        elif original.action in _REMOVE_ACTIONS:
            snapshot = original.snapshot or {}
            expires_at = _parse_datetime(snapshot.get("expires_at"))
            if expires_at is not None and expires_at <= self._clock():
                expires_at = None
            entry = self._assign(
                original.user_id, original.role_id, performed_by,
                action=HistoryAction.ASSIGNED,
                context=context,
                reason=rollback_reason,
                expires_at=expires_at,
                conditions=snapshot.get("conditions"),
                metadata=snapshot.get("metadata"),
                audit_trail=audit_trail,
            )
        elif original.action == HistoryAction.MODIFIED:
            if original.snapshot is None:
                raise RollbackNotSupported(f"Entry {entry_id} has no snapshot to restore")
            assignment = self._rollback_target(original)
            entry = self._modify(
                assignment.id, performed_by, dict(original.snapshot),
                context=context,
                reason=rollback_reason,
                audit_trail=audit_trail,
            )
        else:
            raise RollbackNotSupported(f"Cannot rollback action: {original.action.value}")

        logger.info(
            f"Role assignment rollback by {performed_by}: "
            f"{original.action.value} -> {entry.action.value} ({original.id})"
        )
        return RollbackResult(
            success=True,
            message=f"Successfully rolled back {original.action.value.lower()} action",
            rollback_action=entry.action,
            original_entry_id=original.id,
            entry=entry,
        )

    def sweep_expired(self) -> List[HistoryEntry]:
        """
        为已到期的激活分配生成 EXPIRED 条目并标记失效

        读路径（查询、用户历史、重复分配检查）先调用本方法。
        """
        now = self._clock()
        entries = []
        for assignment in self._store.list_assignments(active_only=True):
            if not assignment.is_expired(now):
                continue
            self._store.deactivate_assignment(assignment.id)
            entry = self._append(
                HistoryAction.EXPIRED, assignment, None,
                context=HistoryContext(source=HistorySource.SYSTEM),
                reason="Assignment expired",
                snapshot=assignment.snapshot(),
                timestamp=assignment.expires_at,
            )
            self._invalidate(assignment.user_id)
            entries.append(entry)
        if entries:
            logger.info(f"Recorded {len(entries)} expired role assignments")
        return entries

    # ----- 读操作 -----

    def query(self, criteria: Optional[HistoryFilter] = None) -> HistoryPage:
        """按条件查询历史，按 timestamp desc, id desc 分页"""
        criteria = criteria or HistoryFilter()
        self.sweep_expired()

        since, until = self._time_window(criteria)
        user_id = criteria.user_ids[0] if len(criteria.user_ids) == 1 else None
        candidates = self._history.list_entries(user_id=user_id, since=since, until=until)
        matched = _sort_desc([e for e in candidates if self._matches(e, criteria)])

        limit = max(1, criteria.limit)
        page = max(1, criteria.page)
        start = (page - 1) * limit
        entries = matched[start:start + limit]

        batches = None
        if criteria.group_by_batch:
            batches = {}
            for e in entries:
                if e.context.batch_id:
                    batches.setdefault(e.context.batch_id, []).append(e.id)

        return HistoryPage(
            entries=entries,
            total=len(matched),
            page=page,
            limit=limit,
            total_pages=math.ceil(len(matched) / limit),
            batches=batches,
        )

    def get_user_history(self, user_id: str, limit: int = 50) -> List[HistoryEntry]:
        """用户的分配历史（最新在前）"""
        self.sweep_expired()
        return _sort_desc(self._history.list_entries(user_id=user_id))[:limit]

    def get_role_history(self, role_id: str, limit: int = 50,
                         show_user_details: bool = True,
                         organization_id: Optional[str] = None) -> Dict[str, Any]:
        """角色的分配历史（organization_id 限定组织）"""
        entries = _in_org(self._history.list_entries(role_id=role_id), organization_id)
        entries = _sort_desc(entries)[:limit]
        if not show_user_details:
            entries = [_mask_user(e) for e in entries]
        return {
            "role_id": role_id,
            "entries": entries,
            "total": len(entries),
            "user_count": len({e.user_id for e in entries}),
        }

    def get_admin_activity(
        self,
        admin_id: str,
        limit: int = 100,
        show_impact_metrics: bool = False,
        show_suspicious_activity: bool = False,
        organization_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """管理员操作历史，可附带影响指标和可疑模式"""
        entries = _in_org(self._history.list_entries(admin_id=admin_id), organization_id)
        entries = _sort_desc(entries)[:limit]
        response: Dict[str, Any] = {
            "admin_id": admin_id,
            "entries": entries,
            "total": len(entries),
        }
        if show_impact_metrics:
            response["impact_metrics"] = self._impact_metrics(entries)
        if show_suspicious_activity:
            response["suspicious_patterns"] = self._suspicious_patterns(entries)
        return response

    def get_summary(self, criteria: Optional[HistoryFilter] = None) -> Dict[str, Any]:
        """动作计数与近期各时段计数"""
        criteria = criteria or HistoryFilter()
        self.sweep_expired()
        since, until = self._time_window(criteria)
        entries = [e for e in self._history.list_entries(since=since, until=until)
                   if self._matches(e, criteria)]

        now = self._clock()
        periods = {
            "this_hour": now - timedelta(hours=1),
            "today": now.replace(hour=0, minute=0, second=0, microsecond=0),
            "this_week": now - timedelta(days=7),
            "this_month": now.replace(day=1, hour=0, minute=0, second=0, microsecond=0),
        }
        actions_count: Dict[str, int] = {}
        for e in entries:
            actions_count[e.action.value] = actions_count.get(e.action.value, 0) + 1

        return {
            "total_entries": len(entries),
            "actions_count": actions_count,
            "period_stats": {
                name: len([e for e in entries if e.timestamp >= start])
                for name, start in periods.items()
            },
        }

    def export(
        self,
        criteria: Optional[HistoryFilter] = None,
        format: ExportFormat = ExportFormat.CSV,
        limit: int = 10000,
    ) -> HistoryExport:
        """导出过滤后的历史条目"""
        criteria = replace(criteria or HistoryFilter(), page=1, limit=limit)
        entries = self.query(criteria).entries
        format = ExportFormat(format)

        content = None
        if format == ExportFormat.CSV:
            content = _render_csv(entries)
        elif format == ExportFormat.JSON:
            content = json.dumps([e.to_dict() for e in entries], default=str, ensure_ascii=False)

        ext = "xlsx" if format == ExportFormat.EXCEL else format.value
        file_name = f"role-history-{self._clock().strftime('%Y%m%d%H%M%S')}.{ext}"
        logger.info(f"Exported {len(entries)} role history entries as {format.value}")
        return HistoryExport(
            file_name=file_name,
            format=format,
            record_count=len(entries),
            entries=entries,
            content=content,
        )

    # ----- 内部方法 -----

    def _assign(
        self,
        user_id: str,
        role_id: str,
        assigned_by: Optional[str],
        action: HistoryAction,
        context: HistoryContext,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        conditions: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        audit_trail: Optional[AuditTrail] = None,
    ) -> HistoryEntry:
        user = self._store.get_user(user_id)
        if user is None:
            raise AssignmentError(f"User not found: {user_id}")
        role = self._store.get_role_definition(role_id)
        if role is None:
            raise AssignmentError(f"Role not found: {role_id}")

        self.sweep_expired()
        if self._store.find_active_assignment(user_id, role_id) is not None:
            raise DuplicateActiveAssignment(
                f"User {user_id} already has an active assignment of role {role_id}"
            )

        now = self._clock()
        assignment = self._store.add_assignment(RoleAssignment(
            id="",
            user_id=user_id,
            role_id=role_id,
            assigned_by=assigned_by,
            assigned_at=now,
            expires_at=expires_at,
            conditions=dict(conditions or {}),
            metadata=dict(metadata or {}),
            organization_id=user.organization_id or role.organization_id,
        ))
        entry = self._append(action, assignment, assigned_by, context=context,
                             reason=reason, audit_trail=audit_trail)
        self._invalidate(user_id)
        return entry

    def _remove(
        self,
        assignment_id: str,
        removed_by: Optional[str],
        action: HistoryAction,
        context: HistoryContext,
        reason: Optional[str] = None,
        audit_trail: Optional[AuditTrail] = None,
    ) -> HistoryEntry:
        assignment = self._active_assignment(assignment_id)
        self._store.deactivate_assignment(assignment.id)
        entry = self._append(action, assignment, removed_by, context=context, reason=reason,
                             snapshot=assignment.snapshot(), audit_trail=audit_trail)
        self._invalidate(assignment.user_id)
        return entry

    def _modify(
        self,
        assignment_id: str,
        modified_by: Optional[str],
        changes: Dict[str, Any],
        context: HistoryContext,
        reason: Optional[str] = None,
        audit_trail: Optional[AuditTrail] = None,
    ) -> HistoryEntry:
        unknown = set(changes) - set(MODIFIABLE_FIELDS)
        if unknown:
            raise AssignmentError(f"Cannot modify fields: {', '.join(sorted(unknown))}")
        assignment = self._active_assignment(assignment_id)

        updates: Dict[str, Any] = {}
        if "expires_at" in changes:
            updates["expires_at"] = _parse_datetime(changes["expires_at"])
        if "conditions" in changes:
            updates["conditions"] = dict(changes["conditions"] or {})
        if "metadata" in changes:
            updates["metadata"] = dict(changes["metadata"] or {})

        before = assignment.snapshot()
        updated = self._store.update_assignment(assignment.id, **updates)
        entry = self._append(
            HistoryAction.MODIFIED, updated, modified_by, context=context, reason=reason,
            snapshot=before, audit_trail=audit_trail,
            extra_metadata={"changes": sorted(updates)},
        )
        self._invalidate(assignment.user_id)
        return entry

    def _active_assignment(self, assignment_id: Optional[str]) -> RoleAssignment:
        assignment = self._store.get_assignment(assignment_id) if assignment_id else None
        if assignment is None:
            raise AssignmentNotFound(f"Assignment not found: {assignment_id}")
        if not assignment.is_active:
            raise AssignmentError(f"Assignment {assignment_id} is no longer active")
        return assignment

    def _rollback_target(self, original: HistoryEntry) -> RoleAssignment:
        assignment = (
            self._store.get_assignment(original.assignment_id)
            if original.assignment_id else None
        )
        if assignment is None or not assignment.is_active:
            raise RollbackNotSupported(
                f"Assignment for entry {original.id} is no longer active"
            )
        return assignment

    def _find_assignment_id(self, item: BulkOperationItem) -> str:
        if not item.role_id:
            raise AssignmentError("role_id or assignment_id is required for remove")
        assignment = self._store.find_active_assignment(item.user_id, item.role_id)
        if assignment is None:
            raise AssignmentNotFound(
                f"No active assignment of role {item.role_id} for user {item.user_id}"
            )
        return assignment.id

    def _append(
        self,
        action: HistoryAction,
        assignment: RoleAssignment,
        admin_id: Optional[str],
        context: HistoryContext,
        reason: Optional[str] = None,
        snapshot: Optional[Dict[str, Any]] = None,
        audit_trail: Optional[AuditTrail] = None,
        timestamp: Optional[datetime] = None,
        extra_metadata: Optional[Dict[str, Any]] = None,
    ) -> HistoryEntry:
        metadata = self._describe(assignment.user_id, assignment.role_id, admin_id)
        metadata.update(extra_metadata or {})
        entry = self._history.append(HistoryEntry(
            id="",
            action=action,
            user_id=assignment.user_id,
            role_id=assignment.role_id,
            timestamp=timestamp or self._clock(),
            assigned_by=admin_id,
            assignment_id=assignment.id,
            reason=reason,
            context=context,
            audit_trail=audit_trail or AuditTrail(),
            metadata=metadata,
            snapshot=snapshot,
            organization_id=assignment.organization_id,
        ))
        logger.info(
            f"Role history entry created: {action.value} - user {assignment.user_id}, "
            f"role {assignment.role_id}, admin {admin_id}"
        )
        return entry

    def _describe(self, user_id: str, role_id: str, admin_id: Optional[str]) -> Dict[str, Any]:
        user = self._store.get_user(user_id)
        role = self._store.get_role_definition(role_id)
        admin = self._store.get_user(admin_id) if admin_id else None
        return {
            "user_name": user.name if user else None,
            "user_email": user.email if user else None,
            "role_name": role.name if role else None,
            "role_level": role.level if role else None,
            "admin_name": admin.name if admin else None,
            "admin_email": admin.email if admin else None,
        }

    def _time_window(self, criteria: HistoryFilter) -> Tuple[datetime, datetime]:
        now = self._clock()
        until = criteria.date_to or now
        if criteria.date_from is not None:
            return criteria.date_from, until
        if criteria.time_range in TIME_RANGE_DELTAS:
            return now - TIME_RANGE_DELTAS[criteria.time_range], until
        return until - DEFAULT_QUERY_WINDOW, until

    @staticmethod
    def _matches(entry: HistoryEntry, criteria: HistoryFilter) -> bool:
        if criteria.user_ids and entry.user_id not in criteria.user_ids:
            return False
        if criteria.role_ids and entry.role_id not in criteria.role_ids:
            return False
        if criteria.admin_ids and entry.assigned_by not in criteria.admin_ids:
            return False
        if criteria.actions and entry.action not in criteria.actions:
            return False
        if criteria.sources and entry.context.source not in criteria.sources:
            return False
        if criteria.batch_id and entry.context.batch_id != criteria.batch_id:
            return False
        if criteria.organization_id and entry.organization_id != criteria.organization_id:
            return False
        if criteria.search:
            term = criteria.search.lower()
            haystack = [entry.metadata.get(k) for k in
                        ("user_name", "user_email", "role_name", "admin_name", "admin_email")]
            if not any(term in str(v).lower() for v in haystack if v):
                return False
        return True

    def _impact_metrics(self, entries: List[HistoryEntry]) -> Dict[str, Any]:
        bulk = [e for e in entries
                if e.action.value.startswith("BULK") or e.context.source == HistorySource.BULK]
        return {
            "total_actions": len(entries),
            "unique_users": len({e.user_id for e in entries}),
            "unique_roles": len({e.role_id for e in entries}),
            "bulk_operations": len(bulk),
            "average_actions_per_day": round(len(entries) / 30, 2),
        }

    def _suspicious_patterns(self, entries: List[HistoryEntry]) -> List[Dict[str, Any]]:
        patterns = []
        hour_ago = self._clock() - timedelta(hours=1)
        recent = len([e for e in entries if e.timestamp > hour_ago])
        if recent > self.SUSPICIOUS_HOURLY_THRESHOLD:
            patterns.append({
                "type": "high_frequency",
                "description": f"{recent} role changes in the last hour",
                "severity": "high",
                "count": recent,
            })

        night = len([e for e in entries if e.timestamp.hour < 6 or e.timestamp.hour > 22])
        if entries and night > len(entries) * self.OFF_HOURS_RATIO:
            patterns.append({
                "type": "unusual_timing",
                "description": f"{night} role changes during off-hours",
                "severity": "medium",
                "count": night,
            })
        return patterns


def _sort_desc(entries: List[HistoryEntry]) -> List[HistoryEntry]:
    return sorted(entries, key=lambda e: (e.timestamp, e.id), reverse=True)


def _in_org(entries: List[HistoryEntry], organization_id: Optional[str]) -> List[HistoryEntry]:
    if organization_id is None:
        return entries
    return [e for e in entries if e.organization_id == organization_id]


def _mask_user(entry: HistoryEntry) -> HistoryEntry:
    metadata = dict(entry.metadata)
    metadata.update({"user_name": "***", "user_email": "***@***.***"})
    return replace(entry, metadata=metadata)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


_CSV_COLUMNS = [
    "id", "timestamp", "action", "user_id", "user_name", "role_id", "role_name",
    "assigned_by", "admin_name", "reason", "source", "batch_id", "parent_action",
]


def _render_csv(entries: List[HistoryEntry]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(_CSV_COLUMNS)
    for e in entries:
        writer.writerow([
            e.id, e.timestamp.isoformat(), e.action.value, e.user_id,
            e.metadata.get("user_name") or "", e.role_id, e.metadata.get("role_name") or "",
            e.assigned_by or "", e.metadata.get("admin_name") or "", e.reason or "",
            e.context.source.value, e.context.batch_id or "", e.context.parent_action or "",
        ])
    return buffer.getvalue()


__all__ = [
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
    "BulkItemResult",
    "BulkOperationResult",
    "RollbackResult",
    "HistoryExport",
    "IHistoryStore",
    "InMemoryHistoryStore",
    "format_entry_id",
    "parse_entry_id",
    "can_user_rollback",
    "RoleHistoryLedger",
]
