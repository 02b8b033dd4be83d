"""Task store and session data models: pure stdlib, no external dependencies.

Documents are persisted with camelCase keys; the ``*_from_dict`` and
``*_to_dict`` helpers convert between the JSON shape and these dataclasses.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum


class TaskStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    BLOCKED = "blocked"
    DONE = "done"


class Priority(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_RANK = {
    Priority.CRITICAL: 4,
    Priority.HIGH: 3,
    Priority.MEDIUM: 2,
    Priority.LOW: 1,
}


class SessionStatus(StrEnum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class ScopeType(StrEnum):
    TASK = "task"
    TASK_GROUP = "taskGroup"
    SUBTREE = "subtree"
    EPIC_PHASE = "epicPhase"
    EPIC = "epic"
    CUSTOM = "custom"


class ConflictKind(StrEnum):
    NONE = "none"
    PARTIAL = "partial"
    NESTED = "nested"
    IDENTICAL = "identical"
    HARD = "hard"


DEFAULT_MAX_DEPTH = 10


# ---------------------------------------------------------------------------
# Task Store
# ---------------------------------------------------------------------------


@dataclass
class Task:
    """One task record in todo.json."""

    id: str
    title: str
    status: TaskStatus = TaskStatus.PENDING
    parent_id: str | None = None
    phase: str | None = None
    priority: Priority = Priority.MEDIUM
    created_at: str = ""
    updated_at: str = ""
    completed_at: str | None = None
    # Fields this package does not manage, written back unchanged
    extra: dict = field(default_factory=dict)


@dataclass
class TaskStoreMeta:
    checksum: str = ""
    last_modified: str = ""
    active_session_count: int = 0
    multi_session_enabled: bool = False
    next_id: int = 1
    extra: dict = field(default_factory=dict)


@dataclass
class TaskStore:
    """Parsed snapshot of todo.json."""

    version: str = "1.0.0"
    project: str = ""
    meta: TaskStoreMeta = field(default_factory=TaskStoreMeta)
    tasks: list[Task] = field(default_factory=list)
    extra: dict = field(default_factory=dict)
    # Checksum found on disk when this snapshot was loaded (not persisted)
    loaded_checksum: str | None = None

    def get(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@dataclass
class ScopeDeclaration:
    """Which tasks a session may claim.

    ``computed_task_ids`` is filled once when the session starts and never
    recomputed afterwards.
    """

    type: ScopeType
    root_task_id: str | None = None
    phase_filter: str | None = None
    max_depth: int = DEFAULT_MAX_DEPTH
    exclude_task_ids: list[str] = field(default_factory=list)
    task_ids: list[str] = field(default_factory=list)
    computed_task_ids: list[str] = field(default_factory=list)


@dataclass
class SessionFocus:
    current_task: str | None = None
    previous_task: str | None = None
    session_note: str | None = None
    focus_history: list[dict] = field(default_factory=list)


@dataclass
class SessionStats:
    tasks_completed: int = 0
    focus_changes: int = 0
    suspend_count: int = 0
    resume_count: int = 0


@dataclass
class Session:
    """One live session in sessions.json."""

    id: str
    status: SessionStatus
    scope: ScopeDeclaration
    name: str | None = None
    agent_id: str | None = None
    focus: SessionFocus = field(default_factory=SessionFocus)
    stats: SessionStats = field(default_factory=SessionStats)
    started_at: str = ""
    last_activity: str = ""
    suspended_at: str | None = None


@dataclass
class SessionHistoryEntry:
    """Immutable record appended to sessionHistory when a session ends."""

    id: str
    scope_type: ScopeType
    root_task_id: str | None
    computed_task_ids: list[str]
    started_at: str
    ended_at: str
    stats: SessionStats
    name: str | None = None
    agent_id: str | None = None
    last_focus: str | None = None
    end_note: str | None = None
    resumable: bool = True


@dataclass
class SessionPolicy:
    """Per-project multi-session policy, stored in sessions.json."""

    max_concurrent_sessions: int = 5
    max_active_tasks_per_scope: int = 1
    scope_validation: str = "strict"
    allow_nested_scopes: bool = True
    allow_scope_overlap: bool = False


@dataclass
class RegistryMeta:
    checksum: str = ""
    last_modified: str = ""
    total_sessions_created: int = 0


@dataclass
class SessionRegistry:
    """Parsed snapshot of sessions.json."""

    version: str = "1.0.0"
    project: str = ""
    meta: RegistryMeta = field(default_factory=RegistryMeta)
    config: SessionPolicy = field(default_factory=SessionPolicy)
    sessions: list[Session] = field(default_factory=list)
    history: list[SessionHistoryEntry] = field(default_factory=list)
    loaded_checksum: str | None = None

    def get(self, session_id: str) -> Session | None:
        for session in self.sessions:
            if session.id == session_id:
                return session
        return None

    def active(self) -> list[Session]:
        return [s for s in self.sessions if s.status == SessionStatus.ACTIVE]


@dataclass
class ConflictVerdict:
    """Result of comparing a candidate scope with the live sessions."""

    kind: ConflictKind
    session_id: str | None = None
    overlap: list[str] = field(default_factory=list)
    message: str = ""


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass
class StoreSettings:
    lock_timeout: float = 30.0
    max_backups: int = 10
    retry_max_attempts: int = 3
    retry_initial_delay: float = 0.1
    retry_multiplier: float = 2.0
    retry_max_total_seconds: float = 5.0
    hierarchy_max_depth: int = 3
    hierarchy_max_siblings: int = 20
    audit_enabled: bool = True


# ---------------------------------------------------------------------------
# IDs
# ---------------------------------------------------------------------------


def generate_session_id() -> str:
    """Generate readable + unique session ID: session_20260210_143000_a1b2c3."""
    now = datetime.now(UTC)
    return f"session_{now.strftime('%Y%m%d_%H%M%S')}_{secrets.token_hex(3)}"


def format_task_id(number: int) -> str:
    return f"T{number:03d}"


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


_TASK_KEYS = frozenset({
    "id", "title", "status", "parentId", "phase", "priority",
    "createdAt", "updatedAt", "completedAt",
})
_TASK_STORE_KEYS = frozenset({"version", "project", "_meta", "tasks"})
_TASK_META_KEYS = frozenset({
    "checksum", "lastModified", "activeSessionCount", "multiSessionEnabled", "nextId",
})


def _unknown(data: dict, known: frozenset) -> dict:
    return {k: v for k, v in data.items() if k not in known}


def _with_extra(data: dict, extra: dict) -> dict:
    for key, value in extra.items():
        data.setdefault(key, value)
    return data


def task_from_dict(data: dict) -> Task:
    return Task(
        id=data["id"],
        title=data.get("title", ""),
        status=TaskStatus(data.get("status", TaskStatus.PENDING)),
        parent_id=data.get("parentId"),
        phase=data.get("phase"),
        priority=Priority(data.get("priority", Priority.MEDIUM)),
        created_at=data.get("createdAt", ""),
        updated_at=data.get("updatedAt", ""),
        completed_at=data.get("completedAt"),
        extra=_unknown(data, _TASK_KEYS),
    )


def task_to_dict(task: Task) -> dict:
    data = {
        "id": task.id,
        "title": task.title,
        "status": str(task.status),
        "parentId": task.parent_id,
        "phase": task.phase,
        "priority": str(task.priority),
        "createdAt": task.created_at,
        "updatedAt": task.updated_at,
    }
    if task.completed_at:
        data["completedAt"] = task.completed_at
    return _with_extra(data, task.extra)


def task_store_from_dict(data: dict) -> TaskStore:
    meta = data.get("_meta", {})
    return TaskStore(
        version=data.get("version", "1.0.0"),
        project=data.get("project", ""),
        meta=TaskStoreMeta(
            checksum=meta.get("checksum", ""),
            last_modified=meta.get("lastModified", ""),
            active_session_count=meta.get("activeSessionCount", 0),
            multi_session_enabled=meta.get("multiSessionEnabled", False),
            next_id=meta.get("nextId", 1),
            extra=_unknown(meta, _TASK_META_KEYS),
        ),
        tasks=[task_from_dict(t) for t in data.get("tasks", [])],
        extra=_unknown(data, _TASK_STORE_KEYS),
        loaded_checksum=meta.get("checksum", ""),
    )


def task_store_to_dict(store: TaskStore) -> dict:
    meta = {
        "checksum": store.meta.checksum,
        "lastModified": store.meta.last_modified,
        "activeSessionCount": store.meta.active_session_count,
        "multiSessionEnabled": store.meta.multi_session_enabled,
        "nextId": store.meta.next_id,
    }
    data = {
        "version": store.version,
        "project": store.project,
        "_meta": _with_extra(meta, store.meta.extra),
        "tasks": [task_to_dict(t) for t in store.tasks],
    }
    return _with_extra(data, store.extra)


def scope_from_dict(data: dict) -> ScopeDeclaration:
    return ScopeDeclaration(
        type=ScopeType(data["type"]),
        root_task_id=data.get("rootTaskId"),
        phase_filter=data.get("phaseFilter"),
        max_depth=data.get("maxDepth", DEFAULT_MAX_DEPTH),
        exclude_task_ids=list(data.get("excludeTaskIds", [])),
        task_ids=list(data.get("taskIds", [])),
        computed_task_ids=list(data.get("computedTaskIds", [])),
    )


def scope_to_dict(scope: ScopeDeclaration) -> dict:
    data = {
        "type": str(scope.type),
        "rootTaskId": scope.root_task_id,
        "maxDepth": scope.max_depth,
        "excludeTaskIds": list(scope.exclude_task_ids),
        "computedTaskIds": list(scope.computed_task_ids),
    }
    if scope.phase_filter is not None:
        data["phaseFilter"] = scope.phase_filter
    if scope.task_ids:
        data["taskIds"] = list(scope.task_ids)
    return data


def _stats_from_dict(data: dict) -> SessionStats:
    return SessionStats(
        tasks_completed=data.get("tasksCompleted", 0),
        focus_changes=data.get("focusChanges", 0),
        suspend_count=data.get("suspendCount", 0),
        resume_count=data.get("resumeCount", 0),
    )


def _stats_to_dict(stats: SessionStats) -> dict:
    return {
        "tasksCompleted": stats.tasks_completed,
        "focusChanges": stats.focus_changes,
        "suspendCount": stats.suspend_count,
        "resumeCount": stats.resume_count,
    }


def session_from_dict(data: dict) -> Session:
    focus = data.get("focus", {})
    return Session(
        id=data["id"],
        status=SessionStatus(data["status"]),
        scope=scope_from_dict(data["scope"]),
        name=data.get("name"),
        agent_id=data.get("agentId"),
        focus=SessionFocus(
            current_task=focus.get("currentTask"),
            previous_task=focus.get("previousTask"),
            session_note=focus.get("sessionNote"),
            focus_history=list(focus.get("focusHistory", [])),
        ),
        stats=_stats_from_dict(data.get("stats", {})),
        started_at=data.get("startedAt", ""),
        last_activity=data.get("lastActivity", ""),
        suspended_at=data.get("suspendedAt"),
    )


def session_to_dict(session: Session) -> dict:
    return {
        "id": session.id,
        "status": str(session.status),
        "name": session.name,
        "agentId": session.agent_id,
        "scope": scope_to_dict(session.scope),
        "focus": {
            "currentTask": session.focus.current_task,
            "previousTask": session.focus.previous_task,
            "sessionNote": session.focus.session_note,
            "focusHistory": list(session.focus.focus_history),
        },
        "startedAt": session.started_at,
        "lastActivity": session.last_activity,
        "suspendedAt": session.suspended_at,
        "stats": _stats_to_dict(session.stats),
    }


def history_from_dict(data: dict) -> SessionHistoryEntry:
    return SessionHistoryEntry(
        id=data["id"],
        scope_type=ScopeType(data["scopeType"]),
        root_task_id=data.get("rootTaskId"),
        computed_task_ids=list(data.get("computedTaskIds", [])),
        started_at=data.get("startedAt", ""),
        ended_at=data.get("endedAt", ""),
        stats=_stats_from_dict(data.get("stats", {})),
        name=data.get("name"),
        agent_id=data.get("agentId"),
        last_focus=data.get("lastFocus"),
        end_note=data.get("endNote"),
        resumable=data.get("resumable", True),
    )


def history_to_dict(entry: SessionHistoryEntry) -> dict:
    return {
        "id": entry.id,
        "name": entry.name,
        "agentId": entry.agent_id,
        "scopeType": str(entry.scope_type),
        "rootTaskId": entry.root_task_id,
        "computedTaskIds": list(entry.computed_task_ids),
        "lastFocus": entry.last_focus,
        "startedAt": entry.started_at,
        "endedAt": entry.ended_at,
        "stats": _stats_to_dict(entry.stats),
        "endNote": entry.end_note,
        "resumable": entry.resumable,
    }


def policy_from_dict(data: dict) -> SessionPolicy:
    return SessionPolicy(
        max_concurrent_sessions=data.get("maxConcurrentSessions", 5),
        max_active_tasks_per_scope=data.get("maxActiveTasksPerScope", 1),
        scope_validation=data.get("scopeValidation", "strict"),
        allow_nested_scopes=data.get("allowNestedScopes", True),
        allow_scope_overlap=data.get("allowScopeOverlap", False),
    )


def policy_to_dict(policy: SessionPolicy) -> dict:
    return {
        "maxConcurrentSessions": policy.max_concurrent_sessions,
        "maxActiveTasksPerScope": policy.max_active_tasks_per_scope,
        "scopeValidation": policy.scope_validation,
        "allowNestedScopes": policy.allow_nested_scopes,
        "allowScopeOverlap": policy.allow_scope_overlap,
    }


def registry_from_dict(data: dict) -> SessionRegistry:
    meta = data.get("_meta", {})
    return SessionRegistry(
        version=data.get("version", "1.0.0"),
        project=data.get("project", ""),
        meta=RegistryMeta(
            checksum=meta.get("checksum", ""),
            last_modified=meta.get("lastModified", ""),
            total_sessions_created=meta.get("totalSessionsCreated", 0),
        ),
        config=policy_from_dict(data.get("config", {})),
        sessions=[session_from_dict(s) for s in data.get("sessions", [])],
        history=[history_from_dict(h) for h in data.get("sessionHistory", [])],
        loaded_checksum=meta.get("checksum", ""),
    )


def registry_to_dict(registry: SessionRegistry) -> dict:
    return {
        "version": registry.version,
        "project": registry.project,
        "_meta": {
            "checksum": registry.meta.checksum,
            "lastModified": registry.meta.last_modified,
            "totalSessionsCreated": registry.meta.total_sessions_created,
        },
        "config": policy_to_dict(registry.config),
        "sessions": [session_to_dict(s) for s in registry.sessions],
        "sessionHistory": [history_to_dict(h) for h in registry.history],
    }
