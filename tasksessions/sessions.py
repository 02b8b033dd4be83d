"""Session lifecycle: start, suspend, resume and end scoped work sessions.

Every mutating operation follows the same protocol:

1. lock sessions.json, then todo.json (``store.lock_documents``);
2. load both documents;
3. check every precondition and policy;
4. compute the new state in memory;
5. write sessions.json, then todo.json (``store.commit``);
6. release the locks in reverse order.

A rejected operation raises before step 5, so neither document changes.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from . import store
from .conflicts import apply_policy, detect, focus_holder
from .errors import (
    FocusNotInScopeError,
    FocusRequiredError,
    InvalidInputError,
    MaxSessionsError,
    SessionExistsError,
    SessionNotFoundError,
    SessionWrongStateError,
    TaskClaimedError,
    TaskNotFoundError,
)
from .models import (
    DEFAULT_MAX_DEPTH,
    ConflictVerdict,
    ScopeDeclaration,
    ScopeType,
    Session,
    SessionFocus,
    SessionHistoryEntry,
    SessionRegistry,
    SessionStats,
    SessionStatus,
    TaskStatus,
    TaskStore,
    generate_session_id,
)
from .scope import auto_select_focus, resolve
from .validation import (
    MAX_AGENT_ID,
    MAX_NOTE,
    MAX_SESSION_NAME,
    validate_optional_string,
    validate_phase,
    validate_positive_int,
    validate_session_id,
    validate_task_id,
)

logger = logging.getLogger(__name__)

_BOTH = (store.SESSIONS_FILE, store.TODO_FILE)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class StartResult:
    session: Session
    verdict: ConflictVerdict
    warnings: list[str] = field(default_factory=list)
    auto_focused: bool = False


# ---------------------------------------------------------------------------
# Scope declarations
# ---------------------------------------------------------------------------


def build_scope(
    scope_type: str,
    root_task_id: str | None = None,
    phase_filter: str | None = None,
    max_depth: int = DEFAULT_MAX_DEPTH,
    exclude_task_ids: list[str] | None = None,
    task_ids: list[str] | None = None,
) -> ScopeDeclaration:
    """Validate caller input into a ScopeDeclaration (not yet resolved)."""
    try:
        kind = ScopeType(scope_type)
    except ValueError:
        raise InvalidInputError(
            f"Invalid scope type '{scope_type}'. Must be one of: {[str(t) for t in ScopeType]}"
        ) from None
    if root_task_id is not None:
        validate_task_id(root_task_id)
    for tid in (exclude_task_ids or []) + (task_ids or []):
        validate_task_id(tid)
    return ScopeDeclaration(
        type=kind,
        root_task_id=root_task_id,
        phase_filter=validate_phase(phase_filter),
        max_depth=max_depth,
        exclude_task_ids=list(exclude_task_ids or []),
        task_ids=list(task_ids or []),
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require_session(registry: SessionRegistry, session_id: str) -> Session:
    session = registry.get(session_id)
    if session is None:
        raise SessionNotFoundError(f"Session not found: {session_id}", sessionId=session_id)
    return session


def _require_status(session: Session, status: SessionStatus) -> None:
    if session.status != status:
        raise SessionWrongStateError(
            f"Session {session.id} is {session.status}, expected {status}",
            sessionId=session.id,
            status=str(session.status),
        )


def _live_focus_ids(registry: SessionRegistry) -> set[str]:
    return {s.focus.current_task for s in registry.sessions if s.focus.current_task}


def _set_status(tasks: TaskStore, task_id: str, status: TaskStatus, now: str) -> None:
    task = tasks.get(task_id)
    if task is not None and task.status != status:
        task.status = status
        task.updated_at = now


def _release_focus(registry: SessionRegistry, tasks: TaskStore, task_id: str, now: str) -> None:
    """Put a no-longer-focused task back to pending unless another live session holds it."""
    task = tasks.get(task_id)
    if task is None or task.status != TaskStatus.ACTIVE:
        return
    if task_id in _live_focus_ids(registry):
        return
    _set_status(tasks, task_id, TaskStatus.PENDING, now)


def _load_both() -> tuple[SessionRegistry, TaskStore]:
    return store.load_session_registry(), store.load_task_store()


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def start_session(
    scope: ScopeDeclaration,
    focus_id: str | None = None,
    name: str | None = None,
    agent_id: str | None = None,
    auto_focus: bool = True,
) -> StartResult:
    """Start a session claiming ``scope`` with ``focus_id`` as its focus task.

    Without ``focus_id`` the highest-priority pending task in scope is
    picked, unless ``auto_focus`` is False.

    Raises:
        MaxSessionsError, ScopeInvalidError, FocusRequiredError,
        FocusNotInScopeError, TaskClaimedError, ScopeConflictError,
        SessionExistsError, and the structural store errors.
    """
    name = validate_optional_string(name, "session name", MAX_SESSION_NAME)
    agent_id = validate_optional_string(agent_id, "agent id", MAX_AGENT_ID)
    if focus_id is not None:
        validate_task_id(focus_id)

    settings = store.load_settings()
    with store.lock_documents(*_BOTH, timeout=settings.lock_timeout):
        registry, tasks = _load_both()
        policy = registry.config

        if len(registry.sessions) >= policy.max_concurrent_sessions:
            raise MaxSessionsError(
                f"Maximum concurrent sessions reached ({policy.max_concurrent_sessions})",
                live=len(registry.sessions),
            )

        computed = resolve(tasks.tasks, scope)

        auto_focused = False
        if focus_id is None:
            if auto_focus:
                focus_id = auto_select_focus(tasks.tasks, computed)
                auto_focused = focus_id is not None
            if focus_id is None:
                # Nothing pending: report a claimed in-scope task rather than a bare miss
                for task_id in computed:
                    holder = focus_holder(registry.sessions, task_id)
                    if holder is not None:
                        raise TaskClaimedError(
                            f"HARD conflict - Task {task_id} already focused by session {holder.id}",
                            sessionId=holder.id,
                            overlap=[task_id],
                            conflict="hard",
                        )
                raise FocusRequiredError(
                    "Focus required and none could be inferred: "
                    "pass a focus task or add a pending task to the scope"
                )

        if focus_id not in computed:
            raise FocusNotInScopeError(
                f"Focus task {focus_id} is not in scope", focus=focus_id, scope=computed
            )
        focus_task = tasks.get(focus_id)
        if focus_task.status == TaskStatus.DONE:
            raise InvalidInputError(f"Focus task {focus_id} is already done")

        verdict = detect(registry.sessions, computed, focus_id)
        warnings = apply_policy(verdict, policy)

        session_id = generate_session_id()
        if registry.get(session_id) or any(h.id == session_id for h in registry.history):
            raise SessionExistsError(f"Session id collision: {session_id}", sessionId=session_id)

        now = _now_iso()
        claimed = _live_focus_ids(registry)
        session = Session(
            id=session_id,
            status=SessionStatus.ACTIVE,
            scope=dataclasses.replace(scope, computed_task_ids=list(computed)),
            name=name,
            agent_id=agent_id,
            focus=SessionFocus(
                current_task=focus_id,
                focus_history=[{"taskId": focus_id, "timestamp": now, "action": "focused"}],
            ),
            stats=SessionStats(focus_changes=1),
            started_at=now,
            last_activity=now,
        )
        registry.sessions.append(session)
        registry.meta.total_sessions_created += 1

        # Stale active marks left in the newly granted scope go back to pending
        for task_id in computed:
            if task_id != focus_id and task_id not in claimed:
                task = tasks.get(task_id)
                if task is not None and task.status == TaskStatus.ACTIVE:
                    _set_status(tasks, task_id, TaskStatus.PENDING, now)
        _set_status(tasks, focus_id, TaskStatus.ACTIVE, now)
        tasks.meta.active_session_count += 1
        tasks.meta.multi_session_enabled = True

        store.commit(registry, tasks, settings)

    logger.info("Started session %s on %s (focus %s)", session_id, scope.type, focus_id)
    store.audit_event(
        "session_start", settings, session_id=session_id, task_id=focus_id,
        details={
            "scopeType": str(scope.type),
            "rootTaskId": scope.root_task_id,
            "computedTaskIds": computed,
            "conflict": str(verdict.kind),
        },
    )
    return StartResult(session=session, verdict=verdict, warnings=warnings, auto_focused=auto_focused)


def suspend_session(session_id: str, note: str | None = None) -> Session:
    """Suspend an active session. The focus task keeps its status."""
    validate_session_id(session_id)
    note = validate_optional_string(note, "note", MAX_NOTE)
    settings = store.load_settings()
    with store.lock_documents(*_BOTH, timeout=settings.lock_timeout):
        registry = store.load_session_registry()
        session = _require_session(registry, session_id)
        _require_status(session, SessionStatus.ACTIVE)

        now = _now_iso()
        session.status = SessionStatus.SUSPENDED
        session.suspended_at = now
        session.last_activity = now
        session.stats.suspend_count += 1
        if note:
            session.focus.session_note = note

        store.commit(registry, None, settings)

    logger.info("Suspended session %s", session_id)
    store.audit_event(
        "session_suspend", settings, session_id=session_id,
        task_id=session.focus.current_task, details={"note": note},
    )
    return session


def resume_session(session_id: str) -> Session:
    """Reactivate a suspended session and restore its focus task to active."""
    validate_session_id(session_id)
    settings = store.load_settings()
    with store.lock_documents(*_BOTH, timeout=settings.lock_timeout):
        registry, tasks = _load_both()
        session = _require_session(registry, session_id)
        _require_status(session, SessionStatus.SUSPENDED)

        focus_id = session.focus.current_task
        if focus_id:
            holder = focus_holder(registry.sessions, focus_id, exclude_session_id=session_id)
            if holder is not None:
                raise TaskClaimedError(
                    f"HARD conflict - Task {focus_id} already focused by session {holder.id}",
                    sessionId=holder.id,
                )

        now = _now_iso()
        session.status = SessionStatus.ACTIVE
        session.suspended_at = None
        session.last_activity = now
        session.stats.resume_count += 1

        if focus_id:
            task = tasks.get(focus_id)
            if task is None:
                logger.warning("Focus task %s of session %s no longer exists", focus_id, session_id)
            elif task.status != TaskStatus.DONE:
                _set_status(tasks, focus_id, TaskStatus.ACTIVE, now)

        store.commit(registry, tasks, settings)

    logger.info("Resumed session %s", session_id)
    store.audit_event("session_resume", settings, session_id=session_id, task_id=focus_id)
    return session


def end_session(session_id: str, note: str | None = None) -> SessionHistoryEntry:
    """End a live session and move it to history.

    The focus task goes back to pending if it is still active.
    """
    validate_session_id(session_id)
    note = validate_optional_string(note, "note", MAX_NOTE)
    settings = store.load_settings()
    with store.lock_documents(*_BOTH, timeout=settings.lock_timeout):
        registry, tasks = _load_both()
        session = _require_session(registry, session_id)

        now = _now_iso()
        focus_id = session.focus.current_task
        entry = SessionHistoryEntry(
            id=session.id,
            scope_type=session.scope.type,
            root_task_id=session.scope.root_task_id,
            computed_task_ids=list(session.scope.computed_task_ids),
            started_at=session.started_at,
            ended_at=now,
            stats=dataclasses.replace(session.stats),
            name=session.name,
            agent_id=session.agent_id,
            last_focus=focus_id,
            end_note=note,
        )
        registry.sessions.remove(session)
        registry.history.append(entry)

        if focus_id:
            _release_focus(registry, tasks, focus_id, now)
        tasks.meta.active_session_count = max(tasks.meta.active_session_count - 1, 0)

        store.commit(registry, tasks, settings)

    logger.info("Ended session %s", session_id)
    store.audit_event(
        "session_end", settings, session_id=session_id, task_id=focus_id,
        details={"note": note, "stats": dataclasses.asdict(entry.stats)},
    )
    return entry


def focus_task(session_id: str, task_id: str) -> Session:
    """Move an active session's focus to another task in its scope."""
    validate_session_id(session_id)
    validate_task_id(task_id)
    settings = store.load_settings()
    with store.lock_documents(*_BOTH, timeout=settings.lock_timeout):
        registry, tasks = _load_both()
        session = _require_session(registry, session_id)
        _require_status(session, SessionStatus.ACTIVE)

        if task_id not in session.scope.computed_task_ids:
            raise FocusNotInScopeError(
                f"Task {task_id} is not in scope of session {session_id}", focus=task_id
            )
        task = tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        if task.status == TaskStatus.DONE:
            raise InvalidInputError(f"Task {task_id} is already done")
        if session.focus.current_task == task_id:
            return session

        holder = focus_holder(registry.sessions, task_id, exclude_session_id=session_id)
        if holder is not None:
            raise TaskClaimedError(
                f"HARD conflict - Task {task_id} already focused by session {holder.id}",
                sessionId=holder.id,
            )

        now = _now_iso()
        previous = session.focus.current_task
        session.focus.previous_task = previous
        session.focus.current_task = task_id
        session.focus.focus_history.append(
            {"taskId": task_id, "timestamp": now, "action": "focused"}
        )
        session.stats.focus_changes += 1
        session.last_activity = now

        if previous:
            _release_focus(registry, tasks, previous, now)
        _set_status(tasks, task_id, TaskStatus.ACTIVE, now)

        store.commit(registry, tasks, settings)

    store.audit_event(
        "focus_changed", settings, session_id=session_id, task_id=task_id,
        details={"previous": previous},
    )
    return session


def complete_task(session_id: str, task_id: str) -> Session:
    """Mark an in-scope task done and count it against the session."""
    validate_session_id(session_id)
    validate_task_id(task_id)
    settings = store.load_settings()
    with store.lock_documents(*_BOTH, timeout=settings.lock_timeout):
        registry, tasks = _load_both()
        session = _require_session(registry, session_id)
        _require_status(session, SessionStatus.ACTIVE)

        if task_id not in session.scope.computed_task_ids:
            raise FocusNotInScopeError(
                f"Task {task_id} is not in scope of session {session_id}", focus=task_id
            )
        task = tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        if task.status == TaskStatus.DONE:
            raise InvalidInputError(f"Task {task_id} is already done")
        holder = focus_holder(registry.sessions, task_id, exclude_session_id=session_id)
        if holder is not None:
            raise TaskClaimedError(
                f"Task {task_id} is the focus of session {holder.id}", sessionId=holder.id
            )

        now = _now_iso()
        old_status = task.status
        task.status = TaskStatus.DONE
        task.updated_at = now
        task.completed_at = now
        session.stats.tasks_completed += 1
        session.last_activity = now
        if session.focus.current_task == task_id:
            session.focus.previous_task = task_id
            session.focus.current_task = None
            session.focus.focus_history.append(
                {"taskId": task_id, "timestamp": now, "action": "completed"}
            )

        store.commit(registry, tasks, settings)

    store.audit_event(
        "status_changed", settings, session_id=session_id, task_id=task_id,
        details={"from": str(old_status), "to": str(TaskStatus.DONE)},
    )
    return session


def set_note(session_id: str, note: str) -> Session:
    """Replace the free-form note of a live session."""
    validate_session_id(session_id)
    note = validate_optional_string(note, "note", MAX_NOTE)
    settings = store.load_settings()
    with store.lock_documents(*_BOTH, timeout=settings.lock_timeout):
        registry = store.load_session_registry()
        session = _require_session(registry, session_id)
        session.focus.session_note = note
        session.last_activity = _now_iso()
        store.commit(registry, None, settings)
    return session


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def get_session(session_id: str) -> Session | None:
    validate_session_id(session_id)
    return store.load_session_registry().get(session_id)


def list_sessions(status: SessionStatus | None = None) -> list[Session]:
    sessions = store.load_session_registry().sessions
    if status is not None:
        sessions = [s for s in sessions if s.status == status]
    return sessions


def get_history(limit: int | None = None) -> list[SessionHistoryEntry]:
    """Ended sessions, oldest first; ``limit`` keeps only the most recent."""
    if limit is not None:
        validate_positive_int(limit, "limit")
    history = store.load_session_registry().history
    if limit is not None:
        history = history[-limit:]
    return history


def preview_scope(scope: ScopeDeclaration) -> dict:
    """Resolve a scope and classify conflicts without claiming anything."""
    registry, tasks = _load_both()
    computed = resolve(tasks.tasks, scope)
    verdict = detect(registry.sessions, computed, None)
    return {
        "computedTaskIds": computed,
        "suggestedFocus": auto_select_focus(tasks.tasks, computed),
        "conflict": {
            "type": str(verdict.kind),
            "sessionId": verdict.session_id,
            "overlappingTasks": verdict.overlap,
        },
    }
