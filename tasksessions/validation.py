"""Input validation and document validators.

Input validators raise InvalidInputError (a ValueError) so the CLI, the
store and the lifecycle manager share the same constraints. Document
validators return a list of reasons instead of raising; ``atomic_write``
calls them on the staged content before swapping it in.
"""

from __future__ import annotations

import re

from .errors import InvalidInputError
from .models import Priority, ScopeType, SessionStatus, TaskStatus

# ---------------------------------------------------------------------------
# String length limits
# ---------------------------------------------------------------------------

MAX_TITLE = 300
MAX_NOTE = 1000
MAX_SESSION_NAME = 100
MAX_AGENT_ID = 100
MAX_PHASE = 50

# ---------------------------------------------------------------------------
# Regex patterns
# ---------------------------------------------------------------------------

_TASK_ID_RE = re.compile(r"^T\d{3,}$")
_SESSION_ID_RE = re.compile(r"^session_\d{8}_\d{6}_[0-9a-f]{6}$")
_PHASE_RE = re.compile(r"^[a-z0-9][a-z0-9\-]*$")


# ---------------------------------------------------------------------------
# Input validators: all raise InvalidInputError on failure
# ---------------------------------------------------------------------------


def validate_string_length(value: str, field: str, max_len: int) -> str:
    """Validate string is non-empty and within length limit."""
    if not value or not value.strip():
        raise InvalidInputError(f"{field} cannot be empty")
    stripped = value.strip()
    if len(stripped) > max_len:
        raise InvalidInputError(f"{field} too long ({len(stripped)} chars, max {max_len})")
    return stripped


def validate_optional_string(value: str | None, field: str, max_len: int) -> str | None:
    """Validate optional string: None is allowed, but if set must be within limit."""
    if value is None:
        return None
    return validate_string_length(value, field, max_len)


def validate_task_id(task_id: str) -> str:
    if not task_id or not _TASK_ID_RE.match(task_id):
        raise InvalidInputError(f"Invalid task ID: '{task_id}'. Expected T followed by digits.")
    return task_id


def validate_session_id(session_id: str) -> str:
    if not session_id or not _SESSION_ID_RE.match(session_id):
        raise InvalidInputError(f"Invalid session ID format: {session_id}")
    return session_id


def validate_phase(phase: str | None) -> str | None:
    """Validate phase slug (lowercase alphanumeric + hyphens)."""
    if phase is None:
        return None
    if len(phase) > MAX_PHASE or not _PHASE_RE.match(phase):
        raise InvalidInputError(
            f"Invalid phase: '{phase}'. "
            "Must be lowercase alphanumeric with hyphens, starting with alphanumeric."
        )
    return phase


def validate_priority(priority: str) -> Priority:
    try:
        return Priority(priority)
    except ValueError:
        raise InvalidInputError(
            f"Invalid priority '{priority}'. Must be one of: {[str(p) for p in Priority]}"
        ) from None


def validate_positive_int(value: int, field: str, max_val: int | None = None) -> int:
    """Validate integer is positive (> 0), optionally with upper bound."""
    if value < 1:
        raise InvalidInputError(f"{field} must be positive (got {value})")
    if max_val is not None and value > max_val:
        raise InvalidInputError(f"{field} too large ({value}, max {max_val})")
    return value


def validate_port(port: int) -> int:
    if port < 1 or port > 65535:
        raise InvalidInputError(f"Port must be 1-65535 (got {port})")
    return port


# ---------------------------------------------------------------------------
# Document validators: return reasons, empty list means valid
# ---------------------------------------------------------------------------

_TASK_STATUSES = {str(s) for s in TaskStatus}
_PRIORITIES = {str(p) for p in Priority}
_SESSION_STATUSES = {str(s) for s in SessionStatus}
_SCOPE_TYPES = {str(t) for t in ScopeType}


def validate_task_store(doc: dict) -> list[str]:
    reasons: list[str] = []
    if not isinstance(doc.get("_meta"), dict):
        reasons.append("missing _meta object")
    tasks = doc.get("tasks")
    if not isinstance(tasks, list):
        return reasons + ["tasks must be an array"]

    ids: set[str] = set()
    for i, task in enumerate(tasks):
        if not isinstance(task, dict):
            reasons.append(f"task {i} is not an object")
            continue
        task_id = task.get("id")
        if not isinstance(task_id, str) or not _TASK_ID_RE.match(task_id):
            reasons.append(f"task {i} has invalid id {task_id!r}")
        elif task_id in ids:
            reasons.append(f"duplicate task id {task_id}")
        else:
            ids.add(task_id)
        if task.get("status") not in _TASK_STATUSES:
            reasons.append(f"task {task_id} has invalid status {task.get('status')!r}")
        if task.get("priority", "medium") not in _PRIORITIES:
            reasons.append(f"task {task_id} has invalid priority {task.get('priority')!r}")
        if not task.get("title"):
            reasons.append(f"task {task_id} has no title")

    for task in tasks:
        if isinstance(task, dict):
            parent = task.get("parentId")
            if parent is not None and parent not in ids:
                reasons.append(f"task {task.get('id')} references missing parent {parent}")
            if parent is not None and parent == task.get("id"):
                reasons.append(f"task {task.get('id')} is its own parent")
    return reasons


def validate_session_registry(doc: dict) -> list[str]:
    reasons: list[str] = []
    if not isinstance(doc.get("_meta"), dict):
        reasons.append("missing _meta object")
    if not isinstance(doc.get("config"), dict):
        reasons.append("missing config object")
    sessions = doc.get("sessions")
    history = doc.get("sessionHistory")
    if not isinstance(sessions, list):
        reasons.append("sessions must be an array")
        sessions = []
    if not isinstance(history, list):
        reasons.append("sessionHistory must be an array")

    seen: set[str] = set()
    focused: dict[str, str] = {}
    for i, session in enumerate(sessions):
        if not isinstance(session, dict):
            reasons.append(f"session {i} is not an object")
            continue
        sid = session.get("id")
        if not sid:
            reasons.append(f"session {i} has no id")
        elif sid in seen:
            reasons.append(f"duplicate session id {sid}")
        else:
            seen.add(sid)
        status = session.get("status")
        if status not in _SESSION_STATUSES:
            reasons.append(f"session {sid} has invalid status {status!r}")
        scope = session.get("scope")
        if not isinstance(scope, dict) or scope.get("type") not in _SCOPE_TYPES:
            reasons.append(f"session {sid} has an invalid scope")
        elif not scope.get("computedTaskIds"):
            reasons.append(f"session {sid} claims no tasks")
        focus = (session.get("focus") or {}).get("currentTask")
        if focus and status == SessionStatus.ACTIVE:
            if focus in focused:
                reasons.append(
                    f"task {focus} is focused by both {focused[focus]} and {sid}"
                )
            focused[focus] = sid
    return reasons
