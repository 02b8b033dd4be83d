"""Append-only audit log: one JSON object per line.

The log is write-only from the store's point of view: a failed append is
logged as a warning and never fails the operation that triggered it.
"""

from __future__ import annotations

import json
import logging
import secrets
from datetime import UTC, datetime
from pathlib import Path

from .errors import TaskSessionsError
from .fileops import file_lock
from .validation import validate_positive_int

logger = logging.getLogger(__name__)

VALID_ACTIONS = frozenset({
    "session_start",
    "session_suspend",
    "session_resume",
    "session_end",
    "focus_changed",
    "task_created",
    "status_changed",
    "backup_restored",
})

VALID_ACTORS = frozenset({"human", "agent", "system"})

_AUDIT_LOCK_TIMEOUT = 5.0


def _generate_log_id() -> str:
    return f"log_{secrets.token_hex(6)}"


def build_entry(
    action: str,
    actor: str = "system",
    session_id: str | None = None,
    task_id: str | None = None,
    details: dict | None = None,
) -> dict:
    if action not in VALID_ACTIONS:
        raise ValueError(f"Invalid audit action: {action}")
    if actor not in VALID_ACTORS:
        raise ValueError(f"Invalid audit actor: {actor}")
    return {
        "id": _generate_log_id(),
        "timestamp": datetime.now(UTC).isoformat(),
        "action": action,
        "actor": actor,
        "sessionId": session_id,
        "taskId": task_id,
        "details": details or {},
    }


def log_event(path: Path, action: str, **kwargs) -> dict | None:
    """Append one event to the log at ``path``. Returns the entry, or None on failure."""
    entry = build_entry(action, **kwargs)
    line = json.dumps(entry, ensure_ascii=False)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with file_lock(path, _AUDIT_LOCK_TIMEOUT):
            with open(path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
    except (OSError, TaskSessionsError) as exc:
        logger.warning("Failed to write audit event %s: %s", action, exc)
        return None
    return entry


def read_events(path: Path, limit: int | None = None) -> list[dict]:
    """Return logged events, oldest first. Corrupt lines are skipped."""
    if limit is not None:
        validate_positive_int(limit, "limit")
    if not path.exists():
        return []
    events = []
    with open(path, encoding="utf-8") as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping corrupt audit line %d in %s", lineno, path.name)
    if limit is not None:
        events = events[-limit:]
    return events
