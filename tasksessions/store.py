"""Task store and session registry: the two shared JSON documents.

This module is the only one that opens todo.json or sessions.json for
writing, and it only does so through ``fileops.atomic_write``. Callers
that need both documents must take them with ``lock_documents``, which
always locks sessions.json before todo.json.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, fields
from datetime import UTC, datetime
from pathlib import Path

from . import audit, fileops
from .conflicts import focus_holder
from .errors import (
    ChecksumMismatchError,
    InvalidInputError,
    NotInitializedError,
    TaskClaimedError,
    TaskNotFoundError,
    TaskSessionsError,
)
from .hierarchy import check_can_add_child
from .models import (
    SessionRegistry,
    StoreSettings,
    Task,
    TaskStatus,
    TaskStore,
    format_task_id,
    history_to_dict,
    registry_from_dict,
    registry_to_dict,
    session_to_dict,
    task_store_from_dict,
    task_store_to_dict,
    task_to_dict,
)
from .validation import (
    MAX_TITLE,
    validate_phase,
    validate_priority,
    validate_session_id,
    validate_string_length,
    validate_task_id,
    validate_session_registry,
    validate_task_store,
)

logger = logging.getLogger(__name__)

DATA_DIR = Path(os.environ.get("TASKSESSIONS_DIR", Path.cwd() / ".tasks"))

TODO_FILE = "todo.json"
SESSIONS_FILE = "sessions.json"
CONFIG_FILE = "config.json"
LOG_FILE = "todo-log.jsonl"
CURRENT_SESSION_FILE = ".current-session"
SESSION_ENV_VAR = "TASKSESSIONS_SESSION"

# Global lock order: the session registry is always locked before the task store
LOCK_ORDER = (SESSIONS_FILE, TODO_FILE)

SCHEMA_VERSION = "1.0.0"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _ensure_dirs() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def document_path(name: str) -> Path:
    return DATA_DIR / name


def todo_path() -> Path:
    return DATA_DIR / TODO_FILE


def sessions_path() -> Path:
    return DATA_DIR / SESSIONS_FILE


def config_path() -> Path:
    return DATA_DIR / CONFIG_FILE


def log_path() -> Path:
    return DATA_DIR / LOG_FILE


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def load_settings() -> StoreSettings:
    """Load config.json, writing the defaults on first use."""
    _ensure_dirs()
    path = config_path()
    if not path.exists():
        settings = StoreSettings()
        save_settings(settings)
        return settings

    data = fileops.safe_read_json(path)
    known = {f.name for f in fields(StoreSettings)}
    unknown = set(data) - known
    if unknown:
        logger.warning("Ignoring unknown settings in %s: %s", CONFIG_FILE, sorted(unknown))
    return StoreSettings(**{k: v for k, v in data.items() if k in known})


def save_settings(settings: StoreSettings) -> None:
    _ensure_dirs()
    fileops.atomic_write(config_path(), asdict(settings), max_backups=settings.max_backups)


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


def audit_event(action: str, settings: StoreSettings | None = None, **kwargs) -> None:
    settings = settings or load_settings()
    if settings.audit_enabled:
        audit.log_event(log_path(), action, **kwargs)


# ---------------------------------------------------------------------------
# Locking
# ---------------------------------------------------------------------------


@contextmanager
def lock_documents(*names: str, timeout: float | None = None) -> Iterator[None]:
    """Lock the named documents in the global lock order."""
    unknown = set(names) - set(LOCK_ORDER)
    if unknown:
        raise ValueError(f"Unknown documents: {sorted(unknown)}")
    if timeout is None:
        timeout = load_settings().lock_timeout
    _ensure_dirs()
    paths = [document_path(name) for name in names]
    with fileops.lock_documents(paths, timeout, order=LOCK_ORDER):
        yield


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------


def _new_task_store(project: str) -> TaskStore:
    store = TaskStore(version=SCHEMA_VERSION, project=project)
    store.meta.last_modified = _now_iso()
    return store


def _new_session_registry(project: str) -> SessionRegistry:
    registry = SessionRegistry(version=SCHEMA_VERSION, project=project)
    registry.meta.last_modified = _now_iso()
    return registry


def init_project(project: str | None = None) -> dict:
    """Create todo.json, sessions.json and config.json if missing. Idempotent."""
    _ensure_dirs()
    project = project or DATA_DIR.resolve().parent.name
    settings = load_settings()
    created = []
    with lock_documents(SESSIONS_FILE, TODO_FILE, timeout=settings.lock_timeout):
        if not sessions_path().exists():
            save_session_registry(_new_session_registry(project), settings)
            created.append(SESSIONS_FILE)
        if not todo_path().exists():
            save_task_store(_new_task_store(project), settings)
            created.append(TODO_FILE)
    return {"dataDir": str(DATA_DIR), "project": project, "created": created}


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def load_task_store() -> TaskStore:
    path = todo_path()
    if not path.exists():
        raise NotInitializedError(f"Task store not found: {path}. Run 'init' first.")
    return task_store_from_dict(fileops.safe_read_json(path))


def load_session_registry() -> SessionRegistry:
    """Load sessions.json; an empty registry is returned when it does not exist yet."""
    path = sessions_path()
    if not path.exists():
        return _new_session_registry(DATA_DIR.resolve().parent.name)
    return registry_from_dict(fileops.safe_read_json(path))


def _check_unchanged(path: Path, loaded_checksum: str | None) -> None:
    """Detect a writer that changed ``path`` since the snapshot was loaded."""
    if loaded_checksum is None or not path.exists():
        return
    on_disk = fileops.safe_read_json(path).get("_meta", {}).get("checksum", "")
    if on_disk != loaded_checksum:
        raise ChecksumMismatchError(
            f"{path.name} changed since it was read (checksum {on_disk} != {loaded_checksum})",
            file=path.name,
        )


def save_task_store(store: TaskStore, settings: StoreSettings | None = None) -> Path | None:
    """Write todo.json. Caller must hold the todo.json lock."""
    settings = settings or load_settings()
    path = todo_path()
    _check_unchanged(path, store.loaded_checksum)
    store.meta.last_modified = _now_iso()
    store.meta.checksum = fileops.compute_checksum([task_to_dict(t) for t in store.tasks])
    backup = fileops.atomic_write(
        path,
        task_store_to_dict(store),
        validator=validate_task_store,
        max_backups=settings.max_backups,
    )
    store.loaded_checksum = store.meta.checksum
    return backup


def save_session_registry(
    registry: SessionRegistry, settings: StoreSettings | None = None
) -> Path | None:
    """Write sessions.json. Caller must hold the sessions.json lock."""
    settings = settings or load_settings()
    path = sessions_path()
    _check_unchanged(path, registry.loaded_checksum)
    registry.meta.last_modified = _now_iso()
    registry.meta.checksum = fileops.compute_checksum({
        "sessions": [session_to_dict(s) for s in registry.sessions],
        "sessionHistory": [history_to_dict(h) for h in registry.history],
    })
    backup = fileops.atomic_write(
        path,
        registry_to_dict(registry),
        validator=validate_session_registry,
        max_backups=settings.max_backups,
    )
    registry.loaded_checksum = registry.meta.checksum
    return backup


def commit(
    registry: SessionRegistry,
    store: TaskStore | None,
    settings: StoreSettings,
) -> None:
    """Write the registry, then the task store, as one unit.

    Caller must hold both locks and have validated everything beforehand.
    If the task store write fails, sessions.json is put back from the
    backup just taken, so the caller sees neither document updated.
    """
    registry_existed = sessions_path().exists()
    registry_backup = save_session_registry(registry, settings)
    if store is None:
        return
    try:
        save_task_store(store, settings)
    except TaskSessionsError as exc:
        written = _rollback_registry(registry_backup, registry_existed)
        exc.documents_written = written
        raise


def _rollback_registry(backup: Path | None, existed: bool) -> str:
    path = sessions_path()
    try:
        if backup is not None:
            fileops.restore_backup(path, int(backup.name.rsplit(".", 1)[1]))
        elif not existed:
            path.unlink(missing_ok=True)
    except (OSError, TaskSessionsError) as exc:
        logger.error("Could not roll back %s: %s", SESSIONS_FILE, exc)
        return "sessions"
    return "neither"


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


def add_task(
    title: str,
    parent_id: str | None = None,
    phase: str | None = None,
    priority: str = "medium",
) -> Task:
    """Create a pending task. Ids come from a counter and are never reused."""
    title = validate_string_length(title, "title", MAX_TITLE)
    phase = validate_phase(phase)
    prio = validate_priority(priority)
    if parent_id is not None:
        validate_task_id(parent_id)

    settings = load_settings()
    with lock_documents(TODO_FILE, timeout=settings.lock_timeout):
        store = load_task_store()
        if parent_id is not None:
            check_can_add_child(parent_id, store.tasks, settings)

        existing = {t.id for t in store.tasks}
        number = store.meta.next_id
        while format_task_id(number) in existing:
            number += 1
        now = _now_iso()
        task = Task(
            id=format_task_id(number),
            title=title,
            parent_id=parent_id,
            phase=phase,
            priority=prio,
            created_at=now,
            updated_at=now,
        )
        store.tasks.append(task)
        store.meta.next_id = number + 1
        save_task_store(store, settings)

    audit_event("task_created", settings, task_id=task.id, details={"title": title})
    return task


def get_task(task_id: str) -> Task | None:
    validate_task_id(task_id)
    return load_task_store().get(task_id)


def list_tasks(status: str | None = None, phase: str | None = None) -> list[Task]:
    tasks = load_task_store().tasks
    if status is not None:
        tasks = [t for t in tasks if t.status == status]
    if phase is not None:
        tasks = [t for t in tasks if t.phase == phase]
    return tasks


_SETTABLE_STATUSES = {TaskStatus.PENDING, TaskStatus.BLOCKED, TaskStatus.DONE}


def set_task_status(task_id: str, status: str) -> Task:
    """Change a task's status outside a session.

    ``active`` is reserved for session focus and cannot be set here, and
    a task that an active session is focused on is refused.
    """
    validate_task_id(task_id)
    try:
        new_status = TaskStatus(status)
    except ValueError:
        raise InvalidInputError(f"Invalid status '{status}'") from None
    if new_status not in _SETTABLE_STATUSES:
        raise InvalidInputError(
            f"Status '{status}' can only be set through a session focus"
        )

    settings = load_settings()
    with lock_documents(SESSIONS_FILE, TODO_FILE, timeout=settings.lock_timeout):
        store = load_task_store()
        task = store.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        holder = focus_holder(load_session_registry().sessions, task_id)
        if holder is not None:
            raise TaskClaimedError(
                f"Task {task_id} is the focus of session {holder.id}", sessionId=holder.id
            )
        old_status = task.status
        now = _now_iso()
        task.status = new_status
        task.updated_at = now
        task.completed_at = now if new_status == TaskStatus.DONE else None
        save_task_store(store, settings)

    audit_event(
        "status_changed", settings, task_id=task_id,
        details={"from": str(old_status), "to": str(new_status)},
    )
    return task


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------


def _validate_document_name(name: str) -> None:
    if name not in LOCK_ORDER:
        raise InvalidInputError(f"Unknown document '{name}'. Must be one of: {list(LOCK_ORDER)}")



def list_document_backups(name: str) -> list[dict]:
    _validate_document_name(name)
    backups = []
    for number, path in fileops.list_backups(document_path(name)):
        stat = path.stat()
        backups.append({
            "number": number,
            "file": path.name,
            "size": stat.st_size,
            "modified": datetime.fromtimestamp(stat.st_mtime, UTC).isoformat(),
        })
    return backups


def restore_document(name: str, number: int | None = None) -> dict:
    """Restore todo.json or sessions.json from a numbered backup, under its lock.

    The content being replaced is kept as a new backup.
    """
    _validate_document_name(name)
    settings = load_settings()
    with lock_documents(name, timeout=settings.lock_timeout):
        backup = fileops.restore_backup(
            document_path(name), number, max_backups=settings.max_backups
        )
    audit_event("backup_restored", settings, details={"file": name, "backup": backup.name})
    return {"file": name, "restoredFrom": backup.name}


# ---------------------------------------------------------------------------
# Current session pointer
# ---------------------------------------------------------------------------


def get_current_session_id() -> str | None:
    """Session bound to this shell: env var first, then the pointer file."""
    from_env = os.environ.get(SESSION_ENV_VAR, "").strip()
    if from_env:
        return from_env
    path = DATA_DIR / CURRENT_SESSION_FILE
    if path.exists():
        value = path.read_text().strip()
        return value or None
    return None


def set_current_session_id(session_id: str | None) -> None:
    _ensure_dirs()
    path = DATA_DIR / CURRENT_SESSION_FILE
    if session_id is None:
        path.unlink(missing_ok=True)
        return
    validate_session_id(session_id)
    path.write_text(session_id + "\n")
