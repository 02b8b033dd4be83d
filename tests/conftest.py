"""Shared fixtures for task session tests."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure the project root is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from tasksessions import store  # noqa: E402
from tasksessions.models import Priority, Task, TaskStatus  # noqa: E402


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    """Point the store at an empty data directory under tmp_path."""
    path = tmp_path / ".tasks"
    monkeypatch.setattr(store, "DATA_DIR", path)
    monkeypatch.delenv(store.SESSION_ENV_VAR, raising=False)
    return path


@pytest.fixture
def seed_tasks(data_dir):
    """Initialize the project and write the given tasks straight into todo.json.

    Each entry is ``(id, parent_id)`` or ``(id, parent_id, dict_of_overrides)``.
    """

    def _seed(*entries):
        store.init_project("test-project")
        todo = store.load_task_store()
        todo.tasks = []
        for i, entry in enumerate(entries):
            task_id, parent_id = entry[0], entry[1]
            extra = entry[2] if len(entry) > 2 else {}
            todo.tasks.append(Task(
                id=task_id,
                title=extra.get("title", f"Task {task_id}"),
                status=TaskStatus(extra.get("status", "pending")),
                parent_id=parent_id,
                phase=extra.get("phase"),
                priority=Priority(extra.get("priority", "medium")),
                created_at=extra.get("created_at", f"2026-01-01T00:00:{i:02d}+00:00"),
                updated_at=extra.get("created_at", f"2026-01-01T00:00:{i:02d}+00:00"),
            ))
        todo.meta.next_id = max(int(e[0][1:]) for e in entries) + 1 if entries else 1
        store.save_task_store(todo)
        return todo

    return _seed
