"""Tests for tasksessions/models.py: enums, IDs, and camelCase (de)serialization."""

from __future__ import annotations

import re

from tasksessions.models import (
    PRIORITY_RANK,
    ConflictKind,
    Priority,
    ScopeDeclaration,
    ScopeType,
    Session,
    SessionFocus,
    SessionHistoryEntry,
    SessionRegistry,
    SessionStats,
    SessionStatus,
    Task,
    TaskStatus,
    format_task_id,
    generate_session_id,
    history_from_dict,
    history_to_dict,
    registry_from_dict,
    registry_to_dict,
    session_from_dict,
    session_to_dict,
    task_from_dict,
    task_store_from_dict,
    task_store_to_dict,
    task_to_dict,
)


# --- StrEnums ---


class TestEnums:
    def test_task_status_values(self):
        assert {str(s) for s in TaskStatus} == {"pending", "active", "blocked", "done"}

    def test_scope_type_uses_camel_case(self):
        assert ScopeType("taskGroup") is ScopeType.TASK_GROUP
        assert ScopeType("epicPhase") is ScopeType.EPIC_PHASE

    def test_conflict_kinds(self):
        assert ConflictKind.HARD == "hard"
        assert isinstance(ConflictKind.NONE, str)

    def test_priority_rank_order(self):
        ranked = sorted(Priority, key=lambda p: -PRIORITY_RANK[p])
        assert ranked == [Priority.CRITICAL, Priority.HIGH, Priority.MEDIUM, Priority.LOW]


# --- IDs ---


class TestIds:
    ID_PATTERN = re.compile(r"^session_\d{8}_\d{6}_[0-9a-f]{6}$")

    def test_session_id_format(self):
        sid = generate_session_id()
        assert self.ID_PATTERN.match(sid), f"ID format mismatch: {sid}"

    def test_session_id_uniqueness(self):
        ids = {generate_session_id() for _ in range(50)}
        assert len(ids) == 50

    def test_format_task_id(self):
        assert format_task_id(1) == "T001"
        assert format_task_id(42) == "T042"
        assert format_task_id(1234) == "T1234"


# --- Tasks ---


class TestTaskSerialization:
    def test_to_dict_uses_camel_case(self):
        task = Task(id="T001", title="Build", parent_id="T000", created_at="x", updated_at="y")
        data = task_to_dict(task)
        assert data["parentId"] == "T000"
        assert data["createdAt"] == "x"
        assert "completedAt" not in data

    def test_from_dict_defaults(self):
        task = task_from_dict({"id": "T005"})
        assert task.status is TaskStatus.PENDING
        assert task.priority is Priority.MEDIUM
        assert task.parent_id is None

    def test_store_records_loaded_checksum(self):
        store = task_store_from_dict({
            "_meta": {"checksum": "abc123", "activeSessionCount": 2, "nextId": 7},
            "tasks": [{"id": "T001", "title": "a", "status": "active"}],
        })
        assert store.loaded_checksum == "abc123"
        assert store.meta.active_session_count == 2
        assert store.meta.next_id == 7
        assert store.get("T001").status is TaskStatus.ACTIVE
        assert store.get("T999") is None

    def test_unmanaged_keys_are_kept(self):
        doc = {
            "version": "1.0.0",
            "focus": {"currentTask": "T001"},
            "_meta": {"checksum": "", "schemaHash": "h1"},
            "tasks": [{"id": "T001", "title": "a", "status": "pending", "labels": ["api"]}],
        }
        data = task_store_to_dict(task_store_from_dict(doc))
        assert data["focus"] == {"currentTask": "T001"}
        assert data["_meta"]["schemaHash"] == "h1"
        assert data["tasks"][0]["labels"] == ["api"]

    def test_managed_fields_win_over_extra(self):
        task = Task(id="T001", title="a", status=TaskStatus.DONE,
                    extra={"status": "pending", "notes": "n"})
        data = task_to_dict(task)
        assert data["status"] == "done"
        assert data["notes"] == "n"


# --- Sessions ---


def _session() -> Session:
    return Session(
        id="session_20260101_120000_abcdef",
        status=SessionStatus.SUSPENDED,
        scope=ScopeDeclaration(
            type=ScopeType.EPIC_PHASE,
            root_task_id="T001",
            phase_filter="core",
            exclude_task_ids=["T003"],
            computed_task_ids=["T001", "T002"],
        ),
        name="Auth work",
        agent_id="agent-1",
        focus=SessionFocus(
            current_task="T002",
            session_note="halfway",
            focus_history=[{"taskId": "T002", "timestamp": "t", "action": "focused"}],
        ),
        stats=SessionStats(focus_changes=1, suspend_count=1),
        started_at="2026-01-01T12:00:00+00:00",
        suspended_at="2026-01-01T13:00:00+00:00",
    )


class TestSessionSerialization:
    def test_session_to_dict_shape(self):
        data = session_to_dict(_session())
        assert data["agentId"] == "agent-1"
        assert data["scope"]["phaseFilter"] == "core"
        assert data["scope"]["computedTaskIds"] == ["T001", "T002"]
        assert data["focus"]["currentTask"] == "T002"
        assert data["stats"]["suspendCount"] == 1

    def test_session_survives_reload(self):
        original = _session()
        assert session_from_dict(session_to_dict(original)) == original

    def test_history_entry(self):
        entry = SessionHistoryEntry(
            id="session_20260101_120000_abcdef",
            scope_type=ScopeType.TASK,
            root_task_id="T001",
            computed_task_ids=["T001"],
            started_at="a",
            ended_at="b",
            stats=SessionStats(tasks_completed=2),
            last_focus="T001",
        )
        data = history_to_dict(entry)
        assert data["scopeType"] == "task"
        assert data["lastFocus"] == "T001"
        assert history_from_dict(data) == entry


class TestRegistrySerialization:
    def test_empty_document_gets_default_policy(self):
        registry = registry_from_dict({})
        assert registry.config.max_concurrent_sessions == 5
        assert registry.config.allow_nested_scopes is True
        assert registry.config.allow_scope_overlap is False
        assert registry.sessions == []

    def test_uses_session_history_key(self):
        registry = SessionRegistry(sessions=[_session()])
        data = registry_to_dict(registry)
        assert "sessionHistory" in data
        assert data["config"]["maxConcurrentSessions"] == 5

    def test_active_filters_suspended(self):
        registry = SessionRegistry(sessions=[_session()])
        assert registry.active() == []
        assert registry.get("session_20260101_120000_abcdef") is not None
