"""Tests for tasksessions/scope.py: scope resolution and auto-focus selection."""

from __future__ import annotations

import pytest

from tasksessions.errors import ScopeInvalidError
from tasksessions.models import Priority, ScopeDeclaration, ScopeType, Task, TaskStatus
from tasksessions.scope import auto_select_focus, resolve


def _task(tid, parent=None, phase=None, status="pending", priority="medium", created=""):
    return Task(
        id=tid, title=tid, parent_id=parent, phase=phase,
        status=TaskStatus(status), priority=Priority(priority), created_at=created,
    )


# T001 epic
#   T002 (core)  -> T004 (core), T005 (ui)
#   T003 (ui)    -> T006 (core)
# T010 standalone leaf
TASKS = [
    _task("T001", phase="core"),
    _task("T002", "T001", phase="core"),
    _task("T003", "T001", phase="ui"),
    _task("T004", "T002", phase="core"),
    _task("T005", "T002", phase="ui"),
    _task("T006", "T003", phase="core"),
    _task("T010"),
]


def scope(type_, root=None, **kwargs):
    return ScopeDeclaration(type=ScopeType(type_), root_task_id=root, **kwargs)


# ---------------------------------------------------------------------------
# resolve
# ---------------------------------------------------------------------------


class TestResolve:
    def test_task(self):
        assert resolve(TASKS, scope("task", "T002")) == ["T002"]

    def test_task_group_is_root_and_direct_children(self):
        assert resolve(TASKS, scope("taskGroup", "T002")) == ["T002", "T004", "T005"]

    def test_subtree_breadth_first(self):
        assert resolve(TASKS, scope("subtree", "T001")) == [
            "T001", "T002", "T003", "T004", "T005", "T006",
        ]

    def test_epic_matches_subtree(self):
        assert resolve(TASKS, scope("epic", "T001")) == resolve(TASKS, scope("subtree", "T001"))

    def test_max_depth_bounds_walk(self):
        assert resolve(TASKS, scope("subtree", "T001", max_depth=1)) == ["T001", "T002", "T003"]
        assert resolve(TASKS, scope("subtree", "T001", max_depth=0)) == ["T001"]

    def test_subtree_of_leaf_is_root_only(self):
        assert resolve(TASKS, scope("subtree", "T010", max_depth=10)) == ["T010"]

    def test_epic_phase_filters(self):
        result = resolve(TASKS, scope("epicPhase", "T001", phase_filter="core"))
        assert result == ["T001", "T002", "T004", "T006"]

    def test_epic_phase_requires_filter(self):
        with pytest.raises(ScopeInvalidError, match="phaseFilter"):
            resolve(TASKS, scope("epicPhase", "T001"))

    def test_epic_phase_with_no_match_is_empty(self):
        with pytest.raises(ScopeInvalidError, match="empty"):
            resolve(TASKS, scope("epicPhase", "T001", phase_filter="docs"))

    def test_custom_keeps_order_and_dedupes(self):
        result = resolve(TASKS, scope("custom", task_ids=["T005", "T001", "T005"]))
        assert result == ["T005", "T001"]

    def test_custom_unknown_ids(self):
        with pytest.raises(ScopeInvalidError, match="unknown tasks"):
            resolve(TASKS, scope("custom", task_ids=["T001", "T099"]))

    def test_exclusions(self):
        result = resolve(TASKS, scope("taskGroup", "T002", exclude_task_ids=["T004"]))
        assert result == ["T002", "T005"]

    def test_excluding_everything_is_empty(self):
        with pytest.raises(ScopeInvalidError, match="empty"):
            resolve(TASKS, scope("task", "T002", exclude_task_ids=["T002"]))

    def test_unknown_root(self):
        with pytest.raises(ScopeInvalidError, match="does not exist"):
            resolve(TASKS, scope("subtree", "T999", max_depth=10))

    def test_missing_root(self):
        with pytest.raises(ScopeInvalidError, match="requires rootTaskId"):
            resolve(TASKS, scope("task"))

    def test_negative_depth(self):
        with pytest.raises(ScopeInvalidError):
            resolve(TASKS, scope("subtree", "T001", max_depth=-1))

    def test_cyclic_parents_terminate(self):
        cyclic = [_task("T001", "T002"), _task("T002", "T001")]
        assert resolve(cyclic, scope("subtree", "T001")) == ["T001", "T002"]

    def test_deterministic(self):
        s = scope("subtree", "T001")
        assert resolve(TASKS, s) == resolve(TASKS, s)


# ---------------------------------------------------------------------------
# auto_select_focus
# ---------------------------------------------------------------------------


class TestAutoSelectFocus:
    def test_highest_priority_wins(self):
        tasks = [
            _task("T001", priority="low", created="1"),
            _task("T002", priority="critical", created="3"),
            _task("T003", priority="high", created="2"),
        ]
        assert auto_select_focus(tasks, ["T001", "T002", "T003"]) == "T002"

    def test_ties_by_created_at(self):
        tasks = [_task("T001", created="2026-02"), _task("T002", created="2026-01")]
        assert auto_select_focus(tasks, ["T001", "T002"]) == "T002"

    def test_ties_by_scope_position(self):
        tasks = [_task("T001"), _task("T002")]
        assert auto_select_focus(tasks, ["T002", "T001"]) == "T002"

    def test_only_pending_considered(self):
        tasks = [
            _task("T001", status="active", priority="critical"),
            _task("T002", status="done", priority="critical"),
            _task("T003", priority="low"),
        ]
        assert auto_select_focus(tasks, ["T001", "T002", "T003"]) == "T003"

    def test_out_of_scope_ignored(self):
        tasks = [_task("T001", priority="critical"), _task("T002")]
        assert auto_select_focus(tasks, ["T002"]) == "T002"

    def test_none_when_nothing_pending(self):
        assert auto_select_focus([_task("T001", status="done")], ["T001"]) is None
