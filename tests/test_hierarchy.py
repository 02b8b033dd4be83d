"""Tests for tasksessions/hierarchy.py: parent/child index and add-child policy."""

from __future__ import annotations

import pytest

from tasksessions.errors import HierarchyError, TaskNotFoundError
from tasksessions.hierarchy import (
    check_can_add_child,
    children_index,
    depth_of,
)
from tasksessions.models import StoreSettings, Task, TaskStatus


def _tasks(*pairs, done=()):
    return [
        Task(id=tid, title=tid, parent_id=parent,
             status=TaskStatus.DONE if tid in done else TaskStatus.PENDING)
        for tid, parent in pairs
    ]


TREE = _tasks(("T001", None), ("T002", "T001"), ("T003", "T002"), ("T004", "T001"))


class TestChildrenIndex:
    def test_document_order(self):
        assert children_index(TREE) == {"T001": ["T002", "T004"], "T002": ["T003"]}

    def test_leaf_has_no_entry(self):
        assert "T003" not in children_index(TREE)


class TestDepth:
    def test_depths(self):
        assert depth_of("T001", TREE) == 0
        assert depth_of("T002", TREE) == 1
        assert depth_of("T003", TREE) == 2

    def test_unknown_task(self):
        with pytest.raises(TaskNotFoundError):
            depth_of("T999", TREE)

    def test_cycle_terminates(self):
        cyclic = _tasks(("T001", "T002"), ("T002", "T001"))
        assert depth_of("T001", cyclic) == 1


class TestCheckCanAddChild:
    def test_allowed(self):
        check_can_add_child("T002", TREE, StoreSettings())

    def test_missing_parent(self):
        with pytest.raises(HierarchyError, match="does not exist"):
            check_can_add_child("T999", TREE, StoreSettings())

    def test_depth_limit(self):
        with pytest.raises(HierarchyError, match="max depth"):
            check_can_add_child("T003", TREE, StoreSettings())

    def test_sibling_limit(self):
        settings = StoreSettings(hierarchy_max_siblings=2)
        with pytest.raises(HierarchyError, match="open children"):
            check_can_add_child("T001", TREE, settings)

    def test_done_children_do_not_count(self):
        tasks = _tasks(("T001", None), ("T002", "T001"), ("T004", "T001"), done={"T004"})
        check_can_add_child("T001", tasks, StoreSettings(hierarchy_max_siblings=2))

    def test_zero_siblings_means_unlimited(self):
        check_can_add_child("T001", TREE, StoreSettings(hierarchy_max_siblings=0))
