"""Task hierarchy helpers and the depth/sibling policy for new tasks.

Hierarchy levels: epic (depth 0) → task (1) → subtask (2). The parentId
edges are the same ones the scope resolver walks.
"""

from __future__ import annotations

from collections.abc import Iterable

from .errors import HierarchyError, TaskNotFoundError
from .models import StoreSettings, Task, TaskStatus


def children_index(tasks: Iterable[Task]) -> dict[str, list[str]]:
    """Map each parent id to its child ids, in document order."""
    index: dict[str, list[str]] = {}
    for task in tasks:
        if task.parent_id is not None:
            index.setdefault(task.parent_id, []).append(task.id)
    return index


def depth_of(task_id: str, tasks: Iterable[Task]) -> int:
    """Number of ancestors above ``task_id``. Stops on cyclic parent chains."""
    parents = {t.id: t.parent_id for t in tasks}
    if task_id not in parents:
        raise TaskNotFoundError(f"Task {task_id} not found")
    depth = 0
    seen = {task_id}
    current = parents[task_id]
    while current is not None and current in parents and current not in seen:
        seen.add(current)
        depth += 1
        current = parents[current]
    return depth


def check_can_add_child(
    parent_id: str, tasks: list[Task], settings: StoreSettings
) -> None:
    """Raise HierarchyError unless ``parent_id`` may accept another child."""
    by_id = {t.id: t for t in tasks}
    if parent_id not in by_id:
        raise HierarchyError(f"Parent task {parent_id} does not exist")

    child_depth = depth_of(parent_id, tasks) + 1
    if child_depth >= settings.hierarchy_max_depth:
        raise HierarchyError(
            f"Cannot add child to {parent_id}: max depth "
            f"{settings.hierarchy_max_depth} would be exceeded",
            parent=parent_id,
        )

    if settings.hierarchy_max_siblings > 0:
        open_children = [
            child_id
            for child_id in children_index(tasks).get(parent_id, [])
            if by_id[child_id].status != TaskStatus.DONE
        ]
        if len(open_children) >= settings.hierarchy_max_siblings:
            raise HierarchyError(
                f"Cannot add child to {parent_id}: already has "
                f"{len(open_children)} open children "
                f"(max {settings.hierarchy_max_siblings})",
                parent=parent_id,
            )
