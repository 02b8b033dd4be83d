"""Scope resolution: turn a scope declaration into the task ids it claims.

``resolve`` is pure: the same task snapshot and declaration always give the
same ordered list. Ordering is root first, then breadth-first by level,
siblings in document order.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Sequence

from .errors import ScopeInvalidError
from .hierarchy import children_index
from .models import PRIORITY_RANK, ScopeDeclaration, ScopeType, Task, TaskStatus


def resolve(tasks: Sequence[Task], scope: ScopeDeclaration) -> list[str]:
    """Resolve ``scope`` against ``tasks``.

    Raises:
        ScopeInvalidError: unknown anchor, missing phase filter, unknown
            custom ids, or an empty result after exclusions.
    """
    known = {t.id for t in tasks}
    if scope.max_depth < 0:
        raise ScopeInvalidError(f"maxDepth must be >= 0 (got {scope.max_depth})")

    if scope.type == ScopeType.CUSTOM:
        ids = _resolve_custom(scope, known)
    else:
        root = scope.root_task_id
        if not root:
            raise ScopeInvalidError(f"Scope type '{scope.type}' requires rootTaskId")
        if root not in known:
            raise ScopeInvalidError(f"Root task {root} does not exist", rootTaskId=root)

        if scope.type == ScopeType.TASK:
            ids = [root]
        elif scope.type == ScopeType.TASK_GROUP:
            ids = [root] + children_index(tasks).get(root, [])
        elif scope.type in (ScopeType.SUBTREE, ScopeType.EPIC):
            ids = _subtree(tasks, root, scope.max_depth)
        elif scope.type == ScopeType.EPIC_PHASE:
            if not scope.phase_filter:
                raise ScopeInvalidError("Scope type 'epicPhase' requires phaseFilter")
            phases = {t.id: t.phase for t in tasks}
            ids = [
                tid for tid in _subtree(tasks, root, scope.max_depth)
                if phases.get(tid) == scope.phase_filter
            ]
        else:
            raise ScopeInvalidError(f"Unknown scope type: {scope.type}")

    excluded = set(scope.exclude_task_ids)
    result = [tid for tid in ids if tid not in excluded]
    if not result:
        raise ScopeInvalidError(
            "Scope is empty - no tasks match criteria",
            scopeType=str(scope.type),
            rootTaskId=scope.root_task_id,
        )
    return result


def _resolve_custom(scope: ScopeDeclaration, known: set[str]) -> list[str]:
    ids = list(dict.fromkeys(scope.task_ids))
    missing = [tid for tid in ids if tid not in known]
    if missing:
        raise ScopeInvalidError(f"Custom scope references unknown tasks: {missing}")
    return ids


def _subtree(tasks: Sequence[Task], root: str, max_depth: int) -> list[str]:
    """Root plus descendants up to ``max_depth`` levels below it.

    The visited set guarantees termination on cyclic parent data.
    """
    children = children_index(tasks)
    visited = {root}
    ordered = [root]
    frontier = deque([(root, 0)])
    while frontier:
        task_id, depth = frontier.popleft()
        if depth >= max_depth:
            continue
        for child in children.get(task_id, []):
            if child in visited:
                continue
            visited.add(child)
            ordered.append(child)
            frontier.append((child, depth + 1))
    return ordered


def auto_select_focus(tasks: Sequence[Task], scope_ids: Sequence[str]) -> str | None:
    """Pick the pending in-scope task with the highest priority.

    Ties go to the earliest createdAt, then to scope order. Returns None
    when no pending task is in scope.
    """
    position = {tid: i for i, tid in enumerate(scope_ids)}
    candidates = [
        t for t in tasks
        if t.id in position and t.status == TaskStatus.PENDING
    ]
    if not candidates:
        return None
    candidates.sort(
        key=lambda t: (-PRIORITY_RANK[t.priority], t.created_at or "", position[t.id])
    )
    return candidates[0].id
