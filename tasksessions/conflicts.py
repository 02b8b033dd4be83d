"""Scope conflict detection between a candidate claim and live sessions."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from .errors import ScopeConflictError, TaskClaimedError
from .models import ConflictKind, ConflictVerdict, Session, SessionPolicy, SessionStatus

logger = logging.getLogger(__name__)


def detect(
    sessions: Iterable[Session],
    candidate_ids: Sequence[str],
    candidate_focus_id: str | None,
    exclude_session_id: str | None = None,
) -> ConflictVerdict:
    """Classify how ``candidate_ids`` collides with the active sessions.

    Sessions are checked in registry order and the first match wins.
    Suspended sessions never conflict. The HARD rule fires on a shared
    focus task whatever the overlap size.
    """
    candidate = list(dict.fromkeys(candidate_ids))
    candidate_set = set(candidate)

    for session in sessions:
        if session.status != SessionStatus.ACTIVE or session.id == exclude_session_id:
            continue

        current = session.focus.current_task
        existing = set(session.scope.computed_task_ids)
        overlap = [tid for tid in candidate if tid in existing]

        if candidate_focus_id is not None and candidate_focus_id == current:
            return ConflictVerdict(
                kind=ConflictKind.HARD,
                session_id=session.id,
                overlap=overlap,
                message=f"Task {current} already focused by session {session.id}",
            )

        if not overlap:
            continue

        if len(overlap) == len(candidate_set) and len(overlap) == len(existing):
            kind = ConflictKind.IDENTICAL
        elif len(overlap) == len(candidate_set) or len(overlap) == len(existing):
            kind = ConflictKind.NESTED
        else:
            kind = ConflictKind.PARTIAL
        return ConflictVerdict(kind=kind, session_id=session.id, overlap=overlap)

    return ConflictVerdict(kind=ConflictKind.NONE)


def apply_policy(verdict: ConflictVerdict, policy: SessionPolicy) -> list[str]:
    """Reject blocked verdicts, return warnings for tolerated ones."""
    sid = verdict.session_id
    details = {"sessionId": sid, "overlap": verdict.overlap, "conflict": str(verdict.kind)}

    if verdict.kind == ConflictKind.NONE:
        return []
    if verdict.kind == ConflictKind.HARD:
        raise TaskClaimedError(f"HARD conflict - {verdict.message}", **details)
    if verdict.kind == ConflictKind.IDENTICAL:
        raise ScopeConflictError(f"Scope identical to session {sid}", **details)
    if verdict.kind == ConflictKind.NESTED:
        if not policy.allow_nested_scopes:
            raise ScopeConflictError(
                f"Scope nested within session {sid} (allowNestedScopes=false)", **details
            )
        warning = f"Scope nested with session {sid}"
    else:
        if not policy.allow_scope_overlap:
            raise ScopeConflictError(
                f"Scope overlaps with session {sid} (allowScopeOverlap=false)", **details
            )
        warning = f"Scope overlaps with session {sid}"

    logger.warning("%s: %s", warning, ", ".join(verdict.overlap))
    return [warning]


def focus_holder(
    sessions: Iterable[Session], task_id: str, exclude_session_id: str | None = None
) -> Session | None:
    """Return the active session currently focused on ``task_id``, if any."""
    for session in sessions:
        if (
            session.status == SessionStatus.ACTIVE
            and session.id != exclude_session_id
            and session.focus.current_task == task_id
        ):
            return session
    return None
