"""Tests for tasksessions/conflicts.py: verdict classification and policy."""

from __future__ import annotations

import pytest

from tasksessions.conflicts import apply_policy, detect, focus_holder
from tasksessions.errors import ScopeConflictError, TaskClaimedError
from tasksessions.models import (
    ConflictKind,
    ScopeDeclaration,
    ScopeType,
    Session,
    SessionFocus,
    SessionPolicy,
    SessionStatus,
)


def _session(sid, computed, focus=None, status=SessionStatus.ACTIVE):
    return Session(
        id=sid,
        status=status,
        scope=ScopeDeclaration(type=ScopeType.CUSTOM, computed_task_ids=list(computed)),
        focus=SessionFocus(current_task=focus),
    )


# ---------------------------------------------------------------------------
# detect
# ---------------------------------------------------------------------------


class TestDetect:
    def test_no_sessions(self):
        assert detect([], ["T001"], "T001").kind is ConflictKind.NONE

    def test_disjoint(self):
        verdict = detect([_session("a", ["T001"], "T001")], ["T002"], "T002")
        assert verdict.kind is ConflictKind.NONE
        assert verdict.session_id is None

    def test_hard_on_shared_focus(self):
        verdict = detect([_session("a", ["T020"], "T020")], ["T020"], "T020")
        assert verdict.kind is ConflictKind.HARD
        assert verdict.session_id == "a"
        assert "T020" in verdict.message

    def test_identical(self):
        verdict = detect([_session("a", ["T001", "T002"], "T001")], ["T002", "T001"], "T002")
        assert verdict.kind is ConflictKind.IDENTICAL
        assert verdict.overlap == ["T002", "T001"]

    def test_nested_candidate_inside(self):
        verdict = detect([_session("a", ["T001", "T002", "T003"], "T001")], ["T002"], "T002")
        assert verdict.kind is ConflictKind.NESTED
        assert verdict.overlap == ["T002"]

    def test_nested_candidate_contains(self):
        verdict = detect([_session("a", ["T002"], "T002")], ["T001", "T002", "T003"], "T001")
        assert verdict.kind is ConflictKind.NESTED

    def test_partial(self):
        verdict = detect([_session("a", ["T001", "T002"], "T001")], ["T002", "T003"], "T003")
        assert verdict.kind is ConflictKind.PARTIAL
        assert verdict.overlap == ["T002"]

    def test_suspended_sessions_ignored(self):
        suspended = _session("a", ["T001"], "T001", status=SessionStatus.SUSPENDED)
        assert detect([suspended], ["T001"], "T001").kind is ConflictKind.NONE

    def test_first_match_wins(self):
        sessions = [_session("a", ["T005"], "T005"), _session("b", ["T001", "T002"], "T001"),
                    _session("c", ["T002"], "T002")]
        verdict = detect(sessions, ["T002", "T003"], "T003")
        assert verdict.session_id == "b"
        assert verdict.kind is ConflictKind.PARTIAL

    def test_hard_beats_overlap_rules(self):
        # Shared focus is HARD even when the scopes are otherwise identical
        verdict = detect([_session("a", ["T001", "T002"], "T001")], ["T001", "T002"], "T001")
        assert verdict.kind is ConflictKind.HARD

    def test_excluded_session_skipped(self):
        verdict = detect([_session("a", ["T001"], "T001")], ["T001"], "T001", exclude_session_id="a")
        assert verdict.kind is ConflictKind.NONE


# ---------------------------------------------------------------------------
# apply_policy
# ---------------------------------------------------------------------------


def _verdict(kind):
    return detect(
        {
            ConflictKind.HARD: [_session("a", ["T001"], "T001")],
            ConflictKind.IDENTICAL: [_session("a", ["T001"], "T009")],
            ConflictKind.NESTED: [_session("a", ["T001", "T002"], "T009")],
            ConflictKind.PARTIAL: [_session("a", ["T001", "T003"], "T009")],
        }[kind],
        ["T001", "T002"] if kind is ConflictKind.PARTIAL else ["T001"],
        "T001",
    )


class TestApplyPolicy:
    def test_none_has_no_warnings(self):
        assert apply_policy(detect([], ["T001"], "T001"), SessionPolicy()) == []

    def test_hard_always_rejected(self):
        with pytest.raises(TaskClaimedError) as exc_info:
            apply_policy(_verdict(ConflictKind.HARD), SessionPolicy(allow_scope_overlap=True))
        assert exc_info.value.details["sessionId"] == "a"

    def test_identical_rejected(self):
        with pytest.raises(ScopeConflictError, match="identical"):
            apply_policy(_verdict(ConflictKind.IDENTICAL), SessionPolicy())

    def test_nested_allowed_by_default(self):
        warnings = apply_policy(_verdict(ConflictKind.NESTED), SessionPolicy())
        assert warnings and "nested" in warnings[0]

    def test_nested_rejected_when_disabled(self):
        with pytest.raises(ScopeConflictError, match="nested"):
            apply_policy(_verdict(ConflictKind.NESTED), SessionPolicy(allow_nested_scopes=False))

    def test_partial_rejected_by_default(self):
        with pytest.raises(ScopeConflictError, match="overlaps") as exc_info:
            apply_policy(_verdict(ConflictKind.PARTIAL), SessionPolicy())
        assert exc_info.value.details["overlap"] == ["T001"]

    def test_partial_allowed_when_enabled(self):
        warnings = apply_policy(_verdict(ConflictKind.PARTIAL), SessionPolicy(allow_scope_overlap=True))
        assert warnings


class TestFocusHolder:
    def test_finds_active_holder(self):
        sessions = [_session("a", ["T001"], "T001")]
        assert focus_holder(sessions, "T001").id == "a"

    def test_ignores_suspended_and_excluded(self):
        sessions = [
            _session("a", ["T001"], "T001", status=SessionStatus.SUSPENDED),
            _session("b", ["T001"], "T001"),
        ]
        assert focus_holder(sessions, "T001", exclude_session_id="b") is None
