"""Error taxonomy shared by the store, lifecycle manager, CLI and web view.

Every error carries a stable ``code`` string and a numeric ``exit_code``.
``recoverable`` errors may be retried wholesale (see ``retry.py``).
``documents_written`` tells the caller which document was durably
updated; for rejected operations that is always "neither".
"""

from __future__ import annotations


class TaskSessionsError(Exception):
    code = "ERROR"
    exit_code = 1
    recoverable = False

    def __init__(self, message: str, documents_written: str = "neither", **details):
        super().__init__(message)
        self.message = message
        self.documents_written = documents_written
        self.details = details

    def to_dict(self) -> dict:
        data = {
            "error": self.message,
            "code": self.code,
            "recoverable": self.recoverable,
            "documentsWritten": self.documents_written,
        }
        if self.details:
            data["details"] = self.details
        return data


class InvalidInputError(TaskSessionsError, ValueError):
    code = "INVALID_INPUT"
    exit_code = 2


# ---------------------------------------------------------------------------
# Structural
# ---------------------------------------------------------------------------


class WriteFailedError(TaskSessionsError):
    code = "WRITE_FAILED"
    exit_code = 3


class BackupFailedError(TaskSessionsError):
    code = "BACKUP_FAILED"
    exit_code = 4


class ValidationFailedError(TaskSessionsError):
    code = "VALIDATION_FAILED"
    exit_code = 5

    def __init__(self, message: str, reasons: list[str] | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.reasons = reasons or []
        if self.reasons:
            self.details["reasons"] = self.reasons


class ChecksumMismatchError(TaskSessionsError):
    code = "CHECKSUM_MISMATCH"
    exit_code = 6
    recoverable = True


class LockTimeoutError(TaskSessionsError):
    code = "LOCK_TIMEOUT"
    exit_code = 7
    recoverable = True


class ParseFailedError(TaskSessionsError):
    code = "PARSE_FAILED"
    exit_code = 8


class TaskNotFoundError(TaskSessionsError):
    code = "TASK_NOT_FOUND"
    exit_code = 9


class HierarchyError(TaskSessionsError):
    code = "HIERARCHY_VIOLATION"
    exit_code = 10


# ---------------------------------------------------------------------------
# Sessions (30-39)
# ---------------------------------------------------------------------------


class SessionExistsError(TaskSessionsError):
    """A freshly generated session id collided with a live session."""

    code = "SESSION_EXISTS"
    exit_code = 30
    recoverable = True


class SessionNotFoundError(TaskSessionsError):
    code = "SESSION_NOT_FOUND"
    exit_code = 31


class ScopeConflictError(TaskSessionsError):
    code = "SCOPE_CONFLICT"
    exit_code = 32


class ScopeInvalidError(TaskSessionsError, ValueError):
    code = "SCOPE_INVALID"
    exit_code = 33


class FocusNotInScopeError(TaskSessionsError):
    code = "FOCUS_NOT_IN_SCOPE"
    exit_code = 34


class TaskClaimedError(TaskSessionsError):
    code = "TASK_CLAIMED"
    exit_code = 35


class SessionWrongStateError(TaskSessionsError):
    code = "SESSION_WRONG_STATE"
    exit_code = 36


class MaxSessionsError(TaskSessionsError):
    code = "MAX_SESSIONS"
    exit_code = 37


class FocusRequiredError(TaskSessionsError):
    code = "FOCUS_REQUIRED"
    exit_code = 38


class NotInitializedError(TaskSessionsError):
    code = "NOT_INITIALIZED"
    exit_code = 11
