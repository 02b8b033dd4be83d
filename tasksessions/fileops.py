"""Atomic file operations: advisory locks, validated writes, numbered backups.

Every write to a shared document goes through ``atomic_write``: the new
content is staged in a temp file next to the target, checked, the current
content is copied to a numbered backup, and only then is the temp file
swapped in with ``os.replace``. Readers therefore see either the old or the
new document, never a partial one.

Locks are ``fcntl.flock`` locks on a sidecar ``<file>.lock``. The data file
itself cannot be locked because ``os.replace`` swaps its inode.
"""

from __future__ import annotations

import errno
import fcntl
import hashlib
import json
import logging
import os
import random
import shutil
import tempfile
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path

from .errors import (
    BackupFailedError,
    LockTimeoutError,
    ParseFailedError,
    TaskSessionsError,
    ValidationFailedError,
    WriteFailedError,
)

logger = logging.getLogger(__name__)

BACKUP_DIRNAME = ".backups"
MAX_BACKUPS = 10
MAX_JSON_FILE_SIZE = 10 * 1024 * 1024  # 10 MB

# Polling interval bounds while waiting for a busy lock
_LOCK_POLL_INITIAL = 0.01
_LOCK_POLL_MAX = 0.5

Validator = Callable[[dict], list[str]]


# ---------------------------------------------------------------------------
# Locking
# ---------------------------------------------------------------------------


@dataclass
class LockHandle:
    path: Path
    fd: object | None

    @property
    def held(self) -> bool:
        return self.fd is not None


def lock_path_for(path: Path) -> Path:
    return path.with_name(path.name + ".lock")


def acquire_lock(path: Path, timeout: float) -> LockHandle:
    """Take an exclusive lock on ``path``, waiting at most ``timeout`` seconds.

    Raises:
        LockTimeoutError: if the lock is still held elsewhere at the deadline.
    """
    lock_path = lock_path_for(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_fd = open(lock_path, "a")
    deadline = time.monotonic() + timeout
    delay = _LOCK_POLL_INITIAL
    attempts = 0
    while True:
        attempts += 1
        try:
            fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            logger.debug("Acquired lock %s after %d attempt(s)", lock_path.name, attempts)
            return LockHandle(path=path, fd=lock_fd)
        except OSError as exc:
            if exc.errno not in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                lock_fd.close()
                raise
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            lock_fd.close()
            raise LockTimeoutError(
                f"Timed out after {timeout:.1f}s waiting for lock on {path.name}",
                file=path.name,
            )
        # Jittered exponential backoff, never sleeping past the deadline
        time.sleep(min(delay * random.uniform(0.5, 1.0), remaining))
        delay = min(delay * 2, _LOCK_POLL_MAX)


def release_lock(handle: LockHandle) -> None:
    """Release a lock taken by ``acquire_lock``. Safe to call twice."""
    if handle.fd is None:
        return
    try:
        fcntl.flock(handle.fd, fcntl.LOCK_UN)
    finally:
        handle.fd.close()
        handle.fd = None
        logger.debug("Released lock %s", handle.path.name)


@contextmanager
def file_lock(path: Path, timeout: float) -> Iterator[LockHandle]:
    handle = acquire_lock(path, timeout)
    try:
        yield handle
    finally:
        release_lock(handle)


@contextmanager
def lock_documents(
    paths: Sequence[Path], timeout: float, order: Sequence[str] = ()
) -> Iterator[list[LockHandle]]:
    """Lock several documents in the global lock order.

    ``order`` lists file names by lock rank; paths are sorted by it whatever
    order the caller passed them in. Names missing from ``order`` go last,
    by name. Locks are released in reverse acquisition order on every exit
    path, including a timeout on a later lock.
    """
    rank = {name: i for i, name in enumerate(order)}
    ordered = sorted(paths, key=lambda p: (rank.get(p.name, len(rank)), p.name))
    with ExitStack() as stack:
        handles = []
        for path in ordered:
            handles.append(stack.enter_context(file_lock(path, timeout)))
        yield handles


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


def safe_read_json(path: Path) -> dict:
    """Read and parse a JSON file with size limit and symlink rejection.

    Uses O_NOFOLLOW to atomically reject symlinks (no TOCTOU race).

    Raises:
        FileNotFoundError: if the file does not exist.
        ParseFailedError: if the file is a symlink, too large, or not JSON.
    """
    try:
        fd = os.open(path, os.O_RDONLY | os.O_NOFOLLOW)
    except OSError as e:
        if e.errno in (errno.ELOOP, errno.EMLINK):
            raise ParseFailedError(f"Refusing to read symlink: {path.name}") from e
        raise
    size = os.fstat(fd).st_size
    if size > MAX_JSON_FILE_SIZE:
        os.close(fd)
        raise ParseFailedError(
            f"File too large: {path.name} ({size} bytes, max {MAX_JSON_FILE_SIZE})"
        )
    with os.fdopen(fd) as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ParseFailedError(f"Invalid JSON in {path.name}: {e}") from e
    if not isinstance(data, dict):
        raise ParseFailedError(f"Expected a JSON object in {path.name}")
    return data


def compute_checksum(value: object) -> str:
    """SHA-256 of the compact JSON form, truncated to 16 hex chars."""
    payload = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------


def backup_dir_for(path: Path) -> Path:
    return path.parent / BACKUP_DIRNAME


def list_backups(path: Path) -> list[tuple[int, Path]]:
    """Return ``(number, backup_path)`` pairs for ``path``, oldest first."""
    backup_dir = backup_dir_for(path)
    if not backup_dir.is_dir():
        return []
    prefix = path.name + "."
    backups = []
    for candidate in backup_dir.glob(f"{path.name}.*"):
        suffix = candidate.name[len(prefix):]
        if suffix.isdigit() and candidate.is_file():
            backups.append((int(suffix), candidate))
    backups.sort()
    return backups


def rotate_backups(path: Path, max_backups: int) -> list[Path]:
    """Delete the oldest backups of ``path`` beyond ``max_backups``."""
    backups = list_backups(path)
    excess = len(backups) - max_backups
    removed = []
    for _, backup in backups[: max(excess, 0)]:
        try:
            backup.unlink()
            removed.append(backup)
        except OSError as exc:
            logger.warning("Failed to remove old backup %s: %s", backup.name, exc)
    return removed


def create_backup(path: Path, max_backups: int = MAX_BACKUPS) -> Path:
    """Copy ``path`` to the next numbered backup, then enforce the cap."""
    backups = list_backups(path)
    number = backups[-1][0] + 1 if backups else 1
    backup_dir = backup_dir_for(path)
    backup = backup_dir / f"{path.name}.{number}"
    try:
        backup_dir.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, backup)
        os.chmod(backup, 0o600)
    except OSError as exc:
        raise BackupFailedError(f"Failed to back up {path.name}: {exc}") from exc
    rotate_backups(path, max_backups)
    return backup


def restore_backup(
    path: Path, number: int | None = None, max_backups: int | None = None
) -> Path:
    """Swap a backup in over ``path``. Defaults to the most recent backup.

    The backup must parse as JSON before anything is overwritten. It is
    staged next to ``path`` and moved in with ``os.replace``, so readers
    see either the old document or the restored one. When ``max_backups``
    is given the current content is backed up first.
    """
    backups = dict(list_backups(path))
    if not backups:
        raise BackupFailedError(f"No backups found for {path.name}")
    if number is None:
        number = max(backups)
    backup = backups.get(number)
    if backup is None:
        raise BackupFailedError(f"Backup {number} not found for {path.name}")
    safe_read_json(backup)

    tmp_fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".restore"
    )
    os.close(tmp_fd)
    tmp_path = Path(tmp_name)
    try:
        try:
            shutil.copyfile(backup, tmp_path)
        except OSError as exc:
            raise WriteFailedError(
                f"Failed to stage {backup.name} for restore: {exc}"
            ) from exc
        # Stage first: rotation below may delete the source backup
        if max_backups is not None and path.exists():
            create_backup(path, max_backups)
        try:
            os.replace(tmp_path, path)
        except OSError as exc:
            raise WriteFailedError(
                f"Failed to restore {path.name} from {backup.name}: {exc}"
            ) from exc
    finally:
        if tmp_path.exists():
            tmp_path.unlink()
    logger.info("Restored %s from %s", path.name, backup.name)
    return backup


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------


def atomic_write(
    path: Path,
    data: dict,
    validator: Validator | None = None,
    max_backups: int = MAX_BACKUPS,
) -> Path | None:
    """Write JSON atomically: stage, validate, back up, swap.

    Returns the backup path made for the previous content, or None when
    the target did not exist yet.

    Raises:
        ValidationFailedError: staged content is empty, not JSON, or rejected
            by ``validator``. The target is untouched.
        BackupFailedError: the rollback point could not be created. The
            target is untouched.
        WriteFailedError: staging or the final replace failed. On a failed
            replace the just-made backup is copied back onto the target.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
    )
    tmp_path = Path(tmp_name)
    backup: Path | None = None
    try:
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
        except (OSError, TypeError, ValueError) as exc:
            raise WriteFailedError(f"Failed to stage {path.name}: {exc}") from exc

        _validate_staged(tmp_path, path, validator)

        if path.exists():
            backup = create_backup(path, max_backups)

        try:
            os.replace(tmp_path, path)
        except OSError as exc:
            if backup is not None:
                logger.error("Replace of %s failed, restoring %s", path.name, backup.name)
                try:
                    shutil.copy2(backup, path)
                except OSError as restore_exc:
                    logger.error("Rollback of %s failed: %s", path.name, restore_exc)
            raise WriteFailedError(f"Failed to replace {path.name}: {exc}") from exc
    finally:
        if tmp_path.exists():
            tmp_path.unlink()
    return backup


def _validate_staged(tmp_path: Path, path: Path, validator: Validator | None) -> None:
    if tmp_path.stat().st_size == 0:
        raise ValidationFailedError(f"Staged content for {path.name} is empty")
    try:
        staged = safe_read_json(tmp_path)
    except TaskSessionsError as exc:
        raise ValidationFailedError(
            f"Staged content for {path.name} is not valid JSON: {exc}"
        ) from exc
    if validator is not None:
        reasons = validator(staged)
        if reasons:
            raise ValidationFailedError(
                f"Refusing to write invalid {path.name}", reasons=reasons
            )
