#!/usr/bin/env python3
"""CLI entry point for task store and session operations.

Usage:
    python manage.py <command> [options]

All output is JSON on stdout; logs go to stderr. Failures print the
error as JSON and exit with the error's numeric code.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

# Add parent dir to path so `from tasksessions import ...` works
sys.path.insert(0, str(Path(__file__).parent))

from tasksessions import audit, sessions, store
from tasksessions.errors import (
    InvalidInputError,
    SessionNotFoundError,
    TaskNotFoundError,
    TaskSessionsError,
)
from tasksessions.models import (
    DEFAULT_MAX_DEPTH,
    ScopeType,
    SessionStatus,
    TaskStatus,
    history_to_dict,
    session_to_dict,
    task_to_dict,
)
from tasksessions.retry import RetryPolicy, run_with_retry
from tasksessions.validation import validate_port

LOG_LEVEL_ENV_VAR = "TASKSESSIONS_LOG_LEVEL"


def _add_session_arg(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "session_id", nargs="?",
        help=f"Session ID (default: ${store.SESSION_ENV_VAR} or the current-session file)",
    )


def _add_scope_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--scope", dest="scope_type", required=True, choices=[str(t) for t in ScopeType])
    p.add_argument("--root", dest="root_task_id", help="Root task ID")
    p.add_argument("--phase", help="Phase filter (epicPhase scopes)")
    p.add_argument("--max-depth", type=int, default=DEFAULT_MAX_DEPTH)
    p.add_argument("--exclude", nargs="*", default=[], help="Task IDs to leave out")
    p.add_argument("--task-ids", nargs="*", default=[], help="Task IDs (custom scopes)")


def main() -> None:
    parser = argparse.ArgumentParser(description="Multi-session task manager")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="-v info, -vv debug")
    sub = parser.add_subparsers(dest="command")

    # --- Store commands ---
    p = sub.add_parser("init", help="Create the data directory and documents")
    p.add_argument("--project", help="Project name (default: parent directory name)")

    p = sub.add_parser("add-task", help="Add a pending task")
    p.add_argument("--title", required=True)
    p.add_argument("--parent", dest="parent_id", help="Parent task ID")
    p.add_argument("--phase")
    p.add_argument("--priority", default="medium", choices=["critical", "high", "medium", "low"])

    p = sub.add_parser("list-tasks", help="List tasks")
    p.add_argument("--status", choices=[str(s) for s in TaskStatus])
    p.add_argument("--phase")

    p = sub.add_parser("get-task", help="Get task details")
    p.add_argument("task_id")

    p = sub.add_parser("set-task-status", help="Set a task status outside a session")
    p.add_argument("task_id")
    p.add_argument("--status", required=True, choices=["pending", "blocked", "done"])

    # --- Session lifecycle ---
    p = sub.add_parser("start-session", help="Start a session on a scope")
    _add_scope_args(p)
    p.add_argument("--focus", dest="focus_id", help="Focus task ID (default: auto-select)")
    p.add_argument("--no-auto-focus", dest="auto_focus", action="store_false")
    p.add_argument("--name")
    p.add_argument("--agent-id")

    p = sub.add_parser("suspend-session", help="Suspend an active session")
    _add_session_arg(p)
    p.add_argument("--note")

    p = sub.add_parser("resume-session", help="Resume a suspended session")
    _add_session_arg(p)

    p = sub.add_parser("end-session", help="End a session and move it to history")
    _add_session_arg(p)
    p.add_argument("--note")

    p = sub.add_parser("focus", help="Switch the session focus task")
    p.add_argument("task_id")
    _add_session_arg(p)

    p = sub.add_parser("complete-task", help="Mark an in-scope task done")
    p.add_argument("task_id")
    _add_session_arg(p)

    p = sub.add_parser("session-note", help="Set the session note")
    p.add_argument("note")
    _add_session_arg(p)

    # --- Session queries ---
    p = sub.add_parser("list-sessions", help="List live sessions")
    p.add_argument("--status", choices=[str(s) for s in SessionStatus])

    p = sub.add_parser("get-session", help="Get session details")
    _add_session_arg(p)

    p = sub.add_parser("session-history", help="List ended sessions")
    p.add_argument("--limit", type=int, default=20)

    p = sub.add_parser("resolve-scope", help="Preview a scope and its conflicts")
    _add_scope_args(p)

    # --- Backups and audit ---
    p = sub.add_parser("list-backups", help="List numbered backups of a document")
    p.add_argument("file", choices=list(store.LOCK_ORDER))

    p = sub.add_parser("restore-backup", help="Restore a document from a backup")
    p.add_argument("file", choices=list(store.LOCK_ORDER))
    p.add_argument("--number", type=int, help="Backup number (default: newest)")

    p = sub.add_parser("audit-log", help="Show recent audit events")
    p.add_argument("--limit", type=int, default=50)

    # --- Web server ---
    p = sub.add_parser("serve", help="Start the read-only web view")
    p.add_argument("--port", type=int, default=9000)
    p.add_argument("--host", default="127.0.0.1")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    _configure_logging(args.verbose)

    try:
        result = _dispatch(args)
    except TaskSessionsError as exc:
        print(json.dumps(exc.to_dict(), indent=2, ensure_ascii=False))
        sys.exit(exc.exit_code)
    print(json.dumps(result, indent=2, ensure_ascii=False))


def _configure_logging(verbosity: int) -> None:
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = getattr(logging, os.environ.get(LOG_LEVEL_ENV_VAR, "WARNING").upper(), logging.WARNING)
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _session_id(args: argparse.Namespace) -> str:
    session_id = getattr(args, "session_id", None) or store.get_current_session_id()
    if not session_id:
        raise InvalidInputError(
            f"No session given and no current session (set ${store.SESSION_ENV_VAR})"
        )
    return session_id


def _scope_from_args(args: argparse.Namespace):
    return sessions.build_scope(
        args.scope_type,
        root_task_id=args.root_task_id,
        phase_filter=args.phase,
        max_depth=args.max_depth,
        exclude_task_ids=args.exclude,
        task_ids=args.task_ids,
    )


def _retrying(operation):
    return run_with_retry(operation, RetryPolicy.from_settings(store.load_settings()))


def _dispatch(args: argparse.Namespace) -> dict | list:
    cmd = args.command

    if cmd == "init":
        return store.init_project(args.project)

    if cmd == "add-task":
        task = _retrying(lambda: store.add_task(
            args.title, parent_id=args.parent_id, phase=args.phase, priority=args.priority,
        ))
        return task_to_dict(task)

    if cmd == "list-tasks":
        return [task_to_dict(t) for t in store.list_tasks(status=args.status, phase=args.phase)]

    if cmd == "get-task":
        task = store.get_task(args.task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {args.task_id} not found")
        return task_to_dict(task)

    if cmd == "set-task-status":
        task = _retrying(lambda: store.set_task_status(args.task_id, args.status))
        return task_to_dict(task)

    if cmd == "start-session":
        scope = _scope_from_args(args)
        result = _retrying(lambda: sessions.start_session(
            scope,
            focus_id=args.focus_id,
            name=args.name,
            agent_id=args.agent_id,
            auto_focus=args.auto_focus,
        ))
        store.set_current_session_id(result.session.id)
        return {
            "session": session_to_dict(result.session),
            "conflict": str(result.verdict.kind),
            "warnings": result.warnings,
            "autoFocused": result.auto_focused,
        }

    if cmd == "suspend-session":
        session_id = _session_id(args)
        session = _retrying(lambda: sessions.suspend_session(session_id, note=args.note))
        return session_to_dict(session)

    if cmd == "resume-session":
        session_id = _session_id(args)
        session = _retrying(lambda: sessions.resume_session(session_id))
        store.set_current_session_id(session.id)
        return session_to_dict(session)

    if cmd == "end-session":
        session_id = _session_id(args)
        entry = _retrying(lambda: sessions.end_session(session_id, note=args.note))
        if store.get_current_session_id() == session_id:
            store.set_current_session_id(None)
        return history_to_dict(entry)

    if cmd == "focus":
        session_id = _session_id(args)
        session = _retrying(lambda: sessions.focus_task(session_id, args.task_id))
        return session_to_dict(session)

    if cmd == "complete-task":
        session_id = _session_id(args)
        session = _retrying(lambda: sessions.complete_task(session_id, args.task_id))
        return session_to_dict(session)

    if cmd == "session-note":
        session_id = _session_id(args)
        session = _retrying(lambda: sessions.set_note(session_id, args.note))
        return session_to_dict(session)

    if cmd == "list-sessions":
        status = SessionStatus(args.status) if args.status else None
        return [session_to_dict(s) for s in sessions.list_sessions(status=status)]

    if cmd == "get-session":
        session_id = _session_id(args)
        session = sessions.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session_to_dict(session)

    if cmd == "session-history":
        return [history_to_dict(h) for h in sessions.get_history(limit=args.limit)]

    if cmd == "resolve-scope":
        return sessions.preview_scope(_scope_from_args(args))

    if cmd == "list-backups":
        return store.list_document_backups(args.file)

    if cmd == "restore-backup":
        return store.restore_document(args.file, args.number)

    if cmd == "audit-log":
        return audit.read_events(store.log_path(), limit=args.limit)

    if cmd == "serve":
        _serve(args.host, validate_port(args.port))
        return {}  # never reached: uvicorn runs until interrupted

    return {"error": f"Unknown command: {cmd}"}


def _serve(host: str, port: int) -> None:
    """Start the read-only web view via uvicorn."""
    import uvicorn

    web_dir = Path(__file__).parent / "web"
    sys.path.insert(0, str(web_dir))

    print(f"Task sessions: http://{host}:{port}", file=sys.stderr)
    uvicorn.run(
        "app:app",
        host=host,
        port=port,
        log_level="warning",
        app_dir=str(web_dir),
    )


if __name__ == "__main__":
    main()
