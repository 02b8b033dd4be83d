"""Web view: read-only monitoring of tasks and sessions.

Routes:
  GET /api/overview                  -> task counts, live sessions, recent history
  GET /api/tasks?status=&phase=      -> task list
  GET /api/tasks/{task_id}           -> single task
  GET /api/sessions?status=          -> live sessions
  GET /api/sessions/{session_id}     -> single live session
  GET /api/history?limit=            -> ended sessions, newest last

The view never writes either document and takes no locks.
All API errors return consistent JSON: {"error": "message", "code": "ERROR_CODE"}
"""

from __future__ import annotations

import json
import logging
import sys
from collections import Counter
from pathlib import Path

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

# Ensure tasksessions is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from tasksessions import sessions, store
from tasksessions.errors import (
    InvalidInputError,
    NotInitializedError,
    ParseFailedError,
    SessionNotFoundError,
    TaskNotFoundError,
    TaskSessionsError,
)
from tasksessions.models import (
    SessionStatus,
    TaskStatus,
    history_to_dict,
    session_to_dict,
    task_to_dict,
)
from tasksessions.validation import validate_session_id, validate_task_id

logger = logging.getLogger(__name__)

app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

_STATUS_FOR = {
    NotInitializedError: 404,
    TaskNotFoundError: 404,
    SessionNotFoundError: 404,
    InvalidInputError: 400,
    ParseFailedError: 500,
}


# ---------------------------------------------------------------------------
# Error response helper
# ---------------------------------------------------------------------------


def _error_response(message: str, code: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message, "code": code}, status_code=status_code)


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


@app.exception_handler(TaskSessionsError)
async def task_sessions_error_handler(request: Request, exc: TaskSessionsError):
    status_code = _STATUS_FOR.get(type(exc), 409 if exc.recoverable else 500)
    if status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
    else:
        logger.warning("%s on %s: %s", exc.code, request.url.path, exc.message)
    return _error_response(exc.message, exc.code, status_code)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    logger.warning("ValueError on %s: %s", request.url.path, exc)
    return _error_response("Invalid request", "VALIDATION_ERROR", 400)


@app.exception_handler(json.JSONDecodeError)
async def json_decode_error_handler(request: Request, exc: json.JSONDecodeError):
    logger.error("Corrupt JSON data: %s", exc)
    return _error_response("Data store contains corrupt JSON", "DATA_CORRUPT", 500)


@app.exception_handler(Exception)
async def generic_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s: %s", request.url.path, exc, exc_info=True)
    return _error_response("Internal server error", "INTERNAL_ERROR", 500)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/api/overview")
def api_overview():
    tasks = store.load_task_store()
    registry = store.load_session_registry()
    counts = Counter(str(t.status) for t in tasks.tasks)
    return JSONResponse({
        "project": tasks.project,
        "tasks": {str(s): counts.get(str(s), 0) for s in TaskStatus},
        "activeSessionCount": tasks.meta.active_session_count,
        "sessionsByStatus": {
            "active": len(registry.active()),
            "suspended": len(registry.sessions) - len(registry.active()),
        },
        "sessions": [session_to_dict(s) for s in registry.sessions],
        "recentHistory": [history_to_dict(h) for h in registry.history[-10:]],
        "config": {
            "maxConcurrentSessions": registry.config.max_concurrent_sessions,
            "allowNestedScopes": registry.config.allow_nested_scopes,
            "allowScopeOverlap": registry.config.allow_scope_overlap,
        },
    })


@app.get("/api/tasks")
def api_tasks(
    status: str | None = Query(None, pattern="^(pending|active|blocked|done)$"),
    phase: str | None = Query(None, max_length=50),
):
    return JSONResponse([task_to_dict(t) for t in store.list_tasks(status=status, phase=phase)])


@app.get("/api/tasks/{task_id}")
def api_task_detail(task_id: str):
    validate_task_id(task_id)
    task = store.get_task(task_id)
    if not task:
        return _error_response("Task not found", "NOT_FOUND", 404)
    return JSONResponse(task_to_dict(task))


@app.get("/api/sessions")
def api_sessions(status: str | None = Query(None, pattern="^(active|suspended)$")):
    live = sessions.list_sessions(status=SessionStatus(status) if status else None)
    return JSONResponse([session_to_dict(s) for s in live])


@app.get("/api/sessions/{session_id}")
def api_session_detail(session_id: str):
    validate_session_id(session_id)
    session = sessions.get_session(session_id)
    if not session:
        return _error_response("Session not found", "NOT_FOUND", 404)
    return JSONResponse(session_to_dict(session))


@app.get("/api/history")
def api_history(limit: int = Query(50, ge=1, le=500)):
    return JSONResponse([history_to_dict(h) for h in sessions.get_history(limit=limit)])
