"""
kernforge: Build Status API Server
==================================

Read-only API over the session artifacts a build leaves in its workspace
(.kernforge/state/). It never starts, stops or changes a build.

Endpoints:
- GET /health             -> Server status
- GET /api/v1/session     -> Current session summary
- GET /api/v1/log         -> Persisted build output (paged)
- GET /api/v1/audit       -> Persisted audit trail (paged)
- GET /api/v1/stream      -> Server-sent events tailing the build output

Usage:
    KERNFORGE_WORKSPACE=/path/to/build uvicorn kernforge.api.server:app
"""
import asyncio
import json
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from ..contracts.events import BuildPhase
from ..observability.persistence import read_audit, read_log, read_summary

# =============================================================================
# INFRASTRUCTURE SETUP
# =============================================================================

WORKSPACE_ENV = "KERNFORGE_WORKSPACE"
STREAM_POLL_SECONDS = 0.5

workspace_root: Optional[str] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Resolve the workspace on startup."""
    global workspace_root

    workspace_root = os.path.abspath(os.environ.get(WORKSPACE_ENV, os.getcwd()))
    print(f"[*] Serving build status for: {workspace_root}")
    if not os.path.isdir(workspace_root):
        print(f"[!] Workspace does not exist yet: {workspace_root}")

    yield

    print("[*] Shutting down status server.")
    workspace_root = None


app = FastAPI(
    title="kernforge Build Status API",
    version="0.1.0",
    description="Read-only view of kernel build sessions",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET"],  # read-only
    allow_headers=["*"],
)


class HealthStatus(BaseModel):
    status: str
    workspace: str
    has_session: bool


class LogPage(BaseModel):
    entries: List[Dict[str, Any]]
    offset: int
    limit: int
    count: int


def _workspace() -> str:
    if not workspace_root:
        raise HTTPException(status_code=503, detail="Server not initialized")
    return workspace_root


def _is_terminal(summary: Optional[Dict[str, Any]]) -> bool:
    if not summary:
        return False
    try:
        return BuildPhase(summary.get("phase")).is_terminal
    except ValueError:
        return False


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/health", response_model=HealthStatus)
async def health_check():
    """System status."""
    workspace = _workspace()
    return HealthStatus(
        status="online",
        workspace=workspace,
        has_session=read_summary(workspace) is not None,
    )


@app.get("/api/v1/session")
async def get_session():
    """Summary of the current (or last) build session."""
    summary = read_summary(_workspace())
    if summary is None:
        raise HTTPException(status_code=404, detail="No build session recorded")
    return summary


@app.get("/api/v1/log", response_model=LogPage)
async def get_log(
    limit: int = Query(100, ge=1, le=10000),
    offset: int = Query(0, ge=0),
):
    """Build output lines in sequence order."""
    entries = read_log(_workspace(), limit=limit, offset=offset)
    return LogPage(entries=entries, offset=offset, limit=limit, count=len(entries))


@app.get("/api/v1/audit", response_model=LogPage)
async def get_audit(
    limit: int = Query(100, ge=1, le=10000),
    offset: int = Query(0, ge=0),
):
    """Audit trail of the session, oldest first."""
    entries = read_audit(_workspace(), limit=limit, offset=offset)
    return LogPage(entries=entries, offset=offset, limit=limit, count=len(entries))


async def tail_events(workspace: str, offset: int = 0, poll: float = STREAM_POLL_SECONDS) -> AsyncIterator[str]:
    """
    Yield SSE frames for new log lines and phase changes.

    Ends with an `end` event once the session is terminal and every line
    has been sent.
    """
    phase = None
    while True:
        summary = read_summary(workspace)
        if summary and summary.get("phase") != phase:
            phase = summary.get("phase")
            yield f"event: phase\ndata: {json.dumps({'phase': phase})}\n\n"

        entries = read_log(workspace, offset=offset)
        for entry in entries:
            yield f"event: log\ndata: {json.dumps(entry)}\n\n"
        offset += len(entries)

        if not entries and _is_terminal(summary):
            yield f"event: end\ndata: {json.dumps({'phase': phase, 'lines': offset})}\n\n"
            return
        await asyncio.sleep(poll)


@app.get("/api/v1/stream")
async def stream_log(offset: int = Query(0, ge=0)):
    """Server-sent events: tail the build output until the session ends."""
    return StreamingResponse(tail_events(_workspace(), offset), media_type="text/event-stream")
