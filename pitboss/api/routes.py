# ============================================================================
# Pitboss -- API Routes (pitboss/api/routes.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   Defines all REST API endpoints. Each endpoint is a thin wrapper around
#   the QueryFacade (or, for feeding data in, the engine itself).
#
# ENDPOINTS:
#   GET  /health                Fast health check
#   GET  /issues                Active issues, priority order
#   GET  /issues/{id}           One issue with its attempts
#   GET  /issues/{id}/fixes     Ranked fix suggestions + methods to avoid
#   GET  /issues/{id}/related   Issues sharing a cause or an entity
#   POST /issues/{id}/attempts  Start an attempt, or report its outcome
#   POST /issues/{id}/clear     Manual clearance
#   POST /ingest                Push raw log lines
#   PUT  /state                 Write one state path
#   POST /query                 Structured or natural-text query
#   GET  /stats                 Engine statistics
#
# ERRORS:
#   A failed call answers with the same envelope as a good one
#   ({"ok": false, "error": {...}}) and an HTTP status picked from the
#   error code.
#
# INTERNET ACCESS: NONE
# ============================================================================

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse

from .models import (
    QueryRequest,
    AttemptRequest,
    ClearRequest,
    IngestRequest,
    StateWriteRequest,
    ResultResponse,
    HealthResponse,
    IngestResponse,
    StateWriteResponse,
)
from ..core.exceptions import PitbossError
from ..core.query_facade import QueryResult

router = APIRouter()

STATUS_BY_CODE = {
    "KNB-001": 404,
    "DEC-001": 409,
    "QRY-001": 400,
    "STA-001": 400,
    "DEC-002": 408,
}


# -------------------------------------------------------------------
# Lazy import of shared state (avoids circular imports)
# -------------------------------------------------------------------
def _state():
    from .server import state
    return state


def _version():
    from .server import APP_VERSION
    return APP_VERSION


def _engine():
    s = _state()
    if s.engine is None:
        raise HTTPException(status_code=503, detail="Server not initialized")
    return s.engine


def _respond(result: QueryResult):
    if result.ok:
        return result.to_dict()
    status = STATUS_BY_CODE.get((result.error or {}).get("code"), 500)
    return JSONResponse(status_code=status, content=result.to_dict())


# -------------------------------------------------------------------
# GET /health
# -------------------------------------------------------------------
@router.get("/health", response_model=HealthResponse)
async def health():
    """Fast health check. Returns 200 if the server is running."""
    engine = _engine()
    return HealthResponse(
        status="ok",
        version=_version(),
        running=engine.running,
        escalated=bool(engine.decisions.escalation().get("escalated")),
    )


# -------------------------------------------------------------------
# Issues
# -------------------------------------------------------------------
@router.get("/issues", response_model=ResultResponse)
async def list_issues(status: Optional[str] = None, severity: Optional[str] = None):
    """Open issues in priority order; ?status=all|resolved|... to widen."""
    engine = _engine()
    query = {"kind": "issues"}
    if status:
        query["status"] = status
    if severity:
        query["severity"] = severity
    return _respond(engine.facade.query(query))


@router.get("/issues/{issue_id}", response_model=ResultResponse)
async def get_issue(issue_id: str):
    return _respond(_engine().facade.get_issue(issue_id))


@router.get("/issues/{issue_id}/fixes", response_model=ResultResponse)
async def get_fixes(issue_id: str):
    return _respond(_engine().facade.get_suggested_fixes(issue_id))


@router.get("/issues/{issue_id}/related", response_model=ResultResponse)
async def get_related(issue_id: str):
    return _respond(_engine().facade.get_related_issues(issue_id))


@router.post("/issues/{issue_id}/attempts", response_model=ResultResponse)
async def record_attempt(issue_id: str, req: AttemptRequest):
    """
    Without "result": marks the attempt as started and returns a ticket.
    With "result": records the outcome; failures come back with the next
    suggestions.
    """
    facade = _engine().facade
    if req.result is None:
        return _respond(facade.start_attempt(issue_id, req.method))
    return _respond(facade.record_attempt(
        issue_id,
        req.method,
        req.result,
        context=req.context,
        duration_ms=req.duration_ms,
        ticket_id=req.ticket_id,
    ))


@router.post("/issues/{issue_id}/clear", response_model=ResultResponse)
async def clear_issue(issue_id: str, req: Optional[ClearRequest] = None):
    note = req.note if req else None
    return _respond(_engine().facade.clear_issue(issue_id, note))


# -------------------------------------------------------------------
# Feeding data in
# -------------------------------------------------------------------
@router.post("/ingest", response_model=IngestResponse)
def ingest(req: IngestRequest):
    """Push raw log lines through ingestion and detection."""
    engine = _engine()
    events = 0
    issue_ids = []
    created = []
    deferred = 0
    for line in req.lines:
        event, result = engine.ingest_line(line, req.source)
        if event is None:
            continue
        events += 1
        for issue_id in result.issue_ids:
            if issue_id not in issue_ids:
                issue_ids.append(issue_id)
        created.extend(result.created)
        deferred += result.deferred
    return IngestResponse(
        accepted=len(req.lines),
        events=events,
        issue_ids=issue_ids,
        created=created,
        deferred=deferred,
    )


@router.put("/state", response_model=StateWriteResponse)
def write_state(req: StateWriteRequest):
    """Write one state path. Invariants watching it run before this returns."""
    engine = _engine()
    try:
        version = engine.set_state(req.path, req.value)
    except PitbossError as e:
        status = STATUS_BY_CODE.get(e.error_code, 500)
        return JSONResponse(
            status_code=status,
            content={"ok": False, "data": None, "error": {
                "code": e.error_code,
                "message": str(e),
                "fix_suggestion": e.fix_suggestion,
                "issue_id": None,
            }},
        )
    return StateWriteResponse(path=req.path, version=version)


# -------------------------------------------------------------------
# Queries
# -------------------------------------------------------------------
@router.post("/query", response_model=ResultResponse)
async def query(req: QueryRequest):
    return _respond(_engine().facade.query(req.question))


@router.get("/stats", response_model=ResultResponse)
async def stats():
    engine = _engine()
    result = engine.facade.stats()
    if result.ok:
        result.data["engine"] = engine.status()
    return _respond(result)
