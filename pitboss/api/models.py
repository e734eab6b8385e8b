# ============================================================================
# Pitboss -- API Pydantic Models (pitboss/api/models.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   Defines request/response schemas for the FastAPI web server.
#   All inbound data is validated through these models; outbound data
#   mirrors QueryResult (ok / data / error).
#
# INTERNET ACCESS: NONE
# ============================================================================

from typing import Optional, List, Dict, Any, Union
from pydantic import BaseModel, Field


# -------------------------------------------------------------------
# Request models
# -------------------------------------------------------------------

class QueryRequest(BaseModel):
    """POST /query request body."""
    question: Union[str, Dict[str, Any]] = Field(
        ...,
        description=(
            "Natural text such as 'active issues' or a structured query "
            "like {\"kind\": \"errors\", \"minutes\": 30}."
        ),
    )


class AttemptRequest(BaseModel):
    """POST /issues/{id}/attempts request body."""
    method: str = Field(..., min_length=1, max_length=200, description="Remediation method name.")
    result: Optional[str] = Field(
        None,
        pattern="^(success|failure|partial|abandoned)$",
        description="Outcome. Omit to mark the attempt as started.",
    )
    duration_ms: Optional[float] = Field(None, ge=0)
    context: Dict[str, Any] = Field(default_factory=dict)
    ticket_id: Optional[str] = None


class ClearRequest(BaseModel):
    """POST /issues/{id}/clear request body."""
    note: Optional[str] = Field(None, max_length=2000)


class IngestRequest(BaseModel):
    """POST /ingest request body."""
    lines: List[str] = Field(..., min_length=1, max_length=10000)
    source: str = Field("default", min_length=1, max_length=100)


class StateWriteRequest(BaseModel):
    """PUT /state request body."""
    path: str = Field(..., min_length=1, max_length=500)
    value: Any = None


# -------------------------------------------------------------------
# Response models
# -------------------------------------------------------------------

class ErrorDetail(BaseModel):
    code: Optional[str] = None
    message: str
    fix_suggestion: Optional[str] = None
    issue_id: Optional[str] = None


class ResultResponse(BaseModel):
    """Every data route answers with this envelope."""
    ok: bool
    data: Any = None
    error: Optional[ErrorDetail] = None


class HealthResponse(BaseModel):
    """GET /health response."""
    status: str
    version: str
    running: bool
    escalated: bool


class IngestResponse(BaseModel):
    """POST /ingest response."""
    accepted: int
    events: int
    issue_ids: List[str]
    created: List[str]
    deferred: int


class StateWriteResponse(BaseModel):
    """PUT /state response."""
    path: str
    version: int
